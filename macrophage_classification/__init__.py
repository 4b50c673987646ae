# Sample QC and Random Forest classification of macrophage polarization states

# Import major components so they can be imported directly from the package
from .config import PipelineConfig
from .errors import (
    ClassificationPipelineError, InsufficientGroups, InsufficientSamples,
    DegenerateWeight, SchemaMismatch, NumericDegeneracy
)
from .data.dataset import ExpressionDataset, LabelSet
from .data.data_loader import load_dataset, calculate_class_weights, split_train_test
from .features.sample_filter import CorrelationClusterFilter
from .features.feature_selection import AnovaFeatureSelector
from .models.classification import RandomForestTrainer, TrainedModel, evaluate_predictions
from .models.pruning import IterativePruner
from .models.external import ExternalClassifier
from .main import run_training_pipeline, run_external_classification

__version__ = "0.1.0"
