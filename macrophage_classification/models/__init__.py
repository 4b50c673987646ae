"""
Random Forest training, iterative pruning and external classification.
"""

from .classification import (
    RandomForestTrainer, TrainedModel, Hyperparameters, PerformanceRecord,
    TrainingResult, evaluate_predictions
)
from .pruning import IterativePruner, PruningResult, RoundRecord
from .external import ExternalClassifier, ExternalPrediction
