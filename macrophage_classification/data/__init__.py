"""
Expression data, sample metadata, and train/test preparation.
"""

from .dataset import ExpressionDataset, LabelSet
from .data_loader import (
    load_dataset, load_expression_matrix, load_metadata,
    split_train_test, calculate_class_weights, ClassWeights
)
