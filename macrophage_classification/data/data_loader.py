"""
Data loading module for macrophage polarization expression data.
Handles reading expression matrices and sample metadata, the train/test
partition, and class-imbalance weights for bootstrap sampling.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse

from .dataset import ExpressionDataset, LABEL_COLUMN, BATCH_COLUMN

logger = logging.getLogger(__name__)

# Metadata values treated as "no label"
MISSING_LABELS = ['', 'NA', 'nan', 'None', 'Unknown']


def _read_table(path, **kwargs):
    """Read a CSV/TSV table, choosing the delimiter from the file extension"""
    lower = path.lower()
    if lower.endswith(('.tsv', '.txt', '.tsv.gz', '.txt.gz')):
        return pd.read_csv(path, sep='\t', **kwargs)
    return pd.read_csv(path, **kwargs)


def load_expression_matrix(path, transpose=False):
    """
    Load a normalized, log-scale expression matrix.

    Args:
        path: CSV/TSV file; first column holds the row identifiers
        transpose: set when the file is feature-by-sample (genes in rows)

    Returns:
        DataFrame with samples as rows and features as columns
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Expression matrix not found: {path}")

    logger.info("Loading expression matrix from %s", path)
    matrix = _read_table(path, index_col=0)
    if transpose:
        matrix = matrix.T

    matrix.index = matrix.index.astype(str)
    matrix.columns = matrix.columns.astype(str)

    non_numeric = [c for c in matrix.columns if not pd.api.types.is_numeric_dtype(matrix[c])]
    if non_numeric:
        raise ValueError(f"Non-numeric expression columns in {path}: {non_numeric[:10]}")

    logger.info("Loaded %d samples x %d features", matrix.shape[0], matrix.shape[1])
    return matrix


def load_metadata(path, label_column=LABEL_COLUMN, batch_column=BATCH_COLUMN):
    """
    Load the sample metadata table.

    Args:
        path: CSV/TSV file indexed by sample id
        label_column: column holding the class label
        batch_column: column holding the batch/series id (optional in the file)

    Returns:
        DataFrame indexed by sample id with 'label' and 'batch' columns
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Metadata table not found: {path}")

    logger.info("Loading sample metadata from %s", path)
    meta = _read_table(path, index_col=0, dtype=str, keep_default_na=False)
    return standardize_metadata(meta, label_column, batch_column, source=path)


def standardize_metadata(meta, label_column=LABEL_COLUMN, batch_column=BATCH_COLUMN, source="metadata"):
    """Rename label/batch columns to the canonical names and blank out missing labels"""
    if label_column not in meta.columns:
        raise ValueError(f"'{label_column}' column not found in {source}")

    out = pd.DataFrame(index=meta.index.astype(str))
    labels = meta[label_column].astype(str).str.strip()
    out[LABEL_COLUMN] = labels.where(~labels.isin(MISSING_LABELS), pd.NA).to_numpy()

    if batch_column in meta.columns:
        out[BATCH_COLUMN] = meta[batch_column].astype(str).to_numpy()
    else:
        logger.warning("'%s' column not found in %s, batch ids left empty", batch_column, source)
        out[BATCH_COLUMN] = pd.NA
    return out


def load_h5ad(path, label_column=LABEL_COLUMN, batch_column=BATCH_COLUMN):
    """
    Load an AnnData file; labels and batches are taken from ``obs``.

    Returns:
        Tuple of (expression DataFrame, metadata DataFrame)
    """
    logger.info("Loading AnnData from %s", path)
    adata = sc.read_h5ad(path)

    X = adata.X.toarray() if sparse.issparse(adata.X) else np.asarray(adata.X)
    expression = pd.DataFrame(
        X, index=adata.obs_names.astype(str), columns=adata.var_names.astype(str)
    )
    metadata = standardize_metadata(adata.obs, label_column, batch_column, source=path)
    return expression, metadata


def load_dataset(expression_path, metadata_path=None, label_column=LABEL_COLUMN,
                 batch_column=BATCH_COLUMN, transpose=False, require_metadata=True):
    """
    Load an expression matrix and its metadata into an ExpressionDataset.

    Args:
        expression_path: CSV/TSV matrix or .h5ad file
        metadata_path: metadata table; required for CSV/TSV input unless
            require_metadata is False
        label_column: metadata column with the class label
        batch_column: metadata column with the batch id
        transpose: matrix file is feature-by-sample
        require_metadata: set False for unlabeled external cohorts

    Returns:
        ExpressionDataset containing only samples present in both inputs
    """
    if expression_path.endswith('.h5ad'):
        expression, metadata = load_h5ad(expression_path, label_column, batch_column)
        if metadata_path:
            metadata = load_metadata(metadata_path, label_column, batch_column)
    else:
        expression = load_expression_matrix(expression_path, transpose=transpose)
        if metadata_path:
            metadata = load_metadata(metadata_path, label_column, batch_column)
        elif require_metadata:
            raise ValueError("A metadata table is required for CSV/TSV expression input")
        else:
            logger.warning("No metadata given; samples are treated as one unlabeled group")
            metadata = pd.DataFrame(
                {LABEL_COLUMN: pd.NA, BATCH_COLUMN: pd.NA}, index=expression.index
            )

    common = [s for s in expression.index if s in metadata.index]
    dropped = len(expression) - len(common)
    if dropped:
        logger.warning("Dropping %d samples without metadata", dropped)
    if not common:
        raise ValueError("No samples shared between expression matrix and metadata")

    dataset = ExpressionDataset(expression.loc[common], metadata.loc[common])
    counts = dataset.class_counts()
    logger.info("Class distribution: %s", counts.to_dict())
    return dataset


def split_train_test(n_samples, train_fraction, rng):
    """
    Random (unstratified) train/test partition of row positions.

    Args:
        n_samples: number of rows
        train_fraction: share of rows used for training
        rng: numpy Generator shared by the run

    Returns:
        Tuple of (train_positions, test_positions), each sorted ascending
    """
    if n_samples < 2:
        raise ValueError(f"Need at least 2 samples to split, got {n_samples}")

    n_train = int(round(train_fraction * n_samples))
    n_train = min(max(n_train, 1), n_samples - 1)

    order = rng.permutation(n_samples)
    train_pos = np.sort(order[:n_train])
    test_pos = np.sort(order[n_train:])

    logger.info("Train/test split: %d training and %d test samples", len(train_pos), len(test_pos))
    return train_pos, test_pos


@dataclass
class ClassWeights:
    """Per-class weights and the per-sample weight vector derived from them"""

    class_weights: Dict[str, float]
    sample_weights: np.ndarray
    degenerate_classes: List[str] = field(default_factory=list)

    @property
    def is_degenerate(self):
        return bool(self.degenerate_classes)


def calculate_class_weights(labels):
    """
    Inverse-frequency class weights for weighted bootstrap sampling.

    Each sample of class c gets weight 1 - count(c) / total. Classes absent
    from ``labels`` get no entry. A class making up every sample gets weight
    0 and is reported in ``degenerate_classes``; callers that sample with
    these weights must check for it.

    Args:
        labels: class label per sample

    Returns:
        ClassWeights
    """
    labels = pd.Series(list(labels), dtype=object)
    if labels.empty:
        raise ValueError("Cannot compute class weights without samples")
    if labels.isna().any():
        raise ValueError("Cannot compute class weights for unlabeled samples")

    total = len(labels)
    counts = labels.value_counts(sort=False)
    class_weights = {str(label): 1.0 - count / total for label, count in counts.items()}

    degenerate = [label for label, w in class_weights.items() if w == 0.0]
    for label in degenerate:
        logger.warning(
            "Class '%s' comprises 100%% of %d samples; its weight is 0 (degenerate)", label, total
        )

    sample_weights = labels.astype(str).map(class_weights).to_numpy(dtype=float)

    logger.info(
        "Class weights: %s",
        {label: round(w, 4) for label, w in class_weights.items()},
    )
    return ClassWeights(class_weights, sample_weights, degenerate)
