"""
Value objects shared by every pipeline stage: the expression dataset and the
ordered class label set.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np
import pandas as pd

LABEL_COLUMN = 'label'
BATCH_COLUMN = 'batch'


@dataclass(frozen=True)
class LabelSet:
    """
    Ordered, versioned enumeration of class labels.

    The position of a label in ``labels`` is its integer code. Models carry
    their LabelSet so predictions are always decoded with the order used at
    training time.
    """

    labels: Tuple[str, ...]
    version: int = 1

    def __post_init__(self):
        labels = tuple(str(l) for l in self.labels)
        if not labels:
            raise ValueError("LabelSet needs at least one label")
        if len(set(labels)) != len(labels):
            raise ValueError(f"LabelSet labels must be unique, got {list(labels)}")
        object.__setattr__(self, 'labels', labels)

    def __len__(self):
        return len(self.labels)

    def __contains__(self, label):
        return str(label) in self.labels

    def __iter__(self):
        return iter(self.labels)

    def encode(self, labels):
        """
        Map labels to their integer codes.

        Raises:
            ValueError: if a label is not part of this set
        """
        index = {label: code for code, label in enumerate(self.labels)}
        codes = []
        for label in labels:
            try:
                codes.append(index[str(label)])
            except KeyError:
                raise ValueError(f"Unknown class label '{label}', expected one of {list(self.labels)}") from None
        return np.asarray(codes, dtype=np.int64)

    def decode(self, codes):
        """Map integer codes back to labels"""
        codes = np.asarray(codes, dtype=np.int64)
        if codes.size and (codes.min() < 0 or codes.max() >= len(self.labels)):
            raise ValueError(f"Label codes out of range for {len(self.labels)} labels")
        return [self.labels[c] for c in codes]

    def restrict(self, present):
        """New LabelSet keeping only the labels in ``present``, in this set's order"""
        present = {str(p) for p in present}
        return LabelSet(tuple(l for l in self.labels if l in present), version=self.version)

    def to_dict(self):
        return {'labels': list(self.labels), 'version': self.version}


class ExpressionDataset:
    """
    Samples x features expression matrix with index-aligned sample metadata.

    Instances are treated as immutable: every operation returns a new
    dataset and the underlying frames are copied on construction.

    Args:
        expression: DataFrame, rows = sample ids, columns = feature ids
        metadata: DataFrame indexed by sample id with 'label' and 'batch' columns
    """

    def __init__(self, expression, metadata):
        if not isinstance(expression, pd.DataFrame):
            raise TypeError("expression must be a pandas DataFrame")
        if not isinstance(metadata, pd.DataFrame):
            raise TypeError("metadata must be a pandas DataFrame")

        if expression.index.has_duplicates:
            dupes = expression.index[expression.index.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate sample ids in expression matrix: {dupes[:10]}")
        if expression.columns.has_duplicates:
            dupes = expression.columns[expression.columns.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate feature ids in expression matrix: {dupes[:10]}")
        if metadata.index.has_duplicates:
            dupes = metadata.index[metadata.index.duplicated()].unique().tolist()
            raise ValueError(f"Duplicate sample ids in metadata: {dupes[:10]}")

        missing_meta = expression.index.difference(metadata.index)
        if len(missing_meta):
            raise ValueError(f"Samples without metadata: {missing_meta.tolist()[:10]}")

        # Align metadata to the matrix row order
        metadata = metadata.loc[expression.index].copy()
        if LABEL_COLUMN not in metadata.columns:
            metadata[LABEL_COLUMN] = pd.NA
        if BATCH_COLUMN not in metadata.columns:
            metadata[BATCH_COLUMN] = pd.NA

        values = expression.astype(float)
        if values.isna().to_numpy().any():
            bad = values.columns[values.isna().any()].tolist()
            raise ValueError(f"Expression matrix has missing values in features: {bad[:10]}")

        self._expression = values.copy()
        self._metadata = metadata[[LABEL_COLUMN, BATCH_COLUMN]]

    @property
    def expression(self):
        return self._expression.copy()

    @property
    def metadata(self):
        return self._metadata.copy()

    @property
    def samples(self):
        return self._expression.index.tolist()

    @property
    def features(self):
        return self._expression.columns.tolist()

    @property
    def labels(self):
        return self._metadata[LABEL_COLUMN].copy()

    @property
    def batches(self):
        return self._metadata[BATCH_COLUMN].copy()

    @property
    def shape(self):
        return self._expression.shape

    @property
    def has_labels(self):
        return bool(self._metadata[LABEL_COLUMN].notna().any())

    def values(self):
        """Expression values as a float ndarray"""
        return self._expression.to_numpy(dtype=float, copy=True)

    def __len__(self):
        return len(self._expression)

    def __repr__(self):
        return f"ExpressionDataset(samples={self.shape[0]}, features={self.shape[1]})"

    def class_counts(self):
        """Sample count per class label, in order of first appearance"""
        return self._metadata[LABEL_COLUMN].value_counts(sort=False)

    def subset_samples(self, samples):
        """Dataset restricted to the given sample ids, in the given order"""
        samples = list(samples)
        missing = [s for s in samples if s not in self._expression.index]
        if missing:
            raise KeyError(f"Unknown sample ids: {missing[:10]}")
        return ExpressionDataset(self._expression.loc[samples], self._metadata.loc[samples])

    def subset_features(self, features):
        """Dataset restricted to the given feature ids, in the given order"""
        features = list(features)
        missing = [f for f in features if f not in self._expression.columns]
        if missing:
            raise KeyError(f"Unknown feature ids: {missing[:10]}")
        return ExpressionDataset(self._expression[features], self._metadata)

    def select_labels(self, labels):
        """Dataset restricted to samples whose class label is in ``labels``"""
        keep = self._metadata[LABEL_COLUMN].isin(list(labels))
        return self.subset_samples(self._expression.index[keep.to_numpy()])
