"""
ANOVA-based feature selection.

Each feature is tested independently with a one-way ANOVA across the class
labels; p-values are corrected with Benjamini-Hochberg and features below the
significance threshold are retained, ordered by ascending raw p-value.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy.stats import f_oneway
from statsmodels.stats.multitest import multipletests

from ..errors import InsufficientGroups, NumericDegeneracy

logger = logging.getLogger(__name__)

# Features per worker task
CHUNK_SIZE = 2000


def anova_chunk(groups):
    """
    One-way ANOVA for a block of features.

    Args:
        groups: list of ndarrays (samples x features), one per class

    Returns:
        Tuple of (F statistics, p-values), one per feature column
    """
    with warnings.catch_warnings():
        # Constant features are flagged by the caller; silence scipy's notice
        warnings.simplefilter('ignore')
        f_stat, p_values = f_oneway(*groups, axis=0)
    return np.atleast_1d(np.asarray(f_stat, dtype=float)), np.atleast_1d(np.asarray(p_values, dtype=float))


def benjamini_hochberg(p_values):
    """
    Benjamini-Hochberg adjusted p-values.

    NaN inputs stay NaN and are not counted in the family size.
    """
    p_values = np.asarray(p_values, dtype=float)
    adjusted = np.full(p_values.shape, np.nan)
    finite = np.isfinite(p_values)
    if finite.any():
        _, p_adj, _, _ = multipletests(p_values[finite], method='fdr_bh')
        adjusted[finite] = p_adj
    return adjusted


@dataclass
class AnovaResult:
    """Result of ANOVA feature selection"""

    table: pd.DataFrame
    selected: List[str]
    excluded: Dict[str, str] = field(default_factory=dict)
    alpha: float = 0.05

    @property
    def n_selected(self):
        return len(self.selected)


class AnovaFeatureSelector:
    """
    Select features whose class means differ (one-way ANOVA + BH correction).

    Args:
        alpha: adjusted p-value threshold
        n_jobs: joblib workers for the per-feature tests
        chunk_size: features per worker task
    """

    def __init__(self, alpha=0.05, n_jobs=1, chunk_size=CHUNK_SIZE):
        self.alpha = alpha
        self.n_jobs = n_jobs
        self.chunk_size = chunk_size

    def test_features(self, dataset):
        """
        Per-feature ANOVA statistics.

        Args:
            dataset: ExpressionDataset with class labels

        Returns:
            DataFrame indexed by feature with columns F, p_value, reason

        Raises:
            InsufficientGroups: if fewer than two classes are present
        """
        labels = dataset.labels
        if labels.isna().any():
            raise ValueError(
                f"ANOVA requires a class label for every sample; "
                f"{int(labels.isna().sum())} samples are unlabeled"
            )
        classes = pd.unique(labels)
        if len(classes) < 2:
            raise InsufficientGroups([str(c) for c in classes], required=2, stage="ANOVA")

        values = dataset.values()
        features = dataset.features
        group_masks = [labels.isin([c]).to_numpy() for c in classes]

        # Independent column blocks, results concatenated in feature order
        starts = range(0, len(features), self.chunk_size)
        results = Parallel(n_jobs=self.n_jobs)(
            delayed(anova_chunk)([values[mask, s:s + self.chunk_size] for mask in group_masks])
            for s in starts
        )
        f_stat = np.concatenate([r[0] for r in results]) if results else np.array([])
        p_values = np.concatenate([r[1] for r in results]) if results else np.array([])

        reasons = pd.Series(pd.NA, index=features, dtype=object)
        constant = np.ptp(values, axis=0) == 0
        for j in np.flatnonzero(constant):
            p_values[j] = np.nan
            f_stat[j] = np.nan
            reasons.iloc[j] = str(NumericDegeneracy(features[j]))
        for j in np.flatnonzero(~constant & ~np.isfinite(p_values)):
            reasons.iloc[j] = str(NumericDegeneracy(features[j], "ANOVA p-value undefined"))

        # Guard against round-off just outside [0, 1]
        p_values = np.where(np.isfinite(p_values), np.clip(p_values, 0.0, 1.0), np.nan)

        return pd.DataFrame(
            {'F': f_stat, 'p_value': p_values, 'reason': reasons.to_numpy()},
            index=pd.Index(features, name='feature'),
        )

    def select(self, dataset):
        """
        Run the tests, correct for multiple testing and keep significant features.

        Args:
            dataset: ExpressionDataset (already sample-filtered)

        Returns:
            AnovaResult; ``selected`` is ordered by ascending raw p-value
        """
        logger.info(
            "ANOVA feature selection over %d features, %d samples (alpha=%.3g)",
            dataset.shape[1], dataset.shape[0], self.alpha,
        )
        table = self.test_features(dataset)
        table['p_adjusted'] = benjamini_hochberg(table['p_value'].to_numpy())
        table['selected'] = table['p_adjusted'] < self.alpha

        # Stable sort keeps input order among tied p-values; NaN last
        table['input_order'] = np.arange(len(table))
        table = table.sort_values(['p_value', 'input_order'], na_position='last', kind='mergesort')
        table = table.drop(columns='input_order')
        table = table[['F', 'p_value', 'p_adjusted', 'selected', 'reason']]

        excluded = {f: r for f, r in table['reason'].dropna().items()}
        if excluded:
            logger.warning(
                "Excluded %d features from ANOVA (e.g. %s)",
                len(excluded), next(iter(excluded.values())),
            )

        selected = table.index[table['selected'].to_numpy()].tolist()
        logger.info(
            "Retained %d of %d features with BH-adjusted p < %.3g",
            len(selected), len(table), self.alpha,
        )
        return AnovaResult(table=table, selected=selected, excluded=excluded, alpha=self.alpha)
