"""
Correlation-based sample quality control.

Within each class group, samples are clustered hierarchically on Pearson
correlation distance (1 - r) and only the largest cluster below the cut
height is kept. The same filter is used for the training cohort and for
external cohorts before prediction.
"""

import logging
import warnings
from dataclasses import dataclass
from typing import List, Optional

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import linkage, fcluster
from scipy.spatial.distance import squareform

from ..errors import InsufficientGroups, InsufficientSamples

logger = logging.getLogger(__name__)

# Group key for samples without a class label
UNLABELED_GROUP = 'unlabeled'


@dataclass
class GroupFilterReport:
    """Outcome of the filter for one class group"""

    group: str
    n_input: int
    n_retained: int
    n_clusters: int
    dropped: bool = False
    reason: Optional[str] = None

    def to_dict(self):
        return {
            'group': self.group,
            'n_input': self.n_input,
            'n_retained': self.n_retained,
            'n_clusters': self.n_clusters,
            'dropped': self.dropped,
            'reason': self.reason,
        }


def correlation_distance(values):
    """
    Sample-by-sample Pearson correlation distance.

    Args:
        values: ndarray, rows = samples, columns = features

    Returns:
        Square ndarray of 1 - r; undefined correlations (constant samples)
        count as r = 0
    """
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', RuntimeWarning)
        r = np.corrcoef(values)
    r = np.atleast_2d(r)
    r = np.nan_to_num(r, nan=0.0)
    np.fill_diagonal(r, 1.0)
    dist = 1.0 - r
    # Round-off can leave tiny negatives or asymmetry
    dist = np.clip((dist + dist.T) / 2.0, 0.0, 2.0)
    np.fill_diagonal(dist, 0.0)
    return dist


def cluster_samples(values, cut_height=0.25, method='complete'):
    """
    Hierarchically cluster samples and cut the tree at ``cut_height``.

    Args:
        values: ndarray, rows = samples
        cut_height: dissimilarity (1 - r) at which to cut
        method: scipy linkage method

    Returns:
        ndarray of integer cluster ids, one per sample
    """
    n = values.shape[0]
    if n == 1:
        return np.ones(1, dtype=int)

    dist = correlation_distance(values)
    Z = linkage(squareform(dist, checks=False), method=method)
    return fcluster(Z, t=cut_height, criterion='distance')


def largest_cluster(assignments):
    """
    Positions of the samples in the largest cluster.

    Ties between equally large clusters go to the cluster containing the
    earliest sample position.
    """
    assignments = np.asarray(assignments)
    best_id, best_size, best_first = None, -1, None
    for cluster_id in np.unique(assignments):
        members = np.flatnonzero(assignments == cluster_id)
        size, first = len(members), members[0]
        if size > best_size or (size == best_size and first < best_first):
            best_id, best_size, best_first = cluster_id, size, first
    return np.flatnonzero(assignments == best_id)


class CorrelationClusterFilter:
    """
    Keep the largest correlation cluster of samples within each class group.

    Args:
        cut_height: dissimilarity threshold; 0.25 keeps clusters with r >= 0.75
        min_group_size: groups smaller than this are dropped
        method: linkage method
    """

    def __init__(self, cut_height=0.25, min_group_size=5, method='complete'):
        self.cut_height = cut_height
        self.min_group_size = min_group_size
        self.method = method
        self.reports: List[GroupFilterReport] = []

    @classmethod
    def from_config(cls, config):
        return cls(
            cut_height=config.correlation_cut_height,
            min_group_size=config.min_group_size,
            method=config.linkage_method,
        )

    def _groups(self, dataset):
        labels = dataset.labels
        groups = []
        # Labeled groups in order of first appearance
        for label in pd.unique(labels.dropna()):
            groups.append((str(label), np.flatnonzero(labels.isin([label]).to_numpy())))
        # Unlabeled samples are clustered together as one more group
        unlabeled = np.flatnonzero(labels.isna().to_numpy())
        if len(unlabeled):
            if groups:
                logger.info("Filtering %d samples without a class label as group '%s'",
                            len(unlabeled), UNLABELED_GROUP)
            groups.append((UNLABELED_GROUP, unlabeled))
        return groups

    def filter_group(self, values, group):
        """
        Filter one group.

        Args:
            values: ndarray of the group's samples
            group: group name, used in reports

        Returns:
            Tuple of (retained positions within the group, GroupFilterReport)
        """
        n = values.shape[0]
        if n < self.min_group_size:
            reason = str(InsufficientSamples(group, n, self.min_group_size))
            logger.warning("Dropping group: %s", reason)
            return np.array([], dtype=int), GroupFilterReport(group, n, 0, 0, True, reason)

        assignments = cluster_samples(values, self.cut_height, self.method)
        n_clusters = len(np.unique(assignments))
        keep = largest_cluster(assignments)

        if len(keep) < self.min_group_size:
            reason = str(InsufficientSamples(group, len(keep), self.min_group_size))
            logger.warning("Dropping group after clustering: %s", reason)
            return np.array([], dtype=int), GroupFilterReport(group, n, 0, n_clusters, True, reason)

        if n_clusters > 1:
            logger.info(
                "Group '%s': %d clusters at height %.3f, keeping %d of %d samples",
                group, n_clusters, self.cut_height, len(keep), n,
            )
        return keep, GroupFilterReport(group, n, len(keep), n_clusters)

    def apply(self, dataset):
        """
        Filter every class group of a dataset.

        Args:
            dataset: ExpressionDataset

        Returns:
            ExpressionDataset with outlier samples removed (batch ids kept)

        Raises:
            InsufficientGroups: if no group survives
        """
        logger.info(
            "Correlation clustering filter: %d samples, cut height %.3f, min group size %d",
            len(dataset), self.cut_height, self.min_group_size,
        )
        values = dataset.values()
        samples = dataset.samples

        self.reports = []
        retained = []
        for group, positions in self._groups(dataset):
            keep, report = self.filter_group(values[positions], group)
            self.reports.append(report)
            retained.extend(positions[keep].tolist())

        surviving = [r.group for r in self.reports if not r.dropped]
        if not surviving:
            raise InsufficientGroups(surviving, required=1, stage="correlation clustering")

        # Keep the input sample order
        retained.sort()
        filtered = dataset.subset_samples([samples[p] for p in retained])
        logger.info(
            "Retained %d of %d samples across %d group(s)",
            len(filtered), len(dataset), len(surviving),
        )
        return filtered

    def report_frame(self):
        """Filter reports as a DataFrame"""
        return pd.DataFrame([r.to_dict() for r in self.reports])
