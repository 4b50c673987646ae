import numpy as np
import pandas as pd
import pytest

from macrophage_classification.data.dataset import ExpressionDataset
from macrophage_classification.errors import InsufficientGroups
from macrophage_classification.features.sample_filter import (
    CorrelationClusterFilter, cluster_samples, correlation_distance, largest_cluster
)

from conftest import make_dataset


def _group(values, label='M0', prefix='s'):
    ids = [f"{prefix}{i}" for i in range(len(values))]
    expression = pd.DataFrame(values, index=ids, columns=[f"g{j}" for j in range(values.shape[1])])
    metadata = pd.DataFrame({'label': label, 'batch': 'b1'}, index=ids)
    return ExpressionDataset(expression, metadata)


def _outlier_group(n_features=50, seed=3):
    """Three near-identical samples and one unrelated sample"""
    rng = np.random.default_rng(seed)
    base = rng.normal(size=n_features)
    similar = [base + rng.normal(0, 0.1, size=n_features) for _ in range(3)]
    outlier = rng.normal(size=n_features)
    return np.vstack(similar + [outlier])


class TestCorrelationDistance:
    def test_distance_properties(self):
        values = _outlier_group()
        d = correlation_distance(values)
        assert np.allclose(np.diag(d), 0.0)
        assert np.allclose(d, d.T)
        assert d.min() >= 0.0 and d.max() <= 2.0
        assert d[0, 1] < 0.25
        assert d[0, 3] > 0.25

    def test_constant_sample_is_uncorrelated(self):
        values = np.vstack([np.arange(5.0), np.full(5, 2.0), np.arange(5.0) * 2])
        d = correlation_distance(values)
        assert d[0, 1] == pytest.approx(1.0)
        assert d[0, 2] == pytest.approx(0.0)


class TestClustering:
    def test_outlier_forms_its_own_cluster(self):
        assignments = cluster_samples(_outlier_group(), cut_height=0.25)
        assert assignments[0] == assignments[1] == assignments[2]
        assert assignments[3] != assignments[0]

    def test_single_sample(self):
        assert list(cluster_samples(np.ones((1, 4)))) == [1]

    def test_largest_cluster_tie_goes_to_earliest_sample(self):
        assert largest_cluster(np.array([2, 2, 1, 1])).tolist() == [0, 1]
        assert largest_cluster(np.array([1, 2, 2, 1])).tolist() == [0, 3]

    def test_largest_cluster_by_size(self):
        assert largest_cluster(np.array([1, 2, 2, 2, 1])).tolist() == [1, 2, 3]


class TestCorrelationClusterFilter:
    def test_outlier_is_removed(self):
        dataset = _group(_outlier_group())
        sample_filter = CorrelationClusterFilter(cut_height=0.25, min_group_size=3)
        filtered = sample_filter.apply(dataset)
        assert filtered.samples == ['s0', 's1', 's2']
        report = sample_filter.report_frame()
        assert report.loc[0, 'n_input'] == 4
        assert report.loc[0, 'n_retained'] == 3
        assert not report.loc[0, 'dropped']

    def test_tight_group_is_unchanged(self):
        dataset = make_dataset(n_features=50)
        filtered = CorrelationClusterFilter().apply(dataset)
        assert filtered.samples == dataset.samples
        assert filtered.batches.tolist() == dataset.batches.tolist()

    def test_output_is_subset_with_high_within_group_correlation(self):
        dataset = _group(_outlier_group())
        filtered = CorrelationClusterFilter(min_group_size=3).apply(dataset)
        assert set(filtered.samples) <= set(dataset.samples)
        r = np.corrcoef(filtered.values())
        assert r.min() >= 0.75

    def test_small_group_is_dropped_and_reported(self):
        dataset = make_dataset(n_per_class={'M0': 8, 'IFN': 8, 'LPS': 3, 'LPS_IFN': 8}, n_features=50)
        sample_filter = CorrelationClusterFilter(min_group_size=5)
        filtered = sample_filter.apply(dataset)
        assert 'LPS' not in set(filtered.labels)
        report = sample_filter.report_frame().set_index('group')
        assert report.loc['LPS', 'dropped']
        assert 'minimum group size' in report.loc['LPS', 'reason']
        assert report.loc['M0', 'n_retained'] == 8

    def test_group_dropped_when_largest_cluster_too_small(self):
        dataset = _group(_outlier_group())
        sample_filter = CorrelationClusterFilter(min_group_size=4)
        with pytest.raises(InsufficientGroups):
            sample_filter.apply(dataset)
        assert sample_filter.reports[0].dropped

    def test_groups_are_filtered_independently(self):
        first = _group(_outlier_group(seed=3), label='M0', prefix='a')
        second = _group(_outlier_group(seed=4), label='IFN', prefix='b')
        combined = ExpressionDataset(
            pd.concat([first.expression, second.expression]),
            pd.concat([first.metadata, second.metadata]),
        )
        filtered = CorrelationClusterFilter(min_group_size=3).apply(combined)
        assert filtered.samples == ['a0', 'a1', 'a2', 'b0', 'b1', 'b2']

    def test_unlabeled_cohort_is_one_group(self):
        dataset = make_dataset(n_per_class=6, n_features=50, labels=('M0',))
        unlabeled = ExpressionDataset(dataset.expression, dataset.metadata.assign(label=pd.NA))
        sample_filter = CorrelationClusterFilter()
        filtered = sample_filter.apply(unlabeled)
        assert len(filtered) == 6
        assert sample_filter.reports[0].group == 'unlabeled'

    def test_unlabeled_samples_form_their_own_group(self):
        dataset = make_dataset(n_per_class=6, n_features=50)
        metadata = dataset.metadata
        metadata.loc[metadata['label'] == 'LPS', 'label'] = None
        metadata.loc['M0_00', 'label'] = None
        mixed = ExpressionDataset(dataset.expression, metadata)

        sample_filter = CorrelationClusterFilter(min_group_size=5)
        filtered = sample_filter.apply(mixed)
        report = sample_filter.report_frame().set_index('group')

        assert report.index.tolist() == ['M0', 'IFN', 'LPS_IFN', 'unlabeled']
        assert report.loc['unlabeled', 'n_input'] == 7
        # The six LPS samples cluster together; the M0 sample does not join them
        assert report.loc['unlabeled', 'n_retained'] == 6
        assert set(dataset.samples) - set(filtered.samples) == {'M0_00'}
