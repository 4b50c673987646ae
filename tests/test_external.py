import numpy as np
import pandas as pd
import pytest

from macrophage_classification.data.data_loader import calculate_class_weights
from macrophage_classification.data.dataset import ExpressionDataset, LabelSet
from macrophage_classification.errors import SchemaMismatch
from macrophage_classification.features.sample_filter import CorrelationClusterFilter
from macrophage_classification.models.classification import (
    Hyperparameters, RandomForestTrainer, TrainedModel
)
from macrophage_classification.models.external import ExternalClassifier

from conftest import LABELS, ConstantTree, make_dataset


@pytest.fixture(scope='module')
def model():
    dataset = make_dataset(n_features=40)
    weights = calculate_class_weights(dataset.labels).sample_weights
    trainer = RandomForestTrainer(tree_count=20, max_depth=4)
    schema = dataset.features[::2]
    train = dataset.subset_features(schema)
    result = trainer.train(train, train, weights, LabelSet(LABELS), np.random.default_rng(0))
    return result.model


def _cohort(**kwargs):
    """Same classes as the training cohort, new samples"""
    return make_dataset(n_features=40, sample_seed=99, prefix='ext_', **kwargs)


def test_cohort_is_classified(model):
    cohort = _cohort(n_per_class=6)
    prediction = ExternalClassifier(model).classify(cohort)

    frame = prediction.predictions
    assert frame.index.tolist() == cohort.samples
    assert set(frame['predicted_label']) <= set(model.labels)
    assert frame[[f'prob_{l}' for l in model.labels]].sum(axis=1).to_numpy() == pytest.approx(1.0)
    assert frame['batch'].tolist() == cohort.batches.tolist()
    assert prediction.performance is not None
    assert prediction.performance.n_samples == len(cohort)
    assert prediction.performance.accuracy >= 0.9


def test_extra_and_reordered_features_are_aligned(model):
    cohort = _cohort(n_per_class=6)
    shuffled = cohort.expression[cohort.features[::-1]]
    shuffled['unrelated_gene'] = 1.0
    reordered = ExpressionDataset(shuffled, cohort.metadata)

    expected = ExternalClassifier(model).classify(cohort).label_table()
    actual = ExternalClassifier(model).classify(reordered).label_table()
    pd.testing.assert_series_equal(expected, actual)


def test_missing_schema_feature_predicts_nothing(model):
    cohort = _cohort(n_per_class=6)
    dropped = model.feature_schema[3]
    partial = cohort.subset_features([f for f in cohort.features if f != dropped])
    classifier = ExternalClassifier(model)
    with pytest.raises(SchemaMismatch) as info:
        classifier.classify(partial)
    assert info.value.missing == [dropped]
    assert classifier.sample_filter.reports == []


def test_outlier_samples_are_filtered_first(model):
    cohort = _cohort(n_per_class=6)
    expression = cohort.expression
    expression.loc['ext_M0_00'] = np.random.default_rng(5).normal(size=cohort.shape[1])
    noisy = ExpressionDataset(expression, cohort.metadata)

    prediction = ExternalClassifier(model).classify(noisy)
    assert 'ext_M0_00' not in prediction.predictions.index
    report = prediction.filter_report.set_index('group')
    assert report.loc['M0', 'n_retained'] == 5


def test_unlabeled_cohort(model):
    cohort = _cohort(n_per_class=3)
    unlabeled = ExpressionDataset(cohort.expression, cohort.metadata.assign(label=pd.NA))
    classifier = ExternalClassifier(model, sample_filter=CorrelationClusterFilter(cut_height=2.0))
    prediction = classifier.classify(unlabeled)
    assert prediction.performance is None
    assert len(prediction.predictions) == 12


def test_model_is_not_changed_by_inference(model):
    schema = model.feature_schema
    trees = model.trees
    ExternalClassifier(model).classify(_cohort(n_per_class=6))
    assert model.feature_schema == schema
    assert model.trees is trees


def test_unlabeled_samples_are_filtered_and_predicted(model):
    cohort = _cohort(n_per_class=6)
    metadata = cohort.metadata
    metadata.loc[metadata['label'] == 'IFN', 'label'] = None
    metadata.loc['ext_M0_00', 'label'] = None
    prediction = ExternalClassifier(model).classify(ExpressionDataset(cohort.expression, metadata))

    frame = prediction.predictions
    ifn = [s for s in cohort.samples if s.startswith('ext_IFN_')]
    assert set(ifn) <= set(frame.index)
    assert frame.loc[ifn, 'true_label'].isna().all()
    assert (frame.loc[ifn, 'predicted_label'] == 'IFN').sum() >= 5

    report = prediction.filter_report.set_index('group')
    assert report.loc['unlabeled', 'n_input'] == 7
    assert report.loc['unlabeled', 'n_retained'] == 6
    # Every input sample is either predicted or counted as removed by the filter
    assert len(frame) + int((report['n_input'] - report['n_retained']).sum()) == len(cohort)
    assert prediction.performance.n_samples == 17


def test_trees_are_evaluated_once_per_cohort(label_set):
    cohort = _cohort(n_per_class=6)
    trees = (ConstantTree(1), ConstantTree(1), ConstantTree(2))
    stub = TrainedModel(
        trees=trees,
        feature_schema=tuple(cohort.features[:5]),
        hyperparameters=Hyperparameters(3, None, 2),
        label_set=label_set,
    )
    prediction = ExternalClassifier(stub).classify(cohort)

    assert [tree.calls for tree in trees] == [1, 1, 1]
    assert (prediction.predictions['predicted_label'] == 'IFN').all()
    assert prediction.predictions['prob_IFN'].to_numpy() == pytest.approx(2 / 3)
