import json
import os

import joblib
import pandas as pd
import pytest

from macrophage_classification.config import PipelineConfig
from macrophage_classification.data.dataset import ExpressionDataset
from macrophage_classification.errors import InsufficientGroups, SchemaMismatch
from macrophage_classification.main import (
    main, run_external_classification, run_training_pipeline, save_training_outputs
)
from macrophage_classification.utils.results_io import load_model_bundle

from conftest import make_dataset


@pytest.fixture(scope='module')
def pipeline_result():
    config = PipelineConfig(tree_count=25, max_depth=5, prune_schedule=(100, 10), random_seed=7)
    return run_training_pipeline(make_dataset(), config)


class TestTrainingPipeline:
    def test_balanced_cohort_end_to_end(self, pipeline_result):
        result = pipeline_result

        assert len(result.filtered) == 40
        assert result.anova.n_selected > 100
        assert len(result.train_samples) == 28
        assert len(result.test_samples) == 12
        assert not set(result.train_samples) & set(result.test_samples)

        weights = result.class_weights.class_weights
        assert weights == pytest.approx({'M0': 0.75, 'IFN': 0.75, 'LPS': 0.75, 'LPS_IFN': 0.75})

        rounds = result.pruning.rounds
        assert len(rounds) == 3
        assert [r.n_features for r in rounds][1:] == [100, 10]
        assert result.final_model.n_features <= 10
        assert result.final_model.hyperparameters.tree_count == 25

    def test_filter_and_selection_are_recorded(self, pipeline_result):
        report = pipeline_result.filter_report
        assert report['group'].tolist() == ['M0', 'IFN', 'LPS', 'LPS_IFN']
        assert not report['dropped'].any()
        assert pipeline_result.anova.table['selected'].sum() == pipeline_result.anova.n_selected

    def test_same_seed_same_outputs(self, pipeline_result):
        config = pipeline_result.config
        again = run_training_pipeline(make_dataset(), config)

        assert again.anova.selected == pipeline_result.anova.selected
        assert again.test_samples == pipeline_result.test_samples
        assert [r.features for r in again.pruning.rounds] == \
            [r.features for r in pipeline_result.pruning.rounds]
        pd.testing.assert_frame_equal(
            again.pruning.final.performance.confusion,
            pipeline_result.pruning.final.performance.confusion,
        )

    def test_unknown_and_missing_labels_are_ignored(self):
        dataset = make_dataset(n_features=30)
        extra = make_dataset(n_per_class=6, n_features=30, labels=('M2',), prefix='x_')
        expression = pd.concat([dataset.expression, extra.expression])
        metadata = pd.concat([dataset.metadata, extra.metadata])
        metadata.loc['x_M2_00', 'label'] = None
        config = PipelineConfig(tree_count=10, max_depth=4, prune_schedule=(10,))

        result = run_training_pipeline(ExpressionDataset(expression, metadata), config)
        assert len(result.filtered) == 40
        assert result.label_set.labels == ('M0', 'IFN', 'LPS', 'LPS_IFN')

    def test_dropped_class_is_left_out_of_the_label_set(self):
        dataset = make_dataset(n_per_class={'M0': 10, 'IFN': 10, 'LPS': 10, 'LPS_IFN': 3},
                               n_features=30)
        config = PipelineConfig(tree_count=10, max_depth=4, prune_schedule=(10,))
        result = run_training_pipeline(dataset, config)
        assert result.label_set.labels == ('M0', 'IFN', 'LPS')
        assert result.final_model.labels == ['M0', 'IFN', 'LPS']

    def test_one_surviving_class_is_rejected(self):
        dataset = make_dataset(n_per_class={'M0': 10, 'IFN': 2}, n_features=20, labels=('M0', 'IFN'))
        with pytest.raises(InsufficientGroups):
            run_training_pipeline(dataset, PipelineConfig(tree_count=5))


class TestExternalClassification:
    def test_new_cohort_is_classified(self, pipeline_result):
        cohort = make_dataset(n_per_class=6, sample_seed=50, prefix='ext_')
        prediction = run_external_classification(pipeline_result.final_model, cohort)
        assert len(prediction.predictions) == 24
        assert prediction.performance.accuracy >= 0.75

    def test_missing_schema_feature(self, pipeline_result):
        model = pipeline_result.final_model
        cohort = make_dataset(n_per_class=6, sample_seed=50, prefix='ext_')
        partial = cohort.subset_features([f for f in cohort.features if f != model.feature_schema[0]])
        with pytest.raises(SchemaMismatch):
            run_external_classification(model, partial)


class TestOutputs:
    def test_saved_outputs_and_bundle(self, pipeline_result, tmp_path):
        bundle_path = save_training_outputs(pipeline_result, str(tmp_path))

        for name in ('sample_filter_report.csv', 'anova_feature_tests.csv', 'class_weights.csv',
                     'pruning_rounds_summary.csv', 'round0_feature_importance.csv',
                     'round2_confusion_matrix.csv'):
            assert (tmp_path / name).exists(), name

        model, bundle = load_model_bundle(bundle_path)
        assert model.feature_schema == pipeline_result.final_model.feature_schema
        assert bundle['label_set']['labels'] == ['M0', 'IFN', 'LPS', 'LPS_IFN']
        assert bundle['hyperparameters']['tree_count'] == 25
        assert bundle['config']['random_seed'] == 7

        cohort = make_dataset(n_per_class=6, sample_seed=50, prefix='ext_')
        features = list(model.feature_schema)
        original = pipeline_result.final_model.predict(cohort.expression[features])
        assert model.predict(cohort.expression[features]) == original

    def test_load_rejects_other_files(self, tmp_path):
        path = tmp_path / 'not_a_bundle.joblib'
        joblib.dump({'something': 1}, path)
        with pytest.raises(ValueError):
            load_model_bundle(str(path))


def _write_cohort(dataset, directory, stem):
    expression_path = os.path.join(directory, f'{stem}_expression.csv')
    metadata_path = os.path.join(directory, f'{stem}_metadata.csv')
    dataset.expression.rename_axis('sample_id').to_csv(expression_path)
    dataset.metadata.rename_axis('sample_id').to_csv(metadata_path)
    return expression_path, metadata_path


class TestCommandLine:
    def test_train_then_predict(self, tmp_path):
        train_expr, train_meta = _write_cohort(make_dataset(n_features=30), str(tmp_path), 'train')
        ext_expr, ext_meta = _write_cohort(
            make_dataset(n_per_class=6, n_features=30, sample_seed=8, prefix='ext_'),
            str(tmp_path), 'external',
        )
        train_dir = tmp_path / 'train_out'
        config_path = tmp_path / 'config.json'
        config_path.write_text(json.dumps({'max_depth': 4, 'random_seed': 3}))

        code = main([
            'train', '-e', train_expr, '-m', train_meta, '-o', str(train_dir),
            '-c', str(config_path), '--tree-count', '10', '--prune-schedule', '20,5',
        ])
        assert code == 0
        bundle_path = train_dir / 'model_bundle.joblib'
        assert bundle_path.exists()
        summary = pd.read_csv(train_dir / 'pruning_rounds_summary.csv')
        assert summary['n_features'].tolist()[1:] == [20, 5]

        predict_dir = tmp_path / 'predict_out'
        code = main([
            'predict', '-e', ext_expr, '-m', ext_meta, '--model', str(bundle_path),
            '-o', str(predict_dir),
        ])
        assert code == 0
        predictions = pd.read_csv(predict_dir / 'external_predictions.csv', index_col=0)
        assert len(predictions) == 24
        assert 'predicted_label' in predictions.columns

    def test_failure_exit_code(self, tmp_path):
        code = main(['train', '-e', str(tmp_path / 'absent.csv'), '-m', str(tmp_path / 'absent_meta.csv'),
                     '-o', str(tmp_path / 'out')])
        assert code == 1

    def test_invalid_option_exit_code(self, tmp_path):
        expr, meta = _write_cohort(make_dataset(n_features=10), str(tmp_path), 'train')
        code = main(['train', '-e', expr, '-m', meta, '-o', str(tmp_path / 'out'),
                     '--train-fraction', '1.5'])
        assert code == 1
