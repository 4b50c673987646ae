"""
Utility module for classification results.

Writes the result tables of a run (filter reports, ANOVA statistics,
per-round importance and performance, external predictions), saves and
loads the trained model bundle, and prints run summaries.
"""

import datetime
import logging
import os
import platform
import sys
import textwrap

import joblib

from ..models.classification import TrainedModel

logger = logging.getLogger(__name__)

MODEL_BUNDLE_NAME = 'model_bundle.joblib'
BUNDLE_FORMAT_VERSION = 1


def create_results_dir(base_dir="results", prefix="polarization_rf"):
    """Create a unique timestamped results directory"""
    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    results_dir = os.path.join(base_dir, f"{prefix}_{timestamp}")
    os.makedirs(results_dir, exist_ok=True)
    return results_dir


def _save_csv(frame, results_dir, filename, index=True):
    path = os.path.join(results_dir, filename)
    frame.to_csv(path, index=index)
    logger.info("Saved %s", path)
    return path


def save_filter_report(report, results_dir, filename='sample_filter_report.csv'):
    return _save_csv(report, results_dir, filename, index=False)


def save_anova_results(anova_result, results_dir):
    """
    Save the ANOVA table and the retained feature list.

    Returns:
        Tuple of (table path, retained features path)
    """
    table_path = _save_csv(anova_result.table, results_dir, 'anova_feature_tests.csv')
    retained = anova_result.table.loc[anova_result.selected, ['p_value', 'p_adjusted']]
    retained_path = _save_csv(retained, results_dir, 'anova_retained_features.csv')
    return table_path, retained_path


def save_round_results(record, results_dir):
    """
    Save importance, confusion matrix, per-class metrics and test predictions
    of one pruning round.
    """
    prefix = f"round{record.index}"
    paths = [
        _save_csv(record.importance, results_dir, f"{prefix}_feature_importance.csv"),
        _save_csv(record.performance.confusion, results_dir, f"{prefix}_confusion_matrix.csv"),
        _save_csv(record.performance.per_class, results_dir, f"{prefix}_per_class_metrics.csv"),
    ]
    if record.result.test_predictions is not None:
        paths.append(_save_csv(record.result.test_predictions, results_dir, f"{prefix}_test_predictions.csv"))
    return paths


def save_pruning_results(pruning_result, results_dir):
    """Save every round plus a one-row-per-round summary"""
    for record in pruning_result.rounds:
        save_round_results(record, results_dir)
    return _save_csv(pruning_result.summary_frame(), results_dir, 'pruning_rounds_summary.csv', index=False)


def save_external_predictions(external_prediction, results_dir, filename='external_predictions.csv'):
    paths = [
        _save_csv(external_prediction.predictions, results_dir, filename),
        _save_csv(external_prediction.filter_report, results_dir, 'external_filter_report.csv', index=False),
    ]
    if external_prediction.performance is not None:
        paths.append(_save_csv(external_prediction.performance.confusion, results_dir,
                               'external_confusion_matrix.csv'))
        paths.append(_save_csv(external_prediction.performance.per_class, results_dir,
                               'external_per_class_metrics.csv'))
    return paths


def save_model_bundle(model, results_dir, importance=None, config=None, filename=MODEL_BUNDLE_NAME):
    """
    Serialize a trained model with its schema, hyperparameters and label order.

    Args:
        model: TrainedModel
        results_dir: output directory
        importance: optional feature importance table stored alongside
        config: optional PipelineConfig stored for provenance
        filename: bundle file name

    Returns:
        Path of the written bundle
    """
    bundle = {
        'format_version': BUNDLE_FORMAT_VERSION,
        'model': model,
        'feature_schema': list(model.feature_schema),
        'hyperparameters': model.hyperparameters.to_dict(),
        'label_set': model.label_set.to_dict(),
        'importance': importance,
        'config': config.to_dict() if config is not None else None,
        'created_at': str(datetime.datetime.now()),
        'session_info': {
            'python': sys.version,
            'platform': platform.platform(),
        },
    }
    path = os.path.join(results_dir, filename)
    joblib.dump(bundle, path)
    logger.info("Saved model bundle to %s", path)
    return path


def load_model_bundle(path):
    """
    Load a bundle written by save_model_bundle.

    Returns:
        Tuple of (TrainedModel, bundle dict)
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Model bundle not found: {path}")
    bundle = joblib.load(path)
    if not isinstance(bundle, dict) or 'model' not in bundle:
        raise ValueError(f"{path} is not a model bundle")
    if bundle.get('format_version') != BUNDLE_FORMAT_VERSION:
        raise ValueError(
            f"Unsupported model bundle version {bundle.get('format_version')} in {path}"
        )
    model = bundle['model']
    if not isinstance(model, TrainedModel):
        raise ValueError(f"{path} does not contain a trained model")
    if list(model.feature_schema) != list(bundle['feature_schema']):
        raise ValueError(f"Model bundle {path} has an inconsistent feature schema")
    logger.info(
        "Loaded model with %d features, %d trees, labels %s",
        model.n_features, len(model.trees), list(model.label_set),
    )
    return model, bundle


def print_round_results(pruning_result):
    """
    Print a summary of every pruning round.

    Args:
        pruning_result: PruningResult
    """
    print("\nPruning Rounds Summary:")
    print("=" * 80)

    for record in pruning_result.rounds:
        perf = record.performance
        print(f"\nRound {record.index}: {record.n_features} features "
              f"({record.split_candidates} split candidates)")
        print("-" * 40)
        print(f"  Accuracy: {perf.accuracy:.4f}")
        print(f"  Balanced Accuracy: {perf.balanced_accuracy:.4f}")
        print(f"  Macro F1: {perf.f1_macro:.4f}")
        print("  Confusion matrix (rows = true, columns = predicted):")
        print(textwrap.indent(perf.confusion.to_string(), "    "))

        top = record.importance.head(5)
        print("  Top features:")
        for i, (feature, score) in enumerate(zip(top.index, top['importance']), 1):
            print(f"    {i}. {feature}: {score:.4f}")


def print_external_results(external_prediction):
    """Print the predicted class distribution and, if available, accuracy"""
    predictions = external_prediction.predictions
    print("\nExternal Classification Summary:")
    print("=" * 80)
    print(f"  Samples classified: {len(predictions)}")
    counts = predictions['predicted_label'].value_counts()
    for label, count in counts.items():
        print(f"    {label}: {count}")

    perf = external_prediction.performance
    if perf is not None:
        print(f"  Accuracy: {perf.accuracy:.4f}")
        print(f"  Balanced Accuracy: {perf.balanced_accuracy:.4f}")
    else:
        print("  Accuracy: N/A (no known labels)")
