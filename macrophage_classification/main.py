"""
Main module for macrophage polarization classification.
Filters outlier samples, selects features by ANOVA, trains and prunes a
class-weighted Random Forest, and applies the final model to external cohorts.
"""

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from typing import List

import numpy as np
import pandas as pd

from .config import PipelineConfig
from .data.data_loader import (
    ClassWeights, calculate_class_weights, load_dataset, split_train_test
)
from .data.dataset import ExpressionDataset, LabelSet
from .errors import ClassificationPipelineError, InsufficientGroups
from .features.feature_selection import AnovaFeatureSelector, AnovaResult
from .features.sample_filter import CorrelationClusterFilter
from .models.classification import RandomForestTrainer
from .models.external import ExternalClassifier
from .models.pruning import IterativePruner, PruningResult
from .utils.logging_utils import configure_logging
from .utils.results_io import (
    create_results_dir, load_model_bundle, print_external_results,
    print_round_results, save_anova_results, save_external_predictions,
    save_filter_report, save_model_bundle, save_pruning_results
)

logger = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    """Everything produced by one training run"""

    config: PipelineConfig
    label_set: LabelSet
    filtered: ExpressionDataset
    filter_report: pd.DataFrame
    anova: AnovaResult
    class_weights: ClassWeights
    train_samples: List[str]
    test_samples: List[str]
    pruning: PruningResult

    @property
    def final_model(self):
        return self.pruning.final_model

    @property
    def final_importance(self):
        return self.pruning.final_importance


def _restrict_to_known_labels(dataset, label_set):
    """Drop samples whose label is missing or outside the configured label set"""
    labels = dataset.labels
    known = labels.isin(list(label_set.labels))
    if not known.all():
        unknown = sorted({str(l) for l in labels[~known].dropna().unique()})
        logger.warning(
            "Ignoring %d samples with missing or unknown labels %s",
            int((~known).sum()), unknown,
        )
    return dataset.select_labels(label_set.labels)


def run_training_pipeline(dataset, config=None):
    """
    Train the pruned Random Forest from a labeled expression dataset.

    Args:
        dataset: ExpressionDataset with class and batch labels
        config: PipelineConfig; defaults are used when omitted

    Returns:
        PipelineResult
    """
    config = (config or PipelineConfig()).validate()
    # One generator per run, shared by the split, the bootstraps and the trees
    rng = np.random.default_rng(config.random_seed)
    label_set = LabelSet(config.label_order)

    dataset = _restrict_to_known_labels(dataset, label_set)
    if len(dataset) == 0:
        raise InsufficientGroups([], required=2, stage="training")

    # 1) Sample QC per class
    sample_filter = CorrelationClusterFilter.from_config(config)
    filtered = sample_filter.apply(dataset)
    label_set = label_set.restrict(filtered.labels.unique())
    if len(label_set) < 2:
        raise InsufficientGroups(list(label_set.labels), required=2, stage="training")

    # 2) ANOVA feature selection on the filtered samples
    selector = AnovaFeatureSelector(alpha=config.anova_alpha, n_jobs=config.n_jobs)
    anova = selector.select(filtered)
    if not anova.selected:
        raise ClassificationPipelineError(
            f"No features passed ANOVA at adjusted p < {config.anova_alpha}"
        )
    selected = filtered.subset_features(anova.selected)

    # 3) Class weights from the filtered cohort, then the train/test partition;
    #    both stay fixed for every pruning round
    class_weights = calculate_class_weights(selected.labels)
    train_pos, test_pos = split_train_test(len(selected), config.train_fraction, rng)
    samples = selected.samples
    train = selected.subset_samples([samples[i] for i in train_pos])
    test = selected.subset_samples([samples[i] for i in test_pos])
    train_weights = class_weights.sample_weights[train_pos]

    # 4) Train, rank and prune
    trainer = RandomForestTrainer.from_config(config)
    pruner = IterativePruner.from_config(trainer, config)
    pruning = pruner.run(
        train, test, train_weights, label_set, rng, seed=config.random_seed
    )

    return PipelineResult(
        config=config,
        label_set=label_set,
        filtered=filtered,
        filter_report=sample_filter.report_frame(),
        anova=anova,
        class_weights=class_weights,
        train_samples=train.samples,
        test_samples=test.samples,
        pruning=pruning,
    )


def run_external_classification(model, dataset, config=None):
    """
    Classify an out-of-study cohort with a trained model.

    Args:
        model: TrainedModel from run_training_pipeline or a saved bundle
        dataset: batch-corrected ExpressionDataset of new samples
        config: PipelineConfig for the cohort's sample filter

    Returns:
        ExternalPrediction
    """
    config = (config or PipelineConfig()).validate()
    classifier = ExternalClassifier(
        model, sample_filter=CorrelationClusterFilter.from_config(config), n_jobs=config.n_jobs
    )
    return classifier.classify(dataset)


def save_training_outputs(result, results_dir):
    """Write every table of a training run plus the model bundle"""
    os.makedirs(results_dir, exist_ok=True)
    save_filter_report(result.filter_report, results_dir)
    save_anova_results(result.anova, results_dir)
    save_pruning_results(result.pruning, results_dir)
    weights = pd.DataFrame(
        {'weight': pd.Series(result.class_weights.class_weights)}
    ).rename_axis('class')
    weights.to_csv(os.path.join(results_dir, 'class_weights.csv'))
    return save_model_bundle(
        result.final_model, results_dir, importance=result.final_importance, config=result.config
    )


def _parse_schedule(text):
    try:
        return [int(k) for k in text.split(',') if k.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"prune schedule must be comma-separated integers, got '{text}'")


def _parse_labels(text):
    return [label.strip() for label in text.split(',') if label.strip()]


def build_parser():
    """Create the command line parser"""
    parser = argparse.ArgumentParser(
        prog='macrophage-classify',
        description="Sample QC, ANOVA feature selection and class-weighted Random Forest "
                    "classification of macrophage polarization states",
    )
    parser.add_argument("--log-file", help="Also write log output to this file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    def add_inputs(p, metadata_required):
        p.add_argument("-e", "--expression", required=True,
                       help="Expression matrix (CSV/TSV, samples in rows) or .h5ad file")
        p.add_argument("-m", "--metadata", required=metadata_required,
                       help="Sample metadata table (sample id index, label and batch columns)")
        p.add_argument("--transpose", action="store_true",
                       help="Expression file has features in rows and samples in columns")
        p.add_argument("-c", "--config", help="JSON file with pipeline options")
        p.add_argument("-o", "--out-dir", help="Output directory (default: timestamped dir under results/)")
        p.add_argument("--label-column", help="Metadata column with the class label (default: label)")
        p.add_argument("--batch-column", help="Metadata column with the batch id (default: batch)")
        p.add_argument("--correlation-cut-height", type=float,
                       help="Dendrogram cut height on 1 - r (default: 0.25)")
        p.add_argument("--min-group-size", type=int, help="Minimum samples per class (default: 5)")
        p.add_argument("--n-jobs", type=int, help="Parallel workers, -1 for all cores (default: 1)")

    train = sub.add_parser("train", help="Train and prune a model")
    add_inputs(train, metadata_required=False)
    train.add_argument("--anova-alpha", type=float, help="BH-adjusted p-value threshold (default: 0.05)")
    train.add_argument("--tree-count", type=int, help="Trees per forest (default: 1500)")
    train.add_argument("--max-depth", type=int, help="Maximum tree depth (default: 15)")
    train.add_argument("--split-candidates", type=int,
                       help="Features tried per split (default: ceil(sqrt(features)))")
    train.add_argument("--train-fraction", type=float, help="Training share of samples (default: 0.7)")
    train.add_argument("--prune-schedule", type=_parse_schedule,
                       help="Comma-separated feature counts per pruning round (default: 10000,1000)")
    train.add_argument("--max-rounds", type=int, help="Maximum training rounds including round 0")
    train.add_argument("--importance-method", choices=['oob', 'holdout'],
                       help="Permutation importance on out-of-bag or test samples (default: oob)")
    train.add_argument("--random-seed", type=int, help="Seed for the run (default: 42)")
    train.add_argument("--labels", type=_parse_labels,
                       help="Comma-separated class label order (default: M0,IFN,LPS,LPS_IFN)")

    predict = sub.add_parser("predict", help="Classify an external cohort with a saved model")
    add_inputs(predict, metadata_required=False)
    predict.add_argument("--model", required=True, help="Model bundle written by 'train'")
    return parser


def config_from_args(args):
    """PipelineConfig from an optional JSON file overridden by command line options"""
    config = PipelineConfig.from_json(args.config) if args.config else PipelineConfig()
    overrides = {
        'label_column': args.label_column,
        'batch_column': args.batch_column,
        'correlation_cut_height': args.correlation_cut_height,
        'min_group_size': args.min_group_size,
        'n_jobs': args.n_jobs,
    }
    if args.command == 'train':
        overrides.update({
            'anova_alpha': args.anova_alpha,
            'tree_count': args.tree_count,
            'max_depth': args.max_depth,
            'split_candidates': args.split_candidates,
            'train_fraction': args.train_fraction,
            'prune_schedule': args.prune_schedule,
            'max_rounds': args.max_rounds,
            'importance_method': args.importance_method,
            'random_seed': args.random_seed,
            'label_order': args.labels,
        })
    return config.with_overrides(**overrides).validate()


def _train_command(args, config):
    results_dir = args.out_dir or create_results_dir()
    dataset = load_dataset(
        args.expression, args.metadata, config.label_column, config.batch_column,
        transpose=args.transpose,
    )
    result = run_training_pipeline(dataset, config)
    bundle_path = save_training_outputs(result, results_dir)
    print_round_results(result.pruning)
    print(f"\nModel bundle: {bundle_path}")
    print(f"Analysis complete. All results saved to {results_dir}")


def _predict_command(args, config):
    results_dir = args.out_dir or create_results_dir(prefix="external_predictions")
    os.makedirs(results_dir, exist_ok=True)
    model, _ = load_model_bundle(args.model)
    dataset = load_dataset(
        args.expression, args.metadata, config.label_column, config.batch_column,
        transpose=args.transpose, require_metadata=False,
    )
    prediction = run_external_classification(model, dataset, config)
    save_external_predictions(prediction, results_dir)
    print_external_results(prediction)
    print(f"\nPredictions saved to {results_dir}")


def main(argv=None):
    """Command line entry point; returns the process exit code"""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_file, logging.DEBUG if args.verbose else logging.INFO)

    try:
        config = config_from_args(args)
        if args.command == 'train':
            _train_command(args, config)
        else:
            _predict_command(args, config)
        return 0

    except KeyboardInterrupt:
        logger.warning("Processing interrupted by user")
        return 130

    except (ClassificationPipelineError, ValueError, FileNotFoundError) as e:
        logger.error("Pipeline failed: %s", e)
        return 1


def cli():
    sys.exit(main())


if __name__ == '__main__':
    cli()
