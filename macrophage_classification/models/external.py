"""
Apply a trained model to an out-of-study cohort.

The new cohort is quality-filtered with its own correlation clustering
filter, restricted and reordered to the model's feature schema, and
classified by majority vote. No retraining happens here.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import pandas as pd

from ..errors import SchemaMismatch
from ..features.sample_filter import CorrelationClusterFilter
from .classification import PerformanceRecord, evaluate_predictions

logger = logging.getLogger(__name__)


@dataclass
class ExternalPrediction:
    """Predictions for an external cohort"""

    predictions: pd.DataFrame
    filter_report: pd.DataFrame
    performance: Optional[PerformanceRecord] = None

    def label_table(self):
        """sample id -> predicted label"""
        return self.predictions['predicted_label'].copy()


class ExternalClassifier:
    """
    Inference-only wrapper around a TrainedModel.

    Args:
        model: TrainedModel to apply
        sample_filter: CorrelationClusterFilter for the new cohort; a default
            filter is created when omitted
        n_jobs: joblib workers for prediction
    """

    def __init__(self, model, sample_filter=None, n_jobs=1):
        self.model = model
        self.sample_filter = sample_filter if sample_filter is not None else CorrelationClusterFilter()
        self.n_jobs = n_jobs

    def check_features(self, dataset):
        """
        Raise SchemaMismatch if any schema feature is absent from ``dataset``.
        """
        available = set(dataset.features)
        missing = [f for f in self.model.feature_schema if f not in available]
        if missing:
            raise SchemaMismatch(missing=missing)

    def align(self, dataset):
        """Dataset restricted and reordered to the model's feature schema"""
        self.check_features(dataset)
        return self._select_schema(dataset)

    def _select_schema(self, dataset):
        extra = dataset.shape[1] - self.model.n_features
        if extra:
            logger.info("Ignoring %d features not in the model schema", extra)
        return dataset.subset_features(self.model.feature_schema)

    def classify(self, dataset):
        """
        Filter, align and classify an external cohort.

        Args:
            dataset: ExpressionDataset of new samples; class labels are optional
                and, when present, used for filter grouping and evaluation

        Returns:
            ExternalPrediction

        Raises:
            SchemaMismatch: if a schema feature is missing; nothing is predicted
        """
        logger.info(
            "Classifying external cohort: %d samples x %d features against a %d-feature model",
            dataset.shape[0], dataset.shape[1], self.model.n_features,
        )
        self.check_features(dataset)

        filtered = self.sample_filter.apply(dataset)
        # Schema presence was checked above; filtering only removes rows
        aligned = self._select_schema(filtered)

        frame = aligned.expression
        predicted, probabilities = self.model.predict_with_proba(frame, n_jobs=self.n_jobs)

        predictions = pd.DataFrame(
            {
                'predicted_label': predicted,
                'true_label': aligned.labels.to_numpy(),
                'batch': aligned.batches.to_numpy(),
            },
            index=pd.Index(aligned.samples, name='sample_id'),
        )
        predictions = pd.concat([predictions, probabilities], axis=1)

        performance = None
        known = aligned.labels.isin(list(self.model.label_set.labels)).to_numpy()
        if known.any():
            performance = evaluate_predictions(
                aligned.labels[known].tolist(),
                [p for p, k in zip(predicted, known) if k],
                self.model.label_set,
            )
            logger.info(
                "External accuracy %.4f on %d labeled samples",
                performance.accuracy, performance.n_samples,
            )

        counts = pd.Series(predicted).value_counts().to_dict()
        logger.info("Predicted class distribution: %s", counts)
        return ExternalPrediction(predictions, self.sample_filter.report_frame(), performance)
