"""
Random Forest classification for macrophage polarization states.

The forest is a bag of CART trees, each grown on a bootstrap of the training
rows drawn with probability proportional to the row's class weight, so
under-represented classes are resampled more often. Also provides permutation
feature importance and held-out evaluation.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.base import BaseEstimator, ClassifierMixin
from sklearn.inspection import permutation_importance
from sklearn.metrics import (
    accuracy_score, balanced_accuracy_score, confusion_matrix, f1_score
)
from sklearn.tree import DecisionTreeClassifier

from ..data.dataset import LabelSet
from ..errors import DegenerateWeight, SchemaMismatch

logger = logging.getLogger(__name__)

SEED_UPPER = 2 ** 31 - 1


@dataclass(frozen=True)
class Hyperparameters:
    tree_count: int
    max_depth: Optional[int]
    split_candidates: int

    def to_dict(self):
        return {
            'tree_count': self.tree_count,
            'max_depth': self.max_depth,
            'split_candidates': self.split_candidates,
        }


@dataclass(frozen=True)
class TrainedModel:
    """
    Fitted ensemble together with everything needed to apply it.

    Trees predict integer codes of ``label_set``; the feature schema is the
    exact, ordered column list the trees were fit on.
    """

    trees: Tuple[DecisionTreeClassifier, ...]
    feature_schema: Tuple[str, ...]
    hyperparameters: Hyperparameters
    label_set: LabelSet
    random_seed: Optional[int] = None

    @property
    def n_features(self):
        return len(self.feature_schema)

    @property
    def labels(self):
        return list(self.label_set.labels)

    def check_schema(self, columns):
        """
        Require ``columns`` to equal the feature schema, in order.

        Raises:
            SchemaMismatch: naming missing or unexpected features, or the
                first position where the order differs
        """
        columns = [str(c) for c in columns]
        schema = list(self.feature_schema)
        if columns == schema:
            return

        column_set, schema_set = set(columns), set(schema)
        missing = [f for f in schema if f not in column_set]
        unexpected = [c for c in columns if c not in schema_set]
        if missing or unexpected:
            raise SchemaMismatch(missing=missing, unexpected=unexpected)
        if len(columns) != len(schema):
            raise SchemaMismatch(detail=f"{len(columns) - len(schema)} duplicated feature column(s)")
        position = next(i for i, (a, b) in enumerate(zip(columns, schema)) if a != b)
        raise SchemaMismatch(position=position, detail=f"expected '{schema[position]}', got '{columns[position]}'")

    def _matrix(self, frame):
        if not isinstance(frame, pd.DataFrame):
            raise TypeError("Prediction input must be a pandas DataFrame with feature columns")
        self.check_schema(frame.columns)
        return frame.to_numpy(dtype=float)

    def vote_counts(self, frame, n_jobs=1):
        """Per-sample vote counts, columns in label_set order"""
        X = self._matrix(frame)
        return tree_votes(self.trees, X, len(self.label_set), n_jobs=n_jobs)

    def predict_codes(self, frame, n_jobs=1):
        """Majority-vote label codes; ties go to the lowest code"""
        return np.argmax(self.vote_counts(frame, n_jobs=n_jobs), axis=1)

    def predict(self, frame, n_jobs=1):
        """Predicted class label per row of ``frame``"""
        return self.label_set.decode(self.predict_codes(frame, n_jobs=n_jobs))

    def predict_proba(self, frame, n_jobs=1):
        """Vote fractions per class as a DataFrame indexed like ``frame``"""
        return self._vote_fractions(self.vote_counts(frame, n_jobs=n_jobs), frame.index)

    def predict_with_proba(self, frame, n_jobs=1):
        """
        Labels and vote fractions from a single pass over the trees.

        Returns:
            Tuple of (predicted labels, vote fraction DataFrame)
        """
        votes = self.vote_counts(frame, n_jobs=n_jobs)
        labels = self.label_set.decode(np.argmax(votes, axis=1))
        return labels, self._vote_fractions(votes, frame.index)

    def _vote_fractions(self, votes, index):
        return pd.DataFrame(
            votes / float(len(self.trees)),
            index=index,
            columns=[f"prob_{label}" for label in self.label_set],
        )


def _predict_tree_batch(trees, X):
    return [tree.predict(X) for tree in trees]


def tree_votes(trees, X, n_classes, n_jobs=1):
    """
    Count the class votes of every tree.

    Args:
        trees: fitted trees predicting integer class codes
        X: ndarray of samples
        n_classes: number of codes

    Returns:
        ndarray (samples x classes) of vote counts
    """
    votes = np.zeros((X.shape[0], n_classes), dtype=np.int64)
    rows = np.arange(X.shape[0])
    batches = _batches(list(trees), n_jobs)
    predictions = Parallel(n_jobs=n_jobs, prefer='threads')(
        delayed(_predict_tree_batch)(batch, X) for batch in batches
    )
    for batch_predictions in predictions:
        for pred in batch_predictions:
            votes[rows, pred.astype(np.int64)] += 1
    return votes


def _batches(items, n_jobs):
    n_batches = max(1, min(len(items), _effective_jobs(n_jobs)))
    size = int(math.ceil(len(items) / n_batches)) if items else 1
    return [items[i:i + size] for i in range(0, len(items), size)]


def _effective_jobs(n_jobs):
    if n_jobs is None:
        return 1
    if n_jobs < 0:
        return max(1, (os.cpu_count() or 1) + 1 + n_jobs)
    return max(1, n_jobs)


def _fit_tree(X, y, indices, max_depth, max_features, seed):
    tree = DecisionTreeClassifier(
        criterion='gini',
        max_depth=max_depth,
        max_features=max_features,
        random_state=seed,
    )
    tree.fit(X[indices], y[indices])
    return tree


def _oob_tree_importance(tree, X, y, oob_rows, seed):
    """
    Increase in one tree's out-of-bag error when each feature is permuted.

    Features the tree never splits on cannot change its predictions and get 0.
    Returns NaN for every feature when the tree has no out-of-bag rows.
    """
    n_features = X.shape[1]
    if len(oob_rows) == 0:
        return np.full(n_features, np.nan)

    rng = np.random.default_rng(seed)
    X_oob = X[oob_rows]
    y_oob = y[oob_rows]
    base_error = np.mean(tree.predict(X_oob) != y_oob)

    increase = np.zeros(n_features)
    split_features = tree.tree_.feature
    for j in np.unique(split_features[split_features >= 0]):
        original = X_oob[:, j].copy()
        X_oob[:, j] = rng.permutation(original)
        increase[j] = np.mean(tree.predict(X_oob) != y_oob) - base_error
        X_oob[:, j] = original
    return increase


class _PrefitEnsemble(ClassifierMixin, BaseEstimator):
    """Adapter exposing a TrainedModel to sklearn's permutation_importance"""

    def __init__(self, model=None, n_jobs=1):
        self.model = model
        self.n_jobs = n_jobs

    def fit(self, X, y=None):
        return self

    def predict(self, X):
        return self.model.predict_codes(X, n_jobs=self.n_jobs)


def _accuracy_scorer(estimator, X, y):
    return accuracy_score(y, estimator.predict(X))


@dataclass
class PerformanceRecord:
    """Held-out performance of one model on one evaluation set"""

    confusion: pd.DataFrame
    per_class: pd.DataFrame
    accuracy: float
    balanced_accuracy: float
    f1_macro: float
    n_samples: int

    @property
    def n_correct(self):
        return int(np.trace(self.confusion.to_numpy()))

    def summary(self):
        return {
            'n_samples': self.n_samples,
            'n_correct': self.n_correct,
            'accuracy': self.accuracy,
            'balanced_accuracy': self.balanced_accuracy,
            'f1_macro': self.f1_macro,
        }


def _ratio(numerator, denominator):
    return numerator / denominator if denominator > 0 else np.nan


def evaluate_predictions(y_true, y_pred, label_set):
    """
    Confusion matrix and one-vs-rest metrics.

    Args:
        y_true: true class labels
        y_pred: predicted class labels
        label_set: LabelSet giving row/column order

    Returns:
        PerformanceRecord
    """
    labels = list(label_set.labels)
    y_true = [str(y) for y in y_true]
    y_pred = [str(y) for y in y_pred]
    if not y_true:
        raise ValueError("Cannot evaluate an empty prediction set")

    cm = confusion_matrix(y_true, y_pred, labels=labels)
    confusion = pd.DataFrame(
        cm,
        index=pd.Index(labels, name='true'),
        columns=pd.Index(labels, name='predicted'),
    )

    total = cm.sum()
    rows = []
    for i, label in enumerate(labels):
        tp = cm[i, i]
        fn = cm[i, :].sum() - tp
        fp = cm[:, i].sum() - tp
        tn = total - tp - fn - fp
        sensitivity = _ratio(tp, tp + fn)
        precision = _ratio(tp, tp + fp)
        if np.isnan(sensitivity) or np.isnan(precision) or (sensitivity + precision) == 0:
            f1 = np.nan
        else:
            f1 = 2 * precision * sensitivity / (precision + sensitivity)
        rows.append({
            'class': label,
            'support': int(tp + fn),
            'predicted': int(tp + fp),
            'sensitivity': sensitivity,
            'specificity': _ratio(tn, tn + fp),
            'precision': precision,
            'recall': sensitivity,
            'f1': f1,
        })
    per_class = pd.DataFrame(rows).set_index('class')

    present = [l for l in labels if l in set(y_true)]
    record = PerformanceRecord(
        confusion=confusion,
        per_class=per_class,
        accuracy=float(accuracy_score(y_true, y_pred)),
        balanced_accuracy=float(balanced_accuracy_score(y_true, y_pred)),
        f1_macro=float(f1_score(y_true, y_pred, labels=present, average='macro', zero_division=0)),
        n_samples=len(y_true),
    )
    return record


@dataclass
class TrainingResult:
    """Outputs of one train/evaluate pass"""

    model: TrainedModel
    importance: pd.DataFrame
    performance: PerformanceRecord
    test_predictions: pd.DataFrame = field(default=None)

    def ranked_features(self):
        return self.importance.index.tolist()


class RandomForestTrainer:
    """
    Weighted-bootstrap Random Forest with permutation feature importance.

    Args:
        tree_count: number of trees
        max_depth: maximum tree depth (None for unlimited)
        importance_method: 'oob' (per-tree out-of-bag) or 'holdout' (test split)
        importance_repeats: permutation repeats for the holdout method
        n_jobs: joblib workers for tree growth, prediction and importance
    """

    def __init__(self, tree_count=1500, max_depth=15, importance_method='oob',
                 importance_repeats=5, n_jobs=1):
        if importance_method not in ('oob', 'holdout'):
            raise ValueError(f"Unknown importance method: {importance_method}")
        self.tree_count = tree_count
        self.max_depth = max_depth
        self.importance_method = importance_method
        self.importance_repeats = importance_repeats
        self.n_jobs = n_jobs

    @classmethod
    def from_config(cls, config):
        return cls(
            tree_count=config.tree_count,
            max_depth=config.max_depth,
            importance_method=config.importance_method,
            importance_repeats=config.importance_repeats,
            n_jobs=config.n_jobs,
        )

    def fit(self, X, y_codes, sample_weights, features, label_set, split_candidates, rng, seed=None):
        """
        Grow the ensemble.

        Args:
            X: training ndarray (samples x features)
            y_codes: label codes of the training rows
            sample_weights: class weight per training row
            features: feature schema, in column order of X
            label_set: LabelSet the codes refer to
            split_candidates: features considered at each split
            rng: the run's numpy Generator
            seed: recorded on the model for provenance

        Returns:
            Tuple of (TrainedModel, in-bag mask array of shape trees x samples)
        """
        n_train = X.shape[0]
        weights = np.asarray(sample_weights, dtype=float)
        if len(weights) != n_train:
            raise ValueError(f"Got {len(weights)} sample weights for {n_train} training rows")
        if np.any(weights < 0):
            raise ValueError("Sample weights must be non-negative")
        if weights.sum() <= 0:
            only = label_set.decode(np.unique(y_codes))
            raise DegenerateWeight(", ".join(only))

        probabilities = weights / weights.sum()
        seeds = rng.integers(0, SEED_UPPER, size=self.tree_count)
        bootstraps = [
            rng.choice(n_train, size=n_train, replace=True, p=probabilities)
            for _ in range(self.tree_count)
        ]

        logger.info(
            "Growing %d trees (max depth %s, %d split candidates) on %d samples x %d features",
            self.tree_count, self.max_depth, split_candidates, n_train, X.shape[1],
        )
        trees = Parallel(n_jobs=self.n_jobs, prefer='threads')(
            delayed(_fit_tree)(X, y_codes, idx, self.max_depth, split_candidates, int(s))
            for idx, s in zip(bootstraps, seeds)
        )

        inbag = np.zeros((self.tree_count, n_train), dtype=bool)
        for t, idx in enumerate(bootstraps):
            inbag[t, idx] = True

        model = TrainedModel(
            trees=tuple(trees),
            feature_schema=tuple(str(f) for f in features),
            hyperparameters=Hyperparameters(self.tree_count, self.max_depth, int(split_candidates)),
            label_set=label_set,
            random_seed=seed,
        )
        return model, inbag

    def oob_importance(self, model, X, y_codes, inbag, rng):
        """Mean per-tree increase in out-of-bag error for each feature"""
        seeds = rng.integers(0, SEED_UPPER, size=len(model.trees))
        per_tree = Parallel(n_jobs=self.n_jobs, prefer='threads')(
            delayed(_oob_tree_importance)(tree, X, y_codes, np.flatnonzero(~inbag[t]), int(seeds[t]))
            for t, tree in enumerate(model.trees)
        )
        per_tree = np.vstack(per_tree)
        scored = ~np.isnan(per_tree[:, 0]) if per_tree.size else np.array([], dtype=bool)
        if not scored.any():
            logger.warning("No tree has out-of-bag samples; permutation importance set to 0")
            zeros = np.zeros(X.shape[1])
            return zeros, zeros
        return per_tree[scored].mean(axis=0), per_tree[scored].std(axis=0)

    def holdout_importance(self, model, test_frame, y_codes, rng):
        """Decrease in test accuracy when each feature is permuted"""
        result = permutation_importance(
            _PrefitEnsemble(model, n_jobs=1),
            test_frame,
            y_codes,
            scoring=_accuracy_scorer,
            n_repeats=self.importance_repeats,
            random_state=int(rng.integers(0, SEED_UPPER)),
            n_jobs=self.n_jobs,
        )
        return result.importances_mean, result.importances_std

    def feature_importance(self, model, X_train, y_train, inbag, test_frame, y_test, rng):
        """
        Feature importance table for a trained model.

        Returns:
            DataFrame indexed by feature, sorted by descending importance
            (ties keep schema order), with columns importance (negative
            scores reported as 0), raw_importance, importance_std and the
            impurity-based mdi_importance
        """
        if self.importance_method == 'oob':
            raw, std = self.oob_importance(model, X_train, y_train, inbag, rng)
        else:
            raw, std = self.holdout_importance(model, test_frame, y_test, rng)

        mdi = np.mean([tree.feature_importances_ for tree in model.trees], axis=0)
        table = pd.DataFrame(
            {
                'importance': np.clip(raw, 0.0, None),
                'raw_importance': raw,
                'importance_std': std,
                'mdi_importance': mdi,
                'schema_position': np.arange(model.n_features),
            },
            index=pd.Index(model.feature_schema, name='feature'),
        )
        table = table.sort_values(['importance', 'schema_position'], ascending=[False, True])
        return table.drop(columns='schema_position')

    def train(self, train, test, sample_weights, label_set, rng, split_candidates=None, seed=None):
        """
        Train on one split, score feature importance and evaluate on the test split.

        Args:
            train: ExpressionDataset of training samples
            test: ExpressionDataset of test samples (same features)
            sample_weights: class weight per training sample
            label_set: LabelSet for encoding labels
            rng: the run's numpy Generator
            split_candidates: features per split; defaults to ceil(sqrt(features))
            seed: recorded on the model

        Returns:
            TrainingResult
        """
        features = train.features
        if test.features != features:
            raise SchemaMismatch(detail="train and test splits have different feature columns")
        if split_candidates is None:
            split_candidates = int(math.ceil(math.sqrt(len(features))))
        split_candidates = min(split_candidates, len(features))

        X_train = train.values()
        y_train = label_set.encode(train.labels)
        model, inbag = self.fit(
            X_train, y_train, sample_weights, features, label_set, split_candidates, rng, seed=seed
        )

        test_frame = test.expression
        y_test = label_set.encode(test.labels)
        importance = self.feature_importance(model, X_train, y_train, inbag, test_frame, y_test, rng)

        predicted = model.predict(test_frame, n_jobs=self.n_jobs)
        performance = evaluate_predictions(test.labels.tolist(), predicted, label_set)
        test_predictions = pd.DataFrame(
            {'true_label': test.labels.to_numpy(), 'predicted_label': predicted},
            index=pd.Index(test.samples, name='sample_id'),
        )

        logger.info(
            "Test accuracy %.4f (balanced %.4f) on %d samples",
            performance.accuracy, performance.balanced_accuracy, performance.n_samples,
        )
        top = importance.head(10)
        logger.info(
            "Top features: %s",
            ", ".join(f"{f} ({v:.4f})" for f, v in zip(top.index, top['importance'])),
        )
        return TrainingResult(model, importance, performance, test_predictions)
