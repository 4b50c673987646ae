import numpy as np
import pandas as pd
import pytest

from macrophage_classification.config import PipelineConfig
from macrophage_classification.data.dataset import ExpressionDataset, LabelSet

LABELS = ('M0', 'IFN', 'LPS', 'LPS_IFN')


def make_dataset(n_per_class=10, n_features=200, labels=LABELS, noise=0.3,
                 profile_seed=0, sample_seed=1, n_batches=2, prefix=""):
    """
    Synthetic cohort where every class has its own expression profile.

    Samples of one class are the class profile plus small noise, so they are
    highly correlated with each other and every feature separates the classes.
    Reusing ``profile_seed`` with a new ``sample_seed`` gives a second cohort
    of the same classes.
    """
    if isinstance(n_per_class, int):
        n_per_class = {label: n_per_class for label in labels}

    profiles = np.random.default_rng(profile_seed).normal(0.0, 2.0, size=(len(labels), n_features))
    rng = np.random.default_rng(sample_seed)

    rows, ids, classes, batches = [], [], [], []
    for k, label in enumerate(labels):
        for i in range(n_per_class[label]):
            rows.append(profiles[k] + rng.normal(0.0, noise, size=n_features))
            ids.append(f"{prefix}{label}_{i:02d}")
            classes.append(label)
            batches.append(f"batch{i % n_batches}")

    expression = pd.DataFrame(
        np.vstack(rows), index=ids, columns=[f"gene{j:04d}" for j in range(n_features)]
    )
    metadata = pd.DataFrame({'label': classes, 'batch': batches}, index=ids)
    return ExpressionDataset(expression, metadata)


@pytest.fixture
def label_set():
    return LabelSet(LABELS)


@pytest.fixture
def balanced_dataset():
    """40 samples (10 per class) x 200 informative features"""
    return make_dataset()


@pytest.fixture
def small_dataset():
    """40 samples x 30 features, quick to train on"""
    return make_dataset(n_features=30)


@pytest.fixture
def fast_config():
    return PipelineConfig(
        tree_count=25,
        max_depth=5,
        prune_schedule=(100, 10),
        random_seed=7,
    )


class ConstantTree:
    """Stand-in tree that always votes for one code and counts its calls"""

    def __init__(self, code):
        self.code = code
        self.calls = 0

    def predict(self, X):
        self.calls += 1
        return np.full(len(X), self.code)
