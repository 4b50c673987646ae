"""
Iterative feature pruning.

Round 0 trains on every selected feature. Each following round keeps the top
K features of the previous round's importance ranking and retrains, reusing
the same train/test partition and sample weights so that only the feature
axis changes between rounds.
"""

import logging
import math
from dataclasses import dataclass
from typing import List

import pandas as pd

logger = logging.getLogger(__name__)


def default_split_candidates(n_features, fixed=None):
    """ceil(sqrt(n_features)), or a fixed count capped at n_features"""
    if fixed is not None:
        return min(int(fixed), n_features)
    return min(int(math.ceil(math.sqrt(n_features))), n_features)


@dataclass
class RoundRecord:
    """One train/evaluate round of the pruner"""

    index: int
    features: List[str]
    split_candidates: int
    result: object

    @property
    def n_features(self):
        return len(self.features)

    @property
    def model(self):
        return self.result.model

    @property
    def importance(self):
        return self.result.importance

    @property
    def performance(self):
        return self.result.performance


@dataclass
class PruningResult:
    rounds: List[RoundRecord]

    @property
    def final(self):
        return self.rounds[-1]

    @property
    def final_model(self):
        return self.final.model

    @property
    def final_importance(self):
        return self.final.importance

    def summary_frame(self):
        """One row per round: feature count, split candidates and test metrics"""
        rows = []
        for record in self.rounds:
            row = {
                'round': record.index,
                'n_features': record.n_features,
                'split_candidates': record.split_candidates,
            }
            row.update(record.performance.summary())
            rows.append(row)
        return pd.DataFrame(rows)


class IterativePruner:
    """
    Train, rank by importance, keep the top K, retrain.

    Args:
        trainer: RandomForestTrainer used for every round
        schedule: target feature counts for rounds 1, 2, ...
        max_rounds: cap on the number of training rounds including round 0
        split_candidates: fixed split-candidate count, or None for ceil(sqrt(K))
    """

    def __init__(self, trainer, schedule=(10000, 1000), max_rounds=None, split_candidates=None):
        self.trainer = trainer
        self.schedule = [int(k) for k in schedule]
        self.max_rounds = max_rounds
        self.split_candidates = split_candidates

    @classmethod
    def from_config(cls, trainer, config):
        return cls(
            trainer,
            schedule=config.prune_schedule,
            max_rounds=config.max_rounds,
            split_candidates=config.split_candidates,
        )

    def _train_round(self, index, features, train, test, sample_weights, label_set, rng, seed):
        m = default_split_candidates(len(features), self.split_candidates)
        logger.info("Pruning round %d: %d features, %d split candidates", index, len(features), m)
        result = self.trainer.train(
            train.subset_features(features),
            test.subset_features(features),
            sample_weights,
            label_set,
            rng,
            split_candidates=m,
            seed=seed,
        )
        return RoundRecord(index, list(features), m, result)

    def run(self, train, test, sample_weights, label_set, rng, seed=None):
        """
        Run round 0 and every scheduled pruning round.

        Args:
            train: training ExpressionDataset with all selected features
            test: test ExpressionDataset with the same features
            sample_weights: class weight per training sample, fixed for all rounds
            label_set: LabelSet for encoding labels
            rng: the run's numpy Generator
            seed: recorded on each model

        Returns:
            PruningResult
        """
        features = train.features
        if not features:
            raise ValueError("Cannot train on an empty feature set")

        budget = self.max_rounds if self.max_rounds is not None else len(self.schedule) + 1
        rounds = [self._train_round(0, features, train, test, sample_weights, label_set, rng, seed)]

        for target in self.schedule:
            current = rounds[-1]
            if len(rounds) >= budget:
                logger.info("Round budget of %d exhausted", budget)
                break
            if target >= current.n_features:
                logger.info(
                    "Stopping: next target of %d features is not below the current %d",
                    target, current.n_features,
                )
                break

            kept = current.result.ranked_features()[:target]
            rounds.append(self._train_round(
                len(rounds), kept, train, test, sample_weights, label_set, rng, seed
            ))

        final = rounds[-1]
        logger.info(
            "Pruning finished after %d round(s): %d features, test accuracy %.4f",
            len(rounds), final.n_features, final.performance.accuracy,
        )
        return PruningResult(rounds)
