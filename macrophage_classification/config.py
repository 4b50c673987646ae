"""
Pipeline configuration and defaults.
"""

import json
from dataclasses import dataclass, fields, asdict, replace
from typing import Optional, Tuple

# Canonical polarization states, in the order models encode them
DEFAULT_LABEL_ORDER = ('M0', 'IFN', 'LPS', 'LPS_IFN')

IMPORTANCE_METHODS = ('oob', 'holdout')
LINKAGE_METHODS = ('complete', 'average', 'single', 'weighted')


@dataclass(frozen=True)
class PipelineConfig:
    """Configuration for sample QC, feature selection and Random Forest training"""

    # Correlation clustering filter
    correlation_cut_height: float = 0.25
    min_group_size: int = 5
    linkage_method: str = 'complete'

    # ANOVA feature selection
    anova_alpha: float = 0.05

    # Random Forest
    tree_count: int = 1500
    max_depth: Optional[int] = 15
    split_candidates: Optional[int] = None
    train_fraction: float = 0.7

    # Iterative pruning
    prune_schedule: Tuple[int, ...] = (10000, 1000)
    max_rounds: Optional[int] = None
    importance_method: str = 'oob'
    importance_repeats: int = 5

    # Run control
    random_seed: int = 42
    n_jobs: int = 1

    # Metadata
    label_order: Tuple[str, ...] = DEFAULT_LABEL_ORDER
    label_column: str = 'label'
    batch_column: str = 'batch'

    def __post_init__(self):
        # Accept lists from JSON/CLI but store tuples so the config stays hashable
        object.__setattr__(self, 'prune_schedule', tuple(int(k) for k in self.prune_schedule))
        object.__setattr__(self, 'label_order', tuple(str(l) for l in self.label_order))

    def validate(self):
        """
        Check option ranges.

        Raises:
            ValueError: naming the first invalid option
        """
        if not 0 < self.correlation_cut_height <= 2:
            raise ValueError(f"correlation_cut_height must be in (0, 2], got {self.correlation_cut_height}")
        if self.min_group_size < 1:
            raise ValueError(f"min_group_size must be >= 1, got {self.min_group_size}")
        if self.linkage_method not in LINKAGE_METHODS:
            raise ValueError(f"linkage_method must be one of {LINKAGE_METHODS}, got '{self.linkage_method}'")
        if not 0 < self.anova_alpha <= 1:
            raise ValueError(f"anova_alpha must be in (0, 1], got {self.anova_alpha}")
        if self.tree_count < 1:
            raise ValueError(f"tree_count must be >= 1, got {self.tree_count}")
        if self.max_depth is not None and self.max_depth < 1:
            raise ValueError(f"max_depth must be >= 1 or None, got {self.max_depth}")
        if self.split_candidates is not None and self.split_candidates < 1:
            raise ValueError(f"split_candidates must be >= 1 or None, got {self.split_candidates}")
        if not 0 < self.train_fraction < 1:
            raise ValueError(f"train_fraction must be in (0, 1), got {self.train_fraction}")
        if any(k < 1 for k in self.prune_schedule):
            raise ValueError(f"prune_schedule entries must be >= 1, got {list(self.prune_schedule)}")
        if self.max_rounds is not None and self.max_rounds < 1:
            raise ValueError(f"max_rounds must be >= 1 or None, got {self.max_rounds}")
        if self.importance_method not in IMPORTANCE_METHODS:
            raise ValueError(f"importance_method must be one of {IMPORTANCE_METHODS}, got '{self.importance_method}'")
        if self.importance_repeats < 1:
            raise ValueError(f"importance_repeats must be >= 1, got {self.importance_repeats}")
        if len(set(self.label_order)) != len(self.label_order) or not self.label_order:
            raise ValueError(f"label_order must be a non-empty list of unique labels, got {list(self.label_order)}")
        return self

    def with_overrides(self, **overrides):
        """Copy of this config with the non-None overrides applied"""
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **overrides)

    def to_dict(self):
        data = asdict(self)
        data['prune_schedule'] = list(self.prune_schedule)
        data['label_order'] = list(self.label_order)
        return data

    @classmethod
    def from_dict(cls, data):
        """
        Build a config from a mapping, rejecting unknown options.

        Args:
            data: mapping of option name -> value

        Returns:
            PipelineConfig
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown configuration option(s): {unknown}")
        return cls(**data)

    @classmethod
    def from_json(cls, path):
        with open(path) as f:
            return cls.from_dict(json.load(f))
