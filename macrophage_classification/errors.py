"""
Exceptions raised by the classification pipeline.

Per-feature and per-group conditions (InsufficientSamples, NumericDegeneracy)
are normally recorded as exclusion reasons rather than raised; the classes
are still used so the recorded reason names the condition.
"""


class ClassificationPipelineError(Exception):
    """Base class for all pipeline errors"""


class InsufficientGroups(ClassificationPipelineError):
    """Fewer class groups remain than a stage requires"""

    def __init__(self, groups, required=2, stage=""):
        self.groups = list(groups)
        self.required = required
        self.stage = stage
        where = f" for {stage}" if stage else ""
        super().__init__(
            f"Need at least {required} class group(s){where}, "
            f"found {len(self.groups)}: {self.groups}"
        )


class InsufficientSamples(ClassificationPipelineError):
    """A class group has fewer samples than the minimum group size"""

    def __init__(self, label, n_samples, min_group_size):
        self.label = label
        self.n_samples = n_samples
        self.min_group_size = min_group_size
        super().__init__(
            f"Class '{label}' has {n_samples} samples, "
            f"below the minimum group size of {min_group_size}"
        )


class DegenerateWeight(ClassificationPipelineError):
    """A class makes up every training sample, so its weight is zero"""

    def __init__(self, label):
        self.label = label
        super().__init__(
            f"Class '{label}' comprises 100% of the training samples; "
            f"its class weight is 0 and weighted bootstrap sampling is undefined"
        )


class SchemaMismatch(ClassificationPipelineError):
    """Data presented for prediction does not match a model's feature schema"""

    def __init__(self, missing=(), unexpected=(), position=None, detail=""):
        self.missing = list(missing)
        self.unexpected = list(unexpected)
        self.position = position
        parts = []
        if self.missing:
            parts.append(f"missing {len(self.missing)} schema feature(s): {_preview(self.missing)}")
        if self.unexpected:
            parts.append(f"{len(self.unexpected)} feature(s) not in schema: {_preview(self.unexpected)}")
        if position is not None:
            parts.append(f"feature order differs from schema at position {position}")
        if detail:
            parts.append(detail)
        super().__init__("Feature schema mismatch: " + "; ".join(parts))


class NumericDegeneracy(ClassificationPipelineError):
    """A feature cannot be tested, e.g. it has zero variance"""

    def __init__(self, feature, detail="zero variance across samples"):
        self.feature = feature
        self.detail = detail
        super().__init__(f"Feature '{feature}': {detail}")


def _preview(items, limit=10):
    shown = ", ".join(str(i) for i in items[:limit])
    if len(items) > limit:
        shown += f", ... (+{len(items) - limit} more)"
    return f"[{shown}]"
