"""
Logging setup and result input/output helpers.
"""

from .logging_utils import configure_logging
from .results_io import (
    create_results_dir, save_filter_report, save_anova_results,
    save_pruning_results, save_external_predictions, save_model_bundle,
    load_model_bundle, print_round_results, print_external_results
)
