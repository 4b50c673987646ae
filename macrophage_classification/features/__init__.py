"""
Sample quality control and feature selection.
"""

from .sample_filter import CorrelationClusterFilter, GroupFilterReport
from .feature_selection import AnovaFeatureSelector, AnovaResult
