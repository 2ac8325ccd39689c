"""
Statistical anomaly detection over daily summaries.
"""

from .detector import AnomalyDetector
from .statistics import baseline_stats, ks_statistic, z_score

__all__ = ["AnomalyDetector", "baseline_stats", "ks_statistic", "z_score"]
