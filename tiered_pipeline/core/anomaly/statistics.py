"""
Statistics used by the anomaly detector.
"""

import statistics
from bisect import bisect_right
from collections.abc import Sequence


def baseline_stats(values: Sequence[float]) -> tuple[float, float]:
    """
    Mean and sample standard deviation of a baseline.

    Raises:
        statistics.StatisticsError: If fewer than two values are given
    """
    return statistics.mean(values), statistics.stdev(values)


def z_score(observed: float, mean: float, stddev: float) -> float:
    """
    Standard score of ``observed``.

    Raises:
        ValueError: If stddev is not positive
    """
    if stddev <= 0:
        raise ValueError("z-score undefined for a baseline without spread")
    return (observed - mean) / stddev


def _ecdf(sorted_sample: Sequence[float], x: float) -> float:
    return bisect_right(sorted_sample, x) / len(sorted_sample)


def ks_statistic(sample_a: Sequence[float], sample_b: Sequence[float]) -> float:
    """
    Two-sample Kolmogorov-Smirnov statistic: the largest vertical distance
    between the empirical CDFs of the two samples.

    Quantile sketches work as samples directly: each point stands for an
    equal share of the distribution.

    Raises:
        ValueError: If either sample is empty
    """
    if not sample_a or not sample_b:
        raise ValueError("KS statistic needs two non-empty samples")
    a = sorted(sample_a)
    b = sorted(sample_b)
    return max(abs(_ecdf(a, x) - _ecdf(b, x)) for x in set(a) | set(b))
