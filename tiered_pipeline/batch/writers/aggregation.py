"""
Aggregated-tier computation: per-group counts, error rates and metric
percentiles for one cleaned partition.
"""

import math
import statistics
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import date
from typing import Any

from tiered_pipeline.core.models import DailySummary, GroupSummary, MetricSummary, Record

SKETCH_POINTS = 101
NULL_GROUP = "__null__"
ALL_GROUP = "__all__"


def percentile(sorted_values: Sequence[float], q: float) -> float:
    """
    Percentile with linear interpolation between closest ranks.

    Args:
        sorted_values: Non-empty ascending values
        q: Percentile in [0, 100]
    """
    if not sorted_values:
        raise ValueError("percentile of empty sequence")
    if not 0 <= q <= 100:
        raise ValueError(f"percentile must be in [0, 100], got {q}")

    position = (len(sorted_values) - 1) * q / 100
    lower = math.floor(position)
    upper = math.ceil(position)
    if lower == upper:
        return float(sorted_values[lower])
    fraction = position - lower
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * fraction


def quantile_sketch(values: Iterable[float], points: int = SKETCH_POINTS) -> list[float]:
    """Evenly spaced quantiles q0..q100 of ``values``; empty input gives an empty sketch."""
    ordered = sorted(values)
    if not ordered:
        return []
    return [percentile(ordered, 100 * i / (points - 1)) for i in range(points)]


def numeric_value(value: Any) -> float | None:
    """Value as a finite float, or None for nulls, booleans, strings and NaN."""
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def summarize_metric(values: Sequence[float]) -> MetricSummary:
    if not values:
        return MetricSummary(count=0)
    ordered = sorted(values)
    return MetricSummary(
        count=len(ordered),
        mean=statistics.fmean(ordered),
        p50=percentile(ordered, 50),
        p95=percentile(ordered, 95),
        p99=percentile(ordered, 99),
        min=ordered[0],
        max=ordered[-1],
    )


def is_error(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    if isinstance(value, int | float):
        return value != 0
    return False


def build_daily_summary(
    source_id: str,
    partition_date: date,
    records: Sequence[Record],
    dimension_field: str | None = None,
    metric_fields: Sequence[str] = (),
    error_field: str | None = None,
) -> DailySummary:
    """
    Summarize one cleaned partition.

    Rows are grouped by ``dimension_field`` (a single ``__all__`` group when
    none is configured; null dimension values go to ``__null__``). Groups are
    sorted by dimension value so the payload is deterministic.

    Args:
        source_id: Source identifier
        partition_date: Date of the cleaned partition
        records: Cleaned rows
        dimension_field: Categorical field to group by
        metric_fields: Numeric fields summarized per group
        error_field: Boolean field counted as errors

    Returns:
        DailySummary for the partition
    """
    groups: dict[str, list[Record]] = defaultdict(list)
    for record in records:
        if dimension_field is None:
            key = ALL_GROUP
        else:
            value = record.get(dimension_field)
            key = NULL_GROUP if value is None else str(value)
        groups[key].append(record)

    group_summaries = []
    total_errors = 0
    for key in sorted(groups):
        members = groups[key]
        errors = sum(1 for r in members if is_error(r.get(error_field))) if error_field else 0
        total_errors += errors
        metrics = {}
        for metric in metric_fields:
            values = [v for v in (numeric_value(r.get(metric)) for r in members) if v is not None]
            metrics[metric] = summarize_metric(values)
        group_summaries.append(GroupSummary(
            dimension_value=key,
            row_count=len(members),
            error_count=errors,
            error_rate=errors / len(members) if error_field else None,
            metrics=metrics,
        ))

    distributions = {}
    for metric in metric_fields:
        values = [v for v in (numeric_value(r.get(metric)) for r in records) if v is not None]
        distributions[metric] = quantile_sketch(values)

    total_rows = len(records)
    return DailySummary(
        source_id=source_id,
        partition_date=partition_date,
        dimension_field=dimension_field,
        total_rows=total_rows,
        error_count=total_errors,
        error_rate=(total_errors / total_rows) if error_field and total_rows else None,
        groups=group_summaries,
        distributions=distributions,
    )
