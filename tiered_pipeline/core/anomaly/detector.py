"""
Anomaly detector over the aggregated tier.

Findings are informative only: the detector never blocks a run. Volume is
scored with a z-score against the trailing daily row counts; distributions
are compared to the previous day with a Kolmogorov-Smirnov statistic over
the stored quantile sketches.
"""

from datetime import timedelta

from tiered_pipeline.core.models import AnomalyRecord, AnomalySettings, AnomalySeverity, DailySummary
from tiered_pipeline.observability.logger import get_logger

from .statistics import baseline_stats, ks_statistic, z_score

logger = get_logger(__name__)

VOLUME_METRIC = "row_count"


class AnomalyDetector:
    """
    Scores one day's summary against its baseline.
    """

    def __init__(self, settings: AnomalySettings | None = None):
        self.settings = settings or AnomalySettings()

    def detect(self, today: DailySummary, baseline: list[DailySummary]) -> list[AnomalyRecord]:
        """
        Run every detector for one date.

        Args:
            today: Summary of the date being scored
            baseline: Summaries of earlier dates (any order, gaps allowed)

        Returns:
            Anomalies found, volume first
        """
        prior = sorted(
            (s for s in baseline if s.partition_date < today.partition_date),
            key=lambda s: s.partition_date,
        )[-self.settings.baseline_days:]

        anomalies = []
        volume = self.detect_volume(today, prior)
        if volume is not None:
            anomalies.append(volume)

        yesterday = today.partition_date - timedelta(days=1)
        previous = next((s for s in reversed(prior) if s.partition_date == yesterday), None)
        if previous is not None:
            anomalies.extend(self.detect_distribution(today, previous))
        return anomalies

    def detect_volume(self, today: DailySummary, baseline: list[DailySummary]) -> AnomalyRecord | None:
        """
        Flag today's row count when ``|z|`` exceeds the threshold.

        Baselines that are too short or have no spread are skipped.
        """
        counts = [float(s.total_rows) for s in baseline]
        if len(counts) < self.settings.min_baseline_points:
            logger.debug(
                f"Skipping volume check for {today.source_id}: {len(counts)} baseline points",
                extra={"source_id": today.source_id},
            )
            return None

        mean, stddev = baseline_stats(counts)
        if stddev == 0:
            return None

        z = z_score(today.total_rows, mean, stddev)
        if abs(z) <= self.settings.z_threshold:
            return None

        severity = AnomalySeverity.HIGH if abs(z) > self.settings.high_z_threshold else AnomalySeverity.MEDIUM
        return AnomalyRecord(
            metric_name=VOLUME_METRIC,
            observed_value=float(today.total_rows),
            baseline_mean=mean,
            baseline_stddev=stddev,
            z_score=z,
            severity=severity,
            detector="volume",
            source_id=today.source_id,
            partition_date=today.partition_date,
            message=(
                f"Row count {today.total_rows} is {z:+.1f} standard deviations from "
                f"the {len(counts)}-day mean {mean:.0f}"
            ),
        )

    def detect_distribution(self, today: DailySummary, previous: DailySummary) -> list[AnomalyRecord]:
        """
        Flag metrics whose distribution moved since the previous day.

        Similarity is ``1 - D``; below the floor is MEDIUM, below half the
        floor is HIGH.
        """
        floor = self.settings.similarity_floor
        anomalies = []
        for metric, sketch in today.distributions.items():
            reference = previous.distributions.get(metric)
            if not sketch or not reference:
                continue

            statistic = ks_statistic(sketch, reference)
            similarity = 1.0 - statistic
            if similarity >= floor:
                continue

            median, reference_median = _median(sketch), _median(reference)
            anomalies.append(AnomalyRecord(
                metric_name=metric,
                observed_value=median,
                baseline_mean=reference_median,
                baseline_stddev=0.0,
                severity=AnomalySeverity.HIGH if similarity < floor / 2 else AnomalySeverity.MEDIUM,
                detector="distribution",
                source_id=today.source_id,
                partition_date=today.partition_date,
                statistic=statistic,
                message=(
                    f"Distribution of {metric} shifted (KS statistic {statistic:.3f}, "
                    f"median {reference_median:g} -> {median:g})"
                ),
            ))
        return anomalies


def _median(sketch: list[float]) -> float:
    return sketch[len(sketch) // 2]
