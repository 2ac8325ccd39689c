"""
Validation engine: runs a tier's rules and gates advancement to the next tier.

Categories are evaluated in a fixed order (schema, completeness, range,
uniqueness). Within a category the first BLOCKING failure skips the rest of
that category; later categories still run so the report is complete.
"""

import time
from collections.abc import Callable

from tiered_pipeline.core.exceptions import ValidationBlocked
from tiered_pipeline.core.models import (
    RuleCategory,
    Severity,
    SourceConfig,
    TierValidationReport,
    ValidationResult,
    ValidationSettings,
)
from tiered_pipeline.core.validators import TierSnapshot, ValidationRule
from tiered_pipeline.observability.logger import get_logger
from tiered_pipeline.observability.metrics import increment_counter, record_retry, validation_results_total
from tiered_pipeline.utils.retry import MaxRetriesExceeded, RetryPolicy, retry_with_backoff

from .rule_config import build_rules

logger = get_logger(__name__)


class ValidationEngine:
    """
    Orchestrates validation rules over tier snapshots.
    """

    def __init__(
        self,
        rules: list[ValidationRule],
        settings: ValidationSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the validation engine.

        Args:
            rules: Rules to evaluate; each declares the tiers it applies to
            settings: Per-rule timeout and retry settings
            sleep: Sleep function used between retries
        """
        self.rules = rules
        self.settings = settings or ValidationSettings()
        self.sleep = sleep
        self.retry_policy = RetryPolicy(
            max_attempts=self.settings.max_attempts,
            base_delay=self.settings.base_delay,
            max_delay=max(self.settings.base_delay, 5.0),
            timeout=self.settings.rule_timeout,
        )

    @classmethod
    def for_source(
        cls,
        source_config: SourceConfig,
        settings: ValidationSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ValidationEngine":
        return cls(build_rules(source_config), settings=settings, sleep=sleep)

    def validate(self, snapshot: TierSnapshot) -> TierValidationReport:
        """
        Run every applicable rule against the snapshot.

        Returns:
            Finished report in state PASSED or FAILED
        """
        report = TierValidationReport(tier=snapshot.tier)
        report.start()

        applicable = [rule for rule in self.rules if rule.applies_to(snapshot.tier)]
        for category in RuleCategory.ordered():
            blocked = False
            for rule in (r for r in applicable if r.category == category):
                if blocked:
                    report.skipped_rules.append(rule.name)
                    continue
                result = self._evaluate(rule, snapshot)
                report.record(result)
                self._observe(snapshot, result)
                blocked = result.is_blocking_failure

        state = report.finish()
        logger.info(
            f"Validation of {snapshot.tier.value} tier for {snapshot.source_id}: {state.value}",
            extra={
                "source_id": snapshot.source_id,
                "tier": snapshot.tier.value,
                "state": state.value,
                "rules_run": len(report.results),
                "rules_skipped": len(report.skipped_rules),
            },
        )
        return report

    def gate(self, snapshot: TierSnapshot) -> TierValidationReport:
        """
        Validate and raise if the tier may not advance.

        Raises:
            ValidationBlocked: If any BLOCKING rule failed
        """
        report = self.validate(snapshot)
        if not report.passed:
            raise ValidationBlocked(snapshot.tier.value, report.blocking_failures)
        return report

    def _evaluate(self, rule: ValidationRule, snapshot: TierSnapshot) -> ValidationResult:
        def on_retry(attempt: int, error: BaseException) -> None:
            record_retry(snapshot.source_id, "validate")
            logger.warning(
                f"Retrying rule {rule.name} on {snapshot.tier.value} tier (attempt {attempt} failed: {error})",
                extra={"source_id": snapshot.source_id, "rule_name": rule.name},
            )

        try:
            return retry_with_backoff(
                lambda: rule.evaluate(snapshot),
                policy=self.retry_policy,
                retry_on=(TimeoutError,),
                on_retry=on_retry,
                sleep=self.sleep,
            )
        except MaxRetriesExceeded as e:
            return ValidationResult(
                tier=snapshot.tier,
                rule_name=rule.name,
                category=rule.category,
                passed=False,
                severity=Severity.BLOCKING,
                message=f"Rule did not complete after {e.attempts} attempts: {e.last_error}",
                details={"attempts": e.attempts, "error": str(e.last_error)},
            )
        except Exception as e:
            logger.exception(
                f"Rule {rule.name} raised on {snapshot.tier.value} tier",
                extra={"source_id": snapshot.source_id, "rule_name": rule.name},
            )
            return ValidationResult(
                tier=snapshot.tier,
                rule_name=rule.name,
                category=rule.category,
                passed=False,
                severity=Severity.BLOCKING,
                message=f"Rule raised {type(e).__name__}: {e}",
                details={"error": str(e)},
            )

    @staticmethod
    def _observe(snapshot: TierSnapshot, result: ValidationResult) -> None:
        increment_counter(
            validation_results_total,
            1,
            source_id=snapshot.source_id,
            tier=snapshot.tier.value,
            rule_name=result.rule_name,
            outcome="passed" if result.passed else "failed",
            severity=result.severity.value,
        )
        if not result.passed:
            log = logger.error if result.is_blocking_failure else logger.warning
            log(
                f"[{result.severity.value}] {result.rule_name}: {result.message}",
                extra={"source_id": snapshot.source_id, "tier": snapshot.tier.value, "rule_name": result.rule_name},
            )
