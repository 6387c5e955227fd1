"""
Quarantine decisions for a single test.

The evaluator is a pure function of (record, policy, context): it holds no
state, performs no I/O and returns the same decision for the same inputs.
"""

import logging
from typing import Any, Optional, Tuple

from . import stability
from .schemas import (
    EvaluationContext,
    QuarantineDecision,
    QuarantinePolicyConfig,
    TestStabilityRecord,
    parse_policy_config,
)

logger = logging.getLogger(__name__)

CAP_REACHED_REASON = "quarantine cap reached"
MAX_PERIOD_REASON = "max period exceeded"


class PolicyEvaluator:
    """Applies a quarantine policy to one stability record."""

    def evaluate(
        self,
        record: TestStabilityRecord,
        policy: Any,
        context: EvaluationContext,
    ) -> QuarantineDecision:
        """
        Decide quarantine, unquarantine or no action.

        Quarantined tests (``context.quarantined_at`` set) are only checked for
        release; all other tests are only checked for quarantine. A record with
        no counted runs is never acted on, including the max-period release.
        """
        config = parse_policy_config(policy)
        if record.total_runs == 0:
            decision = QuarantineDecision.no_action("no runs recorded", "insufficient_data")
        elif context.is_quarantined:
            decision = self._evaluate_release(record, config, context)
        else:
            decision = self._evaluate_quarantine(record, config, context)
        logger.debug(
            "Evaluated %s: action=%s rule=%s reason=%s",
            record.qualified_name,
            decision.action.value,
            decision.rule,
            decision.reason,
        )
        return decision

    # -----------------------------------------------------------------
    # Quarantine triggers
    # -----------------------------------------------------------------

    def eligibility_rates(
        self,
        record: TestStabilityRecord,
        config: QuarantinePolicyConfig,
        context: EvaluationContext,
    ) -> Tuple[float, float]:
        """
        Threshold-independent ranking of how strongly a test is failing.

        Returns ``(best, lifetime)``: ``lifetime`` is the observed failure rate
        when enough runs exist (else -1), ``best`` also considers the
        rapid-degradation window. The threshold and run-count rules pass for a
        threshold ``t`` exactly when ``lifetime >= t`` or the window rate
        exceeds ``t``, so ordering by this pair never depends on ``t``.
        """
        lifetime = -1.0
        if record.total_runs >= config.min_runs_required:
            lifetime = self.observed_failure_rate(record, config, context)
        window_rate = self._rapid_window_rate(config, context)
        if window_rate is None:
            return lifetime, lifetime
        return max(lifetime, window_rate), lifetime

    def observed_failure_rate(
        self,
        record: TestStabilityRecord,
        config: QuarantinePolicyConfig,
        context: EvaluationContext,
    ) -> float:
        if not config.enable_time_based_rules:
            return record.failure_rate
        window = stability.runs_within(context.recent_runs, context.now, config.time_window_days)
        if not window:
            return 0.0
        return sum(1 for run in window if not run.passed) / len(window)

    def _rapid_window_rate(
        self, config: QuarantinePolicyConfig, context: EvaluationContext
    ) -> Optional[float]:
        if not config.enable_rapid_degradation:
            return None
        return stability.window_failure_rate(context.recent_runs, config.rapid_degradation_window)

    def required_consecutive_failures(
        self, record: TestStabilityRecord, config: QuarantinePolicyConfig
    ) -> int:
        required = config.consecutive_failures
        if config.enable_critical_path_protection and config.is_priority(record):
            required = stability.scaled_requirement(required, config.critical_path_multiplier)
        return required

    def _evaluate_quarantine(
        self,
        record: TestStabilityRecord,
        config: QuarantinePolicyConfig,
        context: EvaluationContext,
    ) -> QuarantineDecision:
        rate = self.observed_failure_rate(record, config, context)
        window_rate = self._rapid_window_rate(config, context)
        rapid = window_rate is not None and window_rate > config.failure_rate_threshold

        if record.total_runs < config.min_runs_required and not rapid:
            return QuarantineDecision.no_action(
                f"{record.total_runs} runs recorded, {config.min_runs_required} required",
                "insufficient_data",
            )

        if rate < config.failure_rate_threshold and not rapid:
            return QuarantineDecision.no_action(
                f"failure rate {rate:.2f} below threshold {config.failure_rate_threshold:.2f}",
                "threshold",
            )

        if (record.confidence or 0.0) < config.confidence_threshold:
            return QuarantineDecision.no_action(
                f"confidence {record.confidence:.2f} below threshold {config.confidence_threshold:.2f}",
                "confidence",
            )

        required = self.required_consecutive_failures(record, config)
        if record.consecutive_failures < required:
            return QuarantineDecision.no_action(
                f"{record.consecutive_failures} consecutive failures, {required} required",
                "consecutive_failures",
            )

        if self._cap_reached(config, context):
            return QuarantineDecision.no_action(CAP_REACHED_REASON, "cap", suppressed=True)

        if rapid and (rate < config.failure_rate_threshold or record.total_runs < config.min_runs_required):
            return QuarantineDecision.quarantine(
                f"rapid degradation: {window_rate:.0%} of last "
                f"{config.rapid_degradation_window} runs failed",
                "rapid_degradation",
            )
        return QuarantineDecision.quarantine(
            f"failure rate {rate:.0%} over {record.total_runs} runs with "
            f"{record.consecutive_failures} consecutive failures",
            "threshold",
        )

    def _cap_reached(self, config: QuarantinePolicyConfig, context: EvaluationContext) -> bool:
        if config.max_quarantine_percentage is None:
            return False
        if context.total_tests <= 0:
            # Project size unknown; the cap cannot be applied.
            return False
        # Integer form of (quarantined + 1) / total > pct / 100.
        return (context.quarantined_tests + 1) * 100 > config.max_quarantine_percentage * context.total_tests

    # -----------------------------------------------------------------
    # Release rules
    # -----------------------------------------------------------------

    def _evaluate_release(
        self,
        record: TestStabilityRecord,
        config: QuarantinePolicyConfig,
        context: EvaluationContext,
    ) -> QuarantineDecision:
        quarantined_at = context.quarantined_at
        days = max(stability.elapsed_days(quarantined_at, context.now), 0.0)

        if config.max_quarantine_period is not None and days > config.max_quarantine_period:
            return QuarantineDecision.unquarantine(MAX_PERIOD_REASON, "max_period")

        since = stability.runs_since(context.recent_runs, quarantined_at)
        if len(since) < config.min_successful_runs:
            return QuarantineDecision.no_action(
                f"already quarantined: {len(since)} runs since quarantine, "
                f"{config.min_successful_runs} required",
                "stability",
            )

        window = stability.runs_within(since, context.now, config.stability_period) or since
        rate = stability.success_rate(window) or 0.0
        if rate < config.success_rate_required:
            return QuarantineDecision.no_action(
                f"already quarantined: success rate {rate:.2f} below "
                f"{config.success_rate_required:.2f}",
                "stability",
            )

        if days < config.stability_period:
            return QuarantineDecision.no_action(
                f"already quarantined: {days:.1f} of {config.stability_period} stable days",
                "stability",
            )

        return QuarantineDecision.unquarantine(
            f"stable for {days:.0f} days with {rate:.0%} success over {len(window)} runs",
            "stability",
        )
