"""
Read-only impact simulation of a candidate quarantine policy.

The simulator replays the evaluator over a project snapshot and forecasts the
effect of activating the policy. It never touches the ledger or impact rows.
"""

import logging
from datetime import datetime
from typing import Any, List, Optional

from .config import SimulatorConfig
from .evaluator import PolicyEvaluator
from .impact import ImpactTracker
from .schemas import (
    DecisionAction,
    EstimatedSavings,
    EvaluationContext,
    PolicyImpactSimulation,
    PotentialRisks,
    ProjectSnapshot,
    QuarantinePolicyConfig,
    SimulatedTest,
    TeamConfiguration,
    parse_policy_config,
)

logger = logging.getLogger(__name__)


class ImpactSimulator:
    def __init__(
        self,
        evaluator: Optional[PolicyEvaluator] = None,
        settings: Optional[SimulatorConfig] = None,
    ) -> None:
        self.evaluator = evaluator or PolicyEvaluator()
        self.settings = settings or SimulatorConfig()

    def simulate(
        self,
        policy: Any,
        snapshot: ProjectSnapshot,
        now: datetime,
        pricing: Optional[TeamConfiguration] = None,
    ) -> PolicyImpactSimulation:
        """
        Forecast what the policy would do today.

        Currently quarantined tests are evaluated first so releases free cap
        slots; candidates are then visited from most to least failing, which
        keeps the would-quarantine set monotone in the failure-rate threshold.
        """
        # Raises PolicyValidationError before any work is done.
        config = parse_policy_config(policy)
        tracker = ImpactTracker(pricing)

        total_tests = len(snapshot.tests)
        quarantined_count = snapshot.quarantined_count

        released: List[str] = []
        for test in sorted(snapshot.tests, key=lambda t: t.record.qualified_name):
            if test.quarantined_at is None:
                continue
            decision = self.evaluator.evaluate(
                test.record,
                config,
                self._context(test, now, total_tests, quarantined_count),
            )
            if decision.action == DecisionAction.UNQUARANTINE:
                released.append(test.record.qualified_name)
        quarantined_count -= len(released)

        selected: List[SimulatedTest] = []
        suppressed: List[str] = []
        for test in self._candidates(snapshot, config, now, total_tests):
            decision = self.evaluator.evaluate(
                test.record,
                config,
                self._context(test, now, total_tests, quarantined_count),
            )
            if decision.action == DecisionAction.QUARANTINE:
                selected.append(test)
                quarantined_count += 1
            elif decision.suppressed:
                suppressed.append(test.record.qualified_name)

        savings = tracker.total(
            tracker.historical_contribution(test.recent_runs, now, self.settings.savings_lookback_days)
            for test in selected
        )
        risks = PotentialRisks(
            false_positives=sum(1 for test in selected if self._likely_false_positive(test, config)),
            over_quarantine=self._over_quarantine(len(selected), total_tests, suppressed),
            critical_tests_affected=sum(1 for test in selected if config.is_priority(test.record)),
        )

        result = PolicyImpactSimulation(
            would_quarantine=len(selected),
            would_unquarantine=len(released),
            estimated_savings=EstimatedSavings(
                ci_minutes=savings.ci_minutes,
                developer_hours=savings.developer_hours,
                builds_protected=savings.builds_protected,
            ),
            potential_risks=risks,
            quarantine_candidates=sorted(test.record.qualified_name for test in selected),
            unquarantine_candidates=sorted(released),
            suppressed_by_cap=sorted(suppressed),
        )
        logger.info(
            "Simulated policy for project %s: would_quarantine=%d would_unquarantine=%d",
            snapshot.project_id,
            result.would_quarantine,
            result.would_unquarantine,
        )
        return result

    def _context(
        self, test: SimulatedTest, now: datetime, total_tests: int, quarantined_count: int
    ) -> EvaluationContext:
        return EvaluationContext(
            now=now,
            total_tests=total_tests,
            quarantined_tests=max(quarantined_count, 0),
            quarantined_at=test.quarantined_at,
            recent_runs=test.recent_runs,
        )

    def _candidates(
        self,
        snapshot: ProjectSnapshot,
        config: QuarantinePolicyConfig,
        now: datetime,
        total_tests: int,
    ) -> List[SimulatedTest]:
        candidates = [test for test in snapshot.tests if test.quarantined_at is None]

        def _key(test: SimulatedTest):
            context = self._context(test, now, total_tests, 0)
            best, lifetime = self.evaluator.eligibility_rates(test.record, config, context)
            return (-best, -lifetime, test.record.qualified_name)

        return sorted(candidates, key=_key)

    def _likely_false_positive(self, test: SimulatedTest, config: QuarantinePolicyConfig) -> bool:
        moderate = test.record.failure_rate < config.failure_rate_threshold + self.settings.false_positive_margin
        return moderate and test.previously_auto_released

    def _over_quarantine(self, selected: int, total_tests: int, suppressed: List[str]) -> bool:
        if suppressed:
            return True
        if total_tests <= 0:
            return False
        return selected / total_tests > self.settings.over_quarantine_ratio
