"""
Impact accounting for quarantined tests.

The per-build cost model comes from the project's team configuration
(pricing table); nothing here reads the database.
"""

from datetime import datetime
from typing import Dict, Iterable, Optional, Sequence

from . import config, stability
from .schemas import ImpactEstimate, TeamConfiguration


class ImpactTracker:
    """Translates failed runs into CI minutes, developer hours and builds."""

    def __init__(self, pricing: Optional[TeamConfiguration] = None) -> None:
        self.pricing = pricing or TeamConfiguration()

    def per_failure(self) -> ImpactEstimate:
        """Cost avoided when a quarantined test fails in one build."""
        return ImpactEstimate(
            builds_protected=1,
            ci_minutes=self.pricing.average_build_minutes,
            developer_hours=self.pricing.investigation_minutes_per_failure / 60.0,
        )

    def for_failures(self, failures: int) -> ImpactEstimate:
        failures = max(int(failures), 0)
        unit = self.per_failure()
        return ImpactEstimate(
            builds_protected=failures,
            ci_minutes=round(unit.ci_minutes * failures, 2),
            developer_hours=round(unit.developer_hours * failures, 2),
        )

    def historical_contribution(
        self,
        runs: Sequence,
        now: datetime,
        lookback_days: int = config.SAVINGS_LOOKBACK_DAYS,
    ) -> ImpactEstimate:
        """What quarantining this test would have saved over the lookback window."""
        window = stability.runs_within(runs, now, lookback_days)
        failures = sum(1 for run in window if not run.passed)
        return self.for_failures(failures)

    def total(self, estimates: Iterable[ImpactEstimate]) -> ImpactEstimate:
        builds = 0
        minutes = 0.0
        hours = 0.0
        for estimate in estimates:
            builds += estimate.builds_protected
            minutes += estimate.ci_minutes
            hours += estimate.developer_hours
        return ImpactEstimate(
            builds_protected=builds,
            ci_minutes=round(minutes, 2),
            developer_hours=round(hours, 2),
        )

    def cost_savings(self, ci_minutes: float, developer_hours: float) -> Dict[str, float]:
        hourly_rate = self.pricing.average_developer_salary / config.WORK_HOURS_PER_YEAR
        ci_cost = ci_minutes * self.pricing.infrastructure_cost_per_minute
        developer_cost = developer_hours * hourly_rate
        return {
            "ciCostSaved": round(ci_cost, 2),
            "developerCostSaved": round(developer_cost, 2),
            "totalSaved": round(ci_cost + developer_cost, 2),
        }
