"""
Suggested quarantine policy tuned to a project's recorded history.
"""

import logging
import math
from collections import Counter
from typing import List, Optional, Sequence

from .config import RecommenderConfig
from .schemas import QuarantinePolicyConfig, TestStabilityRecord

logger = logging.getLogger(__name__)


def _median(values: Sequence[int]) -> float:
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2:
        return float(ordered[mid])
    return (ordered[mid - 1] + ordered[mid]) / 2.0


def _percentile(values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile."""
    ordered = sorted(values)
    rank = max(int(math.ceil(pct / 100.0 * len(ordered))), 1)
    return ordered[rank - 1]


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class PolicyRecommender:
    def __init__(self, settings: Optional[RecommenderConfig] = None) -> None:
        self.settings = settings or RecommenderConfig()

    def recommend(self, records: Sequence[TestStabilityRecord]) -> QuarantinePolicyConfig:
        """
        Start from the default policy and adjust three knobs:

        - minRunsRequired drops toward the project's median run count when
          history is thin (never below the floor);
        - failureRateThreshold follows the 75th percentile of non-zero
          failure rates, clamped to the configured bounds;
        - highImpactSuites lists the suites with the most failures.
        """
        values = dict(self.settings.defaults)
        counted = [record for record in records if record.total_runs > 0]

        if counted:
            default_min_runs = int(values["min_runs_required"])
            median_runs = _median([record.total_runs for record in counted])
            if median_runs < default_min_runs:
                values["min_runs_required"] = int(
                    _clamp(math.floor(median_runs), self.settings.min_runs_floor, default_min_runs)
                )

            rates = [record.failure_rate for record in counted if record.failed_runs > 0]
            if rates:
                low, high = self.settings.threshold_bounds
                values["failure_rate_threshold"] = round(_clamp(_percentile(rates, 75), low, high), 2)

            values["high_impact_suites"] = self._top_suites(counted)

        recommended = QuarantinePolicyConfig.model_validate(values)
        logger.info(
            "Recommended policy from %d records: threshold=%.2f min_runs=%d suites=%s",
            len(counted),
            recommended.failure_rate_threshold,
            recommended.min_runs_required,
            recommended.high_impact_suites,
        )
        return recommended

    def _top_suites(self, records: Sequence[TestStabilityRecord]) -> List[str]:
        failures: Counter = Counter()
        for record in records:
            if record.test_suite and record.failed_runs:
                failures[record.test_suite] += record.failed_runs
        ranked = sorted(failures.items(), key=lambda item: (-item[1], item[0]))
        return [suite for suite, _ in ranked[: self.settings.high_impact_suites]]
