"""
Configuration for the quarantine rules engine.
Centralizes tunable policies so non-developers can adjust thresholds safely.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

# ---------------------------------------------------------------------
# Stability record derivation
# ---------------------------------------------------------------------

# Confidence grows with sample size: runs / (runs + prior). 20 runs -> 0.8.
CONFIDENCE_PRIOR_RUNS: int = 5

FAILURE_STATUSES = frozenset({"failed", "error"})
COUNTED_STATUSES = frozenset({"passed", "failed", "error"})

# Stability score (1 - failure rate) below which a test is listed as critical.
CRITICAL_STABILITY_SCORE: float = 0.6

# How many recent runs per test the engine loads for windowed rules.
RECENT_RUNS_LIMIT: int = 200

# ---------------------------------------------------------------------
# Default policy values (mirrors the policy editor defaults)
# ---------------------------------------------------------------------

DEFAULT_POLICY_CONFIG: Dict[str, object] = {
    "failure_rate_threshold": 0.5,
    "confidence_threshold": 0.7,
    "consecutive_failures": 3,
    "min_runs_required": 5,
    "stability_period": 7,
    "success_rate_required": 0.95,
    "min_successful_runs": 10,
    "high_impact_suites": [],
    "priority_tests": [],
    "enable_rapid_degradation": True,
    "enable_critical_path_protection": True,
    "enable_time_based_rules": False,
    "max_quarantine_period": 30,
    "max_quarantine_percentage": 25.0,
    "critical_path_multiplier": 2.0,
    "rapid_degradation_window": 5,
    "time_window_days": 14,
}

# ---------------------------------------------------------------------
# Simulation heuristics
# ---------------------------------------------------------------------

OVER_QUARANTINE_RATIO: float = 0.25
FALSE_POSITIVE_MARGIN: float = 0.15
SAVINGS_LOOKBACK_DAYS: int = 30

# ---------------------------------------------------------------------
# Recommended-policy heuristics
# ---------------------------------------------------------------------

RECOMMENDED_MIN_RUNS_FLOOR: int = 3
RECOMMENDED_THRESHOLD_BOUNDS = (0.2, 0.8)
RECOMMENDED_HIGH_IMPACT_SUITES: int = 3

# ---------------------------------------------------------------------
# Pricing table defaults (team configuration)
# ---------------------------------------------------------------------

WORK_HOURS_PER_YEAR: int = 2080

DEFAULT_TEAM_CONFIGURATION: Dict[str, float] = {
    "average_developer_salary": 120000.0,
    "infrastructure_cost_per_minute": 0.5,
    "team_size": 8,
    "deployment_frequency": 10,
    "cost_per_deployment_delay": 500.0,
    "average_build_minutes": 15.0,
    "investigation_minutes_per_failure": 30.0,
}


@dataclass(frozen=True)
class SimulatorConfig:
    over_quarantine_ratio: float = OVER_QUARANTINE_RATIO
    false_positive_margin: float = FALSE_POSITIVE_MARGIN
    savings_lookback_days: int = SAVINGS_LOOKBACK_DAYS


@dataclass(frozen=True)
class RecommenderConfig:
    """Bounds used when tuning the default policy to a project's history."""

    min_runs_floor: int = RECOMMENDED_MIN_RUNS_FLOOR
    threshold_bounds: tuple = RECOMMENDED_THRESHOLD_BOUNDS
    high_impact_suites: int = RECOMMENDED_HIGH_IMPACT_SUITES
    defaults: Dict[str, object] = field(
        default_factory=lambda: dict(DEFAULT_POLICY_CONFIG)
    )


@dataclass(frozen=True)
class EngineConfig:
    recent_runs_limit: int = RECENT_RUNS_LIMIT
    critical_stability_score: float = CRITICAL_STABILITY_SCORE
    conflict_retries: int = 1
    simulator: SimulatorConfig = field(default_factory=SimulatorConfig)
    recommender: RecommenderConfig = field(default_factory=RecommenderConfig)
    default_policy: Optional[Dict[str, object]] = None


__all__ = [
    "CONFIDENCE_PRIOR_RUNS",
    "FAILURE_STATUSES",
    "COUNTED_STATUSES",
    "CRITICAL_STABILITY_SCORE",
    "RECENT_RUNS_LIMIT",
    "DEFAULT_POLICY_CONFIG",
    "OVER_QUARANTINE_RATIO",
    "FALSE_POSITIVE_MARGIN",
    "SAVINGS_LOOKBACK_DAYS",
    "WORK_HOURS_PER_YEAR",
    "DEFAULT_TEAM_CONFIGURATION",
    "SimulatorConfig",
    "RecommenderConfig",
    "EngineConfig",
]
