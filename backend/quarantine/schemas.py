"""
Pydantic data contracts for the quarantine rules engine.
These models describe the inputs/outputs shared across evaluation, simulation,
impact tracking and the REST layer. JSON is camelCase; Python is snake_case.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from . import config
from .errors import PolicyValidationError
from .stability import confidence_for, failure_rate


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------
# Stability records
# ---------------------------------------------------------------------


class RunOutcome(CamelModel):
    """A single counted run of a test, oldest-first in any sequence."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    passed: bool
    timestamp: datetime
    duration_ms: float = 0.0


class TestStabilityRecord(CamelModel):
    """Rolling statistics for one test. ``failure_rate`` is always derived."""

    __test__ = False

    id: Optional[int] = None
    project_id: int
    test_name: str
    test_suite: Optional[str] = None
    total_runs: int = Field(0, ge=0)
    failed_runs: int = Field(0, ge=0)
    consecutive_failures: int = Field(0, ge=0)
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    last_seen: Optional[datetime] = None

    @model_validator(mode="after")
    def _derive(self) -> "TestStabilityRecord":
        if self.failed_runs > self.total_runs:
            raise ValueError("failed_runs cannot exceed total_runs")
        if self.confidence is None:
            self.confidence = confidence_for(self.total_runs)
        return self

    @computed_field  # type: ignore[misc]
    @property
    def failure_rate(self) -> float:
        return failure_rate(self.total_runs, self.failed_runs)

    @property
    def qualified_name(self) -> str:
        if self.test_suite:
            return f"{self.test_suite}::{self.test_name}"
        return self.test_name


class EvaluationContext(BaseModel):
    """Request-scoped facts the evaluator needs besides the record and policy."""

    model_config = ConfigDict(frozen=True)

    now: datetime
    total_tests: int = Field(0, ge=0)
    quarantined_tests: int = Field(0, ge=0)
    quarantined_at: Optional[datetime] = None
    recent_runs: List[RunOutcome] = Field(default_factory=list)

    @property
    def is_quarantined(self) -> bool:
        return self.quarantined_at is not None


# ---------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------


class QuarantinePolicyConfig(CamelModel):
    """Declarative rule set. Unknown fields are rejected."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    # Quarantine triggers
    failure_rate_threshold: float = Field(..., ge=0.0, le=1.0)
    confidence_threshold: float = Field(..., ge=0.0, le=1.0)
    consecutive_failures: int = Field(..., ge=1)
    min_runs_required: int = Field(..., ge=1)

    # Auto-unquarantine rules
    stability_period: int = Field(..., ge=0)
    success_rate_required: float = Field(..., ge=0.0, le=1.0)
    min_successful_runs: int = Field(..., ge=1)

    # Impact calculation
    high_impact_suites: List[str] = Field(default_factory=list)
    priority_tests: List[str] = Field(default_factory=list)

    enable_rapid_degradation: bool = True
    enable_critical_path_protection: bool = True
    enable_time_based_rules: bool = False
    max_quarantine_period: Optional[int] = Field(None, ge=1)
    max_quarantine_percentage: Optional[float] = Field(None, ge=0.0, le=100.0)

    # Safety margins
    critical_path_multiplier: float = Field(2.0, ge=1.0)
    rapid_degradation_window: int = Field(5, ge=2)
    time_window_days: int = Field(14, ge=1)

    @field_validator("high_impact_suites", "priority_tests")
    @classmethod
    def _clean_names(cls, value: List[str]) -> List[str]:
        cleaned = [str(item).strip() for item in value or []]
        return list(dict.fromkeys(item for item in cleaned if item))

    def is_priority(self, record: TestStabilityRecord) -> bool:
        names = set(self.priority_tests)
        return record.test_name in names or record.qualified_name in names


def default_policy_config() -> QuarantinePolicyConfig:
    return QuarantinePolicyConfig.model_validate(dict(config.DEFAULT_POLICY_CONFIG))


def _format_errors(exc: ValidationError) -> List[Dict[str, str]]:
    errors: List[Dict[str, str]] = []
    for err in exc.errors():
        field = ".".join(str(part) for part in err.get("loc", ())) or "config"
        errors.append({"field": field, "message": err.get("msg", "invalid value")})
    return errors


def parse_policy_config(data: Any) -> QuarantinePolicyConfig:
    """Validate raw policy input, reporting every violated field at once."""
    if isinstance(data, QuarantinePolicyConfig):
        return data
    if not isinstance(data, Mapping):
        raise PolicyValidationError([{"field": "config", "message": "must be an object"}])
    try:
        return QuarantinePolicyConfig.model_validate(dict(data))
    except ValidationError as exc:
        raise PolicyValidationError(_format_errors(exc)) from exc


# ---------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------


class DecisionAction(str, Enum):
    QUARANTINE = "quarantine"
    UNQUARANTINE = "unquarantine"
    NO_ACTION = "no_action"


class QuarantineDecision(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    action: DecisionAction
    reason: str
    rule: str
    auto_unquarantined: bool = False
    suppressed: bool = False

    @classmethod
    def quarantine(cls, reason: str, rule: str) -> "QuarantineDecision":
        return cls(action=DecisionAction.QUARANTINE, reason=reason, rule=rule)

    @classmethod
    def unquarantine(cls, reason: str, rule: str) -> "QuarantineDecision":
        return cls(
            action=DecisionAction.UNQUARANTINE,
            reason=reason,
            rule=rule,
            auto_unquarantined=True,
        )

    @classmethod
    def no_action(cls, reason: str, rule: str, suppressed: bool = False) -> "QuarantineDecision":
        return cls(action=DecisionAction.NO_ACTION, reason=reason, rule=rule, suppressed=suppressed)


# ---------------------------------------------------------------------
# Pricing table and impact
# ---------------------------------------------------------------------


class TeamConfiguration(CamelModel):
    average_developer_salary: float = Field(
        config.DEFAULT_TEAM_CONFIGURATION["average_developer_salary"], ge=0
    )
    infrastructure_cost_per_minute: float = Field(
        config.DEFAULT_TEAM_CONFIGURATION["infrastructure_cost_per_minute"], ge=0
    )
    team_size: int = Field(int(config.DEFAULT_TEAM_CONFIGURATION["team_size"]), ge=1)
    deployment_frequency: int = Field(
        int(config.DEFAULT_TEAM_CONFIGURATION["deployment_frequency"]), ge=0
    )
    cost_per_deployment_delay: float = Field(
        config.DEFAULT_TEAM_CONFIGURATION["cost_per_deployment_delay"], ge=0
    )
    average_build_minutes: float = Field(
        config.DEFAULT_TEAM_CONFIGURATION["average_build_minutes"], ge=0
    )
    investigation_minutes_per_failure: float = Field(
        config.DEFAULT_TEAM_CONFIGURATION["investigation_minutes_per_failure"], ge=0
    )


class ImpactEstimate(CamelModel):
    builds_protected: int = 0
    ci_minutes: float = 0.0
    developer_hours: float = 0.0


# ---------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------


class SimulatedTest(BaseModel):
    """Read-only view of one test inside a project snapshot."""

    record: TestStabilityRecord
    recent_runs: List[RunOutcome] = Field(default_factory=list)
    quarantined_at: Optional[datetime] = None
    previously_auto_released: bool = False


class ProjectSnapshot(BaseModel):
    project_id: int
    tests: List[SimulatedTest] = Field(default_factory=list)

    @property
    def quarantined_count(self) -> int:
        return sum(1 for test in self.tests if test.quarantined_at is not None)


class EstimatedSavings(CamelModel):
    ci_minutes: float = 0.0
    developer_hours: float = 0.0
    builds_protected: int = 0


class PotentialRisks(CamelModel):
    false_positives: int = 0
    over_quarantine: bool = False
    critical_tests_affected: int = 0


class PolicyImpactSimulation(CamelModel):
    would_quarantine: int = 0
    would_unquarantine: int = 0
    estimated_savings: EstimatedSavings = Field(default_factory=EstimatedSavings)
    potential_risks: PotentialRisks = Field(default_factory=PotentialRisks)
    quarantine_candidates: List[str] = Field(default_factory=list)
    unquarantine_candidates: List[str] = Field(default_factory=list)
    suppressed_by_cap: List[str] = Field(default_factory=list)


class PolicyValidationResult(CamelModel):
    is_valid: bool
    errors: List[Dict[str, str]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------
# Runs, stats and ingestion
# ---------------------------------------------------------------------


class RunReport(CamelModel):
    project_id: int
    policy_id: Optional[int] = None
    evaluated: int = 0
    quarantined: List[str] = Field(default_factory=list)
    unquarantined: List[str] = Field(default_factory=list)
    suppressed: List[str] = Field(default_factory=list)
    conflicts: List[str] = Field(default_factory=list)
    errors: List[Dict[str, str]] = Field(default_factory=list)


class QuarantineSavings(CamelModel):
    ci_time_minutes: float = 0.0
    developer_hours: float = 0.0
    builds_protected: int = 0


class QuarantineStats(CamelModel):
    total_quarantined: int = 0
    auto_quarantined: int = 0
    manual_quarantined: int = 0
    auto_unquarantined: int = 0
    quarantine_savings: QuarantineSavings = Field(default_factory=QuarantineSavings)
    avg_quarantine_days: float = 0.0
    false_positive_rate: float = 0.0


class TestResultIn(CamelModel):
    __test__ = False

    test_name: str = Field(..., min_length=1)
    test_suite: Optional[str] = None
    status: Literal["passed", "failed", "skipped", "error"]
    duration: float = Field(0.0, ge=0)
    error_message: Optional[str] = None
    retry_count: int = Field(0, ge=0)
    timestamp: Optional[datetime] = None


class SubmitTestResultsRequest(CamelModel):
    project_id: int
    build_id: str
    commit_hash: str
    branch: str
    ci_provider: str = "other"
    results: List[TestResultIn]


class TrackImpactRequest(CamelModel):
    project_id: int
    flaky_test_pattern_id: int
    builds_blocked: int = Field(0, ge=0)
    ci_time_wasted: float = Field(0.0, ge=0)
    developer_hours: float = Field(0.0, ge=0)
    false_positive: bool = False
