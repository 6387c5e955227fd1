"""
Stored quarantine policies. At most one policy per project is active.
"""

import logging
from typing import Any, List, Optional, Tuple

from sqlalchemy.orm import Session

from database.models import Project, QuarantinePolicy

from .errors import NotFoundError, PolicyValidationError
from .schemas import (
    PolicyValidationResult,
    QuarantinePolicyConfig,
    default_policy_config,
    parse_policy_config,
)

logger = logging.getLogger(__name__)


def policy_warnings(config: QuarantinePolicyConfig) -> List[str]:
    """Settings that are valid but likely to misbehave."""
    warnings: List[str] = []
    if config.consecutive_failures > config.min_runs_required:
        warnings.append(
            "consecutiveFailures exceeds minRunsRequired; tests reach the run minimum "
            "before they can ever qualify"
        )
    if config.failure_rate_threshold < 0.1:
        warnings.append("failureRateThreshold below 0.10 will quarantine tests with rare failures")
    if config.max_quarantine_percentage is None:
        warnings.append("no maxQuarantinePercentage: the quarantined share of the suite is unbounded")
    if config.max_quarantine_period is None:
        warnings.append("no maxQuarantinePeriod: tests may stay quarantined indefinitely")
    elif config.max_quarantine_period < config.stability_period:
        warnings.append(
            "maxQuarantinePeriod is shorter than stabilityPeriod; tests are always released "
            "by the period limit"
        )
    if config.success_rate_required >= 1.0:
        warnings.append("successRateRequired of 1.0 releases only tests with no failure at all")
    return warnings


def validate_policy(data: Any) -> PolicyValidationResult:
    try:
        config = parse_policy_config(data)
    except PolicyValidationError as exc:
        return PolicyValidationResult(is_valid=False, errors=exc.errors)
    return PolicyValidationResult(is_valid=True, warnings=policy_warnings(config))


class PolicyStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    def _project(self, project_id: int) -> Project:
        project = self.db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    def get(self, policy_id: int) -> QuarantinePolicy:
        policy = self.db.get(QuarantinePolicy, policy_id)
        if policy is None:
            raise NotFoundError("Policy", policy_id)
        return policy

    def list(self, project_id: int) -> List[QuarantinePolicy]:
        self._project(project_id)
        return (
            self.db.query(QuarantinePolicy)
            .filter(QuarantinePolicy.project_id == project_id)
            .order_by(QuarantinePolicy.id.asc())
            .all()
        )

    def active(self, project_id: int) -> Optional[QuarantinePolicy]:
        return (
            self.db.query(QuarantinePolicy)
            .filter(QuarantinePolicy.project_id == project_id, QuarantinePolicy.is_active.is_(True))
            .order_by(QuarantinePolicy.updated_at.desc(), QuarantinePolicy.id.desc())
            .first()
        )

    def active_config(self, project_id: int) -> Tuple[Optional[int], QuarantinePolicyConfig]:
        """The active policy's id and config, or the built-in defaults."""
        policy = self.active(project_id)
        if policy is None:
            return None, default_policy_config()
        return policy.id, parse_policy_config(policy.config or {})

    def create(
        self,
        project_id: int,
        name: str,
        config: Any,
        description: Optional[str] = None,
        is_active: bool = False,
        created_by: Optional[int] = None,
    ) -> QuarantinePolicy:
        self._project(project_id)
        parsed = parse_policy_config(config)
        policy = QuarantinePolicy(
            project_id=project_id,
            name=name,
            description=description,
            is_active=False,
            config=parsed.model_dump(mode="json", by_alias=True),
            created_by=created_by,
        )
        self.db.add(policy)
        self.db.flush()
        if is_active:
            self.set_status(policy.id, True)
        logger.info("Created quarantine policy %s for project %s", policy.id, project_id)
        return policy

    def update(
        self,
        policy_id: int,
        name: Optional[str] = None,
        description: Optional[str] = None,
        config: Any = None,
    ) -> QuarantinePolicy:
        policy = self.get(policy_id)
        if name is not None:
            policy.name = name
        if description is not None:
            policy.description = description
        if config is not None:
            policy.config = parse_policy_config(config).model_dump(mode="json", by_alias=True)
        self.db.flush()
        return policy

    def set_status(self, policy_id: int, is_active: bool) -> QuarantinePolicy:
        policy = self.get(policy_id)
        if is_active:
            (
                self.db.query(QuarantinePolicy)
                .filter(
                    QuarantinePolicy.project_id == policy.project_id,
                    QuarantinePolicy.id != policy.id,
                    QuarantinePolicy.is_active.is_(True),
                )
                .update({QuarantinePolicy.is_active: False}, synchronize_session="fetch")
            )
        policy.is_active = is_active
        self.db.flush()
        self.db.refresh(policy)
        logger.info(
            "Policy %s of project %s is now %s",
            policy.id,
            policy.project_id,
            "active" if is_active else "inactive",
        )
        return policy

    def delete(self, policy_id: int) -> None:
        policy = self.get(policy_id)
        self.db.delete(policy)
        self.db.flush()
        logger.info("Deleted quarantine policy %s", policy_id)
