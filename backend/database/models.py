from datetime import datetime
import re
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.exc import OperationalError, ProgrammingError
from sqlalchemy.orm import Session, validates

from psycopg.errors import UndefinedTable as PsycopgUndefinedTable

from .session import Base

USER_ROLES = ("owner", "admin", "member")
LEDGER_ACTIONS = ("quarantined", "unquarantined", "extended")
JOB_KINDS = ("stability_check", "impact_recalculation")
JOB_STATUSES = ("pending", "running", "completed", "failed")


def _normalize_project_name(name: str) -> str:
    """Normalize project names for uniqueness checks."""
    return re.sub(r"\s+", " ", name or "").strip().lower()


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


class Organization(Base):
    __tablename__ = "organizations"
    __table_args__ = (
        UniqueConstraint("slug", name="uq_organizations_slug"),
        UniqueConstraint("name", name="uq_organizations_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    slug = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @staticmethod
    def normalized_slug(name: str) -> str:
        cleaned = re.sub(r"\s+", " ", name or "").strip().lower()
        cleaned = re.sub(r"[^a-z0-9_-]+", "-", cleaned)
        return cleaned or "org"

    @classmethod
    def get_or_create(cls, db: Session, name: str) -> "Organization":
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValueError("Organization name is required")
        slug = cls.normalized_slug(cleaned)
        try:
            existing = db.query(cls).filter(cls.slug == slug).first()
            if existing:
                return existing
            org = cls(name=cleaned, slug=slug, display_name=cleaned)
            db.add(org)
            db.flush()
            return org
        except (ProgrammingError, OperationalError) as exc:
            message = str(exc).lower()
            if isinstance(getattr(exc, "orig", None), PsycopgUndefinedTable):
                raise RuntimeError("Database schema out of sync. Run Alembic migrations.") from exc
            if "relation" in message and "does not exist" in message:
                raise RuntimeError("Database schema out of sync. Run Alembic migrations.") from exc
            raise

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "display_name": self.display_name,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("email", name="uq_users_email"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization = Column(String(255), nullable=False)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="member", server_default="member")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @validates("organization")
    def _validate_organization(self, key, value: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValueError("organization is required")
        return cleaned

    @validates("email")
    def _validate_email(self, key, value: str) -> str:
        cleaned = (value or "").strip().lower()
        if not cleaned:
            raise ValueError("email is required")
        return cleaned

    @validates("role")
    def _validate_role(self, key, value: str) -> str:
        cleaned = (value or "member").strip().lower()
        if cleaned not in USER_ROLES:
            raise ValueError(f"role must be one of {', '.join(USER_ROLES)}")
        return cleaned

    @property
    def can_manage_quarantine(self) -> bool:
        return self.role in ("owner", "admin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization": self.organization,
            "organization_id": self.organization_id,
            "email": self.email,
            "role": self.role,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (
        UniqueConstraint("organization_id", "project_key", name="uq_projects_org_key"),
    )

    id = Column(Integer, primary_key=True, index=True)
    organization_id = Column(Integer, ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False, index=True)
    project_name = Column(String(255), nullable=False)
    project_key = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    repository_url = Column(String(1024), nullable=True)
    default_branch = Column(String(255), nullable=False, default="main")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @validates("project_name")
    def _validate_project_name(self, key, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("project_name is required")
        self.project_key = _normalize_project_name(value)
        return value.strip()

    @validates("default_branch")
    def _validate_default_branch(self, key, value: str) -> str:
        return (value or "").strip() or "main"

    @classmethod
    def normalized_key(cls, name: Optional[str]) -> str:
        return _normalize_project_name(name or "")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "project_name": self.project_name,
            "description": self.description,
            "repository_url": self.repository_url,
            "default_branch": self.default_branch,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


class FlakyTestPattern(Base):
    """Per-test stability record. Quarantine columns mirror the ledger."""

    __tablename__ = "flaky_test_patterns"
    __table_args__ = (
        UniqueConstraint("project_id", "test_name", "test_suite", name="uq_flaky_test_patterns_identity"),
        Index("ix_flaky_test_patterns_project_id", "project_id"),
        Index("ix_flaky_test_patterns_quarantined", "project_id", "is_quarantined"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    test_name = Column(String(1024), nullable=False)
    # Empty string instead of NULL keeps the identity constraint effective.
    test_suite = Column(String(1024), nullable=False, default="", server_default="")
    total_runs = Column(Integer, nullable=False, default=0)
    failed_runs = Column(Integer, nullable=False, default=0)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_seen = Column(DateTime(timezone=True), nullable=True)
    is_quarantined = Column(Boolean, nullable=False, default=False, server_default="0")
    quarantined_at = Column(DateTime(timezone=True), nullable=True)
    quarantined_by = Column(String(64), nullable=True)
    quarantine_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @validates("test_name")
    def _validate_test_name(self, key, value: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValueError("test_name is required")
        return cleaned

    @validates("test_suite")
    def _validate_test_suite(self, key, value: Optional[str]) -> str:
        return (value or "").strip()

    @property
    def failure_rate(self) -> float:
        if not self.total_runs:
            return 0.0
        return (self.failed_runs or 0) / self.total_runs

    @property
    def qualified_name(self) -> str:
        if self.test_suite:
            return f"{self.test_suite}::{self.test_name}"
        return self.test_name

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "testName": self.test_name,
            "testSuite": self.test_suite or None,
            "totalRuns": self.total_runs,
            "failedRuns": self.failed_runs,
            "failureRate": round(self.failure_rate, 4),
            "consecutiveFailures": self.consecutive_failures,
            "isQuarantined": bool(self.is_quarantined),
            "quarantinedAt": _iso(self.quarantined_at),
            "quarantinedBy": self.quarantined_by,
            "quarantineReason": self.quarantine_reason,
            "lastSeen": _iso(self.last_seen),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class TestResult(Base):
    __test__ = False
    __tablename__ = "test_results"
    __table_args__ = (
        Index("ix_test_results_project_id", "project_id"),
        Index("ix_test_results_pattern_created", "pattern_id", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    pattern_id = Column(Integer, ForeignKey("flaky_test_patterns.id", ondelete="CASCADE"), nullable=False)
    build_id = Column(String(255), nullable=False)
    commit_hash = Column(String(64), nullable=False)
    branch = Column(String(255), nullable=False)
    ci_provider = Column(String(50), nullable=False, default="other")
    status = Column(String(20), nullable=False)
    duration_ms = Column(Float, nullable=False, default=0.0)
    retry_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "flakyTestPatternId": self.pattern_id,
            "buildId": self.build_id,
            "commitHash": self.commit_hash,
            "branch": self.branch,
            "ciProvider": self.ci_provider,
            "status": self.status,
            "durationMs": self.duration_ms,
            "retryCount": self.retry_count,
            "errorMessage": self.error_message,
            "createdAt": _iso(self.created_at),
        }


class QuarantinePolicy(Base):
    __tablename__ = "quarantine_policies"
    __table_args__ = (
        Index("ix_quarantine_policies_project_active", "project_id", "is_active"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=False, server_default="0")
    config = Column(JSON, nullable=False, default=dict)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @validates("name")
    def _validate_name(self, key, value: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValueError("name is required")
        return cleaned

    def to_dict(self) -> dict:
        payload = {
            "id": self.id,
            "projectId": self.project_id,
            "name": self.name,
            "description": self.description,
            "isActive": bool(self.is_active),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        payload.update(self.config or {})
        return payload


class QuarantineHistory(Base):
    """Append-only quarantine ledger."""

    __tablename__ = "quarantine_history"
    __table_args__ = (
        Index("ix_quarantine_history_pattern_id", "pattern_id", "id"),
        Index("ix_quarantine_history_project_id", "project_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    pattern_id = Column(Integer, ForeignKey("flaky_test_patterns.id", ondelete="CASCADE"), nullable=False)
    policy_id = Column(Integer, ForeignKey("quarantine_policies.id", ondelete="SET NULL"), nullable=True)
    action = Column(String(20), nullable=False)
    reason = Column(Text, nullable=True)
    triggered_by = Column(String(64), nullable=False, default="auto")
    failure_rate = Column(Float, nullable=True)
    confidence = Column(Float, nullable=True)
    consecutive_failures = Column(Integer, nullable=True)
    metadata_json = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @validates("action")
    def _validate_action(self, key, value: str) -> str:
        if value not in LEDGER_ACTIONS:
            raise ValueError(f"action must be one of {', '.join(LEDGER_ACTIONS)}")
        return value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "reason": self.reason,
            "triggeredBy": self.triggered_by,
            "policyId": self.policy_id,
            "metadata": self.metadata_json or {},
            "failureRate": self.failure_rate,
            "confidence": self.confidence,
            "consecutiveFailures": self.consecutive_failures,
            "createdAt": _iso(self.created_at),
        }


class QuarantineImpact(Base):
    __tablename__ = "quarantine_impacts"
    __table_args__ = (
        Index("ix_quarantine_impacts_pattern_id", "pattern_id"),
        Index("ix_quarantine_impacts_project_id", "project_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    pattern_id = Column(Integer, ForeignKey("flaky_test_patterns.id", ondelete="CASCADE"), nullable=False)
    builds_blocked = Column(Integer, nullable=False, default=0)
    ci_time_wasted = Column(Float, nullable=False, default=0.0)
    developer_hours = Column(Float, nullable=False, default=0.0)
    false_positives = Column(Integer, nullable=False, default=0)
    quarantine_period = Column(Float, nullable=False, default=0.0)
    auto_unquarantined = Column(Boolean, nullable=False, default=False)
    manual_intervention = Column(Boolean, nullable=False, default=False)
    period_start = Column(DateTime(timezone=True), nullable=False)
    period_end = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    @property
    def is_open(self) -> bool:
        return self.period_end is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "flakyTestPatternId": self.pattern_id,
            "buildsBlocked": self.builds_blocked,
            "ciTimeWasted": round(self.ci_time_wasted or 0.0, 2),
            "developerHours": round(self.developer_hours or 0.0, 2),
            "falsePositives": self.false_positives,
            "quarantinePeriod": round(self.quarantine_period or 0.0, 2),
            "autoUnquarantined": bool(self.auto_unquarantined),
            "manualIntervention": bool(self.manual_intervention),
            "periodStart": _iso(self.period_start),
            "periodEnd": _iso(self.period_end),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }


class TeamConfigurationRecord(Base):
    __tablename__ = "team_configurations"
    __table_args__ = (
        UniqueConstraint("project_id", name="uq_team_configurations_project"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    settings = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class QuarantineJob(Base):
    __tablename__ = "quarantine_jobs"
    __table_args__ = (
        Index("ix_quarantine_jobs_project_id", "project_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    requested_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    report = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)

    @validates("kind")
    def _validate_kind(self, key, value: str) -> str:
        if value not in JOB_KINDS:
            raise ValueError(f"kind must be one of {', '.join(JOB_KINDS)}")
        return value

    @validates("status")
    def _validate_status(self, key, value: str) -> str:
        if value not in JOB_STATUSES:
            raise ValueError(f"status must be one of {', '.join(JOB_STATUSES)}")
        return value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "projectId": self.project_id,
            "kind": self.kind,
            "status": self.status,
            "report": self.report,
            "error": self.error,
            "createdAt": _iso(self.created_at),
            "startedAt": _iso(self.started_at),
            "finishedAt": _iso(self.finished_at),
        }
