"""
Append-only quarantine ledger.

Every state change is a conditional UPDATE on the pattern's ``is_quarantined``
flag (compare-and-swap) followed by exactly one history row and the matching
impact open/close, all inside the caller's transaction. Committing is left to
the caller so a batch can commit test by test.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from database.models import FlakyTestPattern, QuarantineHistory, QuarantineImpact

from . import stability
from .errors import ConflictError
from .schemas import TestStabilityRecord

logger = logging.getLogger(__name__)

AUTO = "auto"


class QuarantineLedger:
    def __init__(self, db: Session) -> None:
        self.db = db

    # -----------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------

    def history(self, pattern_id: int) -> List[QuarantineHistory]:
        return (
            self.db.query(QuarantineHistory)
            .filter(QuarantineHistory.pattern_id == pattern_id)
            .order_by(QuarantineHistory.id.asc())
            .all()
        )

    def latest_entry(self, pattern_id: int) -> Optional[QuarantineHistory]:
        return (
            self.db.query(QuarantineHistory)
            .filter(QuarantineHistory.pattern_id == pattern_id)
            .order_by(QuarantineHistory.id.desc())
            .first()
        )

    def open_impact(self, pattern_id: int) -> Optional[QuarantineImpact]:
        return (
            self.db.query(QuarantineImpact)
            .filter(QuarantineImpact.pattern_id == pattern_id, QuarantineImpact.period_end.is_(None))
            .order_by(QuarantineImpact.id.desc())
            .first()
        )

    def was_auto_released(self, pattern_id: int) -> bool:
        """True when an earlier quarantine of this test ended through the stability rules."""
        return (
            self.db.query(QuarantineImpact.id)
            .filter(
                QuarantineImpact.pattern_id == pattern_id,
                QuarantineImpact.period_end.isnot(None),
                QuarantineImpact.auto_unquarantined.is_(True),
            )
            .first()
            is not None
        )

    # -----------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------

    def quarantine(
        self,
        pattern: FlakyTestPattern,
        reason: str,
        now: datetime,
        triggered_by: str = AUTO,
        record: Optional[TestStabilityRecord] = None,
        policy_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> QuarantineHistory:
        self._compare_and_set(
            pattern,
            expected=False,
            values={
                "is_quarantined": True,
                "quarantined_at": now,
                "quarantined_by": triggered_by,
                "quarantine_reason": reason,
            },
        )
        entry = self._append(pattern, "quarantined", reason, now, triggered_by, record, policy_id, metadata)
        self.db.add(
            QuarantineImpact(
                project_id=pattern.project_id,
                pattern_id=pattern.id,
                period_start=now,
                manual_intervention=triggered_by != AUTO,
            )
        )
        self.db.flush()
        logger.info("Quarantined %s (project %s): %s", pattern.qualified_name, pattern.project_id, reason)
        return entry

    def unquarantine(
        self,
        pattern: FlakyTestPattern,
        reason: str,
        now: datetime,
        triggered_by: str = AUTO,
        auto_unquarantined: bool = False,
        record: Optional[TestStabilityRecord] = None,
        policy_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> QuarantineHistory:
        self._compare_and_set(
            pattern,
            expected=True,
            values={
                "is_quarantined": False,
                "quarantined_at": None,
                "quarantined_by": None,
                "quarantine_reason": None,
            },
        )
        entry = self._append(pattern, "unquarantined", reason, now, triggered_by, record, policy_id, metadata)

        impact = self.open_impact(pattern.id)
        if impact is not None:
            impact.period_end = now
            impact.quarantine_period = max(stability.elapsed_days(impact.period_start, now), 0.0)
            impact.auto_unquarantined = auto_unquarantined
            if triggered_by != AUTO:
                impact.manual_intervention = True
            if not impact.builds_blocked:
                # Never failed while quarantined: the quarantine was not needed.
                impact.false_positives = (impact.false_positives or 0) + 1
        self.db.flush()
        logger.info("Unquarantined %s (project %s): %s", pattern.qualified_name, pattern.project_id, reason)
        return entry

    def extend(
        self,
        pattern: FlakyTestPattern,
        reason: str,
        now: datetime,
        triggered_by: str,
        record: Optional[TestStabilityRecord] = None,
    ) -> QuarantineHistory:
        """Restart the quarantine clock of an already quarantined test."""
        self._compare_and_set(
            pattern,
            expected=True,
            values={"quarantined_at": now, "quarantine_reason": reason},
        )
        entry = self._append(pattern, "extended", reason, now, triggered_by, record, None, None)
        impact = self.open_impact(pattern.id)
        if impact is not None and triggered_by != AUTO:
            impact.manual_intervention = True
        self.db.flush()
        logger.info("Extended quarantine of %s (project %s)", pattern.qualified_name, pattern.project_id)
        return entry

    def _compare_and_set(self, pattern: FlakyTestPattern, expected: bool, values: Dict[str, Any]) -> None:
        self.db.flush()
        result = self.db.execute(
            update(FlakyTestPattern)
            .where(FlakyTestPattern.id == pattern.id, FlakyTestPattern.is_quarantined.is_(expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                "Quarantine CAS failed for pattern %s (expected quarantined=%s)", pattern.id, expected
            )
            raise ConflictError(pattern.id, expected)
        self.db.refresh(pattern)

    def _append(
        self,
        pattern: FlakyTestPattern,
        action: str,
        reason: str,
        now: datetime,
        triggered_by: str,
        record: Optional[TestStabilityRecord],
        policy_id: Optional[int],
        metadata: Optional[Dict[str, Any]],
    ) -> QuarantineHistory:
        if record is not None:
            failure_rate = record.failure_rate
            confidence = record.confidence
            consecutive = record.consecutive_failures
        else:
            failure_rate = pattern.failure_rate
            confidence = stability.confidence_for(pattern.total_runs or 0)
            consecutive = pattern.consecutive_failures
        entry = QuarantineHistory(
            project_id=pattern.project_id,
            pattern_id=pattern.id,
            policy_id=policy_id,
            action=action,
            reason=reason,
            triggered_by=triggered_by,
            failure_rate=round(failure_rate, 4),
            confidence=round(confidence or 0.0, 4),
            consecutive_failures=consecutive,
            metadata_json=dict(metadata or {}),
            created_at=now,
        )
        self.db.add(entry)
        return entry
