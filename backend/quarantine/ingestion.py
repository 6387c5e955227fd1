"""
Ingests normalized CI test results.

Each result is stored verbatim; counted results update the test's stability
record, and failures of a quarantined test accrue on its open impact period.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from database.models import FlakyTestPattern, TestResult

from . import stability
from .engine import QuarantineEngine
from .impact import ImpactTracker
from .schemas import SubmitTestResultsRequest, TestResultIn

logger = logging.getLogger(__name__)


class ResultIngestor:
    def __init__(self, db: Session, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db = db
        self.engine = QuarantineEngine(db, clock=clock)
        self.clock = self.engine.clock

    def ingest(self, request: SubmitTestResultsRequest) -> Dict[str, object]:
        project = self.engine.get_project(request.project_id)
        tracker = ImpactTracker(self.engine.team_configuration(project.id))
        now = self.clock()

        cache: Dict[Tuple[str, str], FlakyTestPattern] = {}
        created = 0
        skipped = 0
        quarantined_failures = set()

        for result in request.results:
            key = (result.test_name.strip(), (result.test_suite or "").strip())
            pattern = cache.get(key)
            if pattern is None:
                pattern, is_new = self._pattern_for(project.id, *key)
                cache[key] = pattern
                created += int(is_new)

            timestamp = stability.ensure_utc(result.timestamp) or now
            self.db.add(self._result_row(request, pattern, result, timestamp))

            if not stability.is_counted(result.status):
                skipped += 1
                continue
            self._update_record(pattern, result.status, timestamp)

            if stability.is_failure(result.status) and pattern.is_quarantined:
                self._accrue(pattern, tracker)
                quarantined_failures.add(pattern.qualified_name)

        self.db.flush()
        logger.info(
            "Ingested %d results for project %s build %s (%d new tests, %d skipped)",
            len(request.results),
            project.id,
            request.build_id,
            created,
            skipped,
        )
        return {
            "projectId": project.id,
            "buildId": request.build_id,
            "accepted": len(request.results),
            "counted": len(request.results) - skipped,
            "newTests": created,
            "testIds": {pattern.qualified_name: pattern.id for pattern in cache.values()},
            # Failures the CI gate may ignore for this build.
            "quarantinedFailures": sorted(quarantined_failures),
        }

    def _pattern_for(self, project_id: int, test_name: str, test_suite: str) -> Tuple[FlakyTestPattern, bool]:
        pattern = (
            self.db.query(FlakyTestPattern)
            .filter(
                FlakyTestPattern.project_id == project_id,
                FlakyTestPattern.test_name == test_name,
                FlakyTestPattern.test_suite == test_suite,
            )
            .first()
        )
        if pattern is not None:
            return pattern, False
        pattern = FlakyTestPattern(
            project_id=project_id,
            test_name=test_name,
            test_suite=test_suite,
            total_runs=0,
            failed_runs=0,
            consecutive_failures=0,
            is_quarantined=False,
        )
        self.db.add(pattern)
        self.db.flush()
        return pattern, True

    @staticmethod
    def _result_row(
        request: SubmitTestResultsRequest,
        pattern: FlakyTestPattern,
        result: TestResultIn,
        timestamp: datetime,
    ) -> TestResult:
        return TestResult(
            project_id=pattern.project_id,
            pattern_id=pattern.id,
            build_id=request.build_id,
            commit_hash=request.commit_hash,
            branch=request.branch,
            ci_provider=request.ci_provider,
            status=result.status,
            duration_ms=result.duration,
            retry_count=result.retry_count,
            error_message=result.error_message,
            created_at=timestamp,
        )

    @staticmethod
    def _update_record(pattern: FlakyTestPattern, status: str, timestamp: datetime) -> None:
        pattern.total_runs = (pattern.total_runs or 0) + 1
        if stability.is_failure(status):
            pattern.failed_runs = (pattern.failed_runs or 0) + 1
            pattern.consecutive_failures = (pattern.consecutive_failures or 0) + 1
        else:
            pattern.consecutive_failures = 0
        last_seen = stability.ensure_utc(pattern.last_seen)
        if last_seen is None or timestamp > last_seen:
            pattern.last_seen = timestamp

    def _accrue(self, pattern: FlakyTestPattern, tracker: ImpactTracker) -> None:
        impact = self.engine.ledger.open_impact(pattern.id)
        if impact is None:
            logger.warning("Quarantined test %s has no open impact period", pattern.qualified_name)
            return
        unit = tracker.per_failure()
        impact.builds_blocked = (impact.builds_blocked or 0) + unit.builds_protected
        impact.ci_time_wasted = (impact.ci_time_wasted or 0.0) + unit.ci_minutes
        impact.developer_hours = (impact.developer_hours or 0.0) + unit.developer_hours
