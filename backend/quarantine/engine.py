"""
Orchestrates quarantine decisions for a project.
Loads stability records and runs, applies the active policy, writes the ledger
test by test, and serves the read models used by the dashboard.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from database.models import (
    FlakyTestPattern,
    Project,
    QuarantineImpact,
    TeamConfigurationRecord,
    TestResult,
)

from . import config as engine_config
from . import stability
from .config import EngineConfig
from .errors import ConflictError, NotFoundError, QuarantineError
from .evaluator import PolicyEvaluator
from .impact import ImpactTracker
from .ledger import AUTO, QuarantineLedger
from .policies import PolicyStore
from .recommender import PolicyRecommender
from .schemas import (
    DecisionAction,
    EvaluationContext,
    PolicyImpactSimulation,
    ProjectSnapshot,
    QuarantinePolicyConfig,
    QuarantineSavings,
    QuarantineStats,
    RunOutcome,
    RunReport,
    SimulatedTest,
    TeamConfiguration,
    TestStabilityRecord,
    TrackImpactRequest,
    parse_policy_config,
)
from .simulator import ImpactSimulator

logger = logging.getLogger(__name__)


class QuarantineEngine:
    """High-level entry point for quarantine checks and read models."""

    def __init__(
        self,
        db: Session,
        settings: Optional[EngineConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db = db
        self.settings = settings or EngineConfig()
        self.clock = clock or stability.utcnow
        self.evaluator = PolicyEvaluator()
        self.simulator = ImpactSimulator(self.evaluator, self.settings.simulator)
        self.recommender = PolicyRecommender(self.settings.recommender)
        self.ledger = QuarantineLedger(db)
        self.policies = PolicyStore(db)

    # -----------------------------------------------------------------
    # Lookups
    # -----------------------------------------------------------------

    def get_project(self, project_id: int) -> Project:
        project = self.db.get(Project, project_id)
        if project is None:
            raise NotFoundError("Project", project_id)
        return project

    def get_pattern(self, pattern_id: int, project_id: Optional[int] = None) -> FlakyTestPattern:
        pattern = self.db.get(FlakyTestPattern, pattern_id, populate_existing=True)
        if pattern is None or (project_id is not None and pattern.project_id != project_id):
            raise NotFoundError("Test", pattern_id)
        return pattern

    def patterns(self, project_id: int) -> List[FlakyTestPattern]:
        return (
            self.db.query(FlakyTestPattern)
            .filter(FlakyTestPattern.project_id == project_id)
            .order_by(FlakyTestPattern.id.asc())
            .all()
        )

    def quarantined_count(self, project_id: int) -> int:
        return (
            self.db.query(FlakyTestPattern)
            .filter(FlakyTestPattern.project_id == project_id, FlakyTestPattern.is_quarantined.is_(True))
            .count()
        )

    def active_policy(self, project_id: int) -> Tuple[Optional[int], QuarantinePolicyConfig]:
        policy_id, policy = self.policies.active_config(project_id)
        if policy_id is None and self.settings.default_policy is not None:
            policy = parse_policy_config(self.settings.default_policy)
        return policy_id, policy

    def team_configuration(self, project_id: int) -> TeamConfiguration:
        row = (
            self.db.query(TeamConfigurationRecord)
            .filter(TeamConfigurationRecord.project_id == project_id)
            .first()
        )
        if row is None:
            return TeamConfiguration()
        return TeamConfiguration.model_validate(row.settings or {})

    def save_team_configuration(self, project_id: int, pricing: TeamConfiguration) -> TeamConfiguration:
        self.get_project(project_id)
        row = (
            self.db.query(TeamConfigurationRecord)
            .filter(TeamConfigurationRecord.project_id == project_id)
            .first()
        )
        if row is None:
            row = TeamConfigurationRecord(project_id=project_id)
            self.db.add(row)
        row.settings = pricing.model_dump(mode="json")
        self.db.flush()
        logger.info("Saved team configuration for project %s", project_id)
        return pricing

    # -----------------------------------------------------------------
    # Records and runs
    # -----------------------------------------------------------------

    @staticmethod
    def to_record(pattern: FlakyTestPattern) -> TestStabilityRecord:
        return TestStabilityRecord(
            id=pattern.id,
            project_id=pattern.project_id,
            test_name=pattern.test_name,
            test_suite=pattern.test_suite or None,
            total_runs=pattern.total_runs or 0,
            failed_runs=pattern.failed_runs or 0,
            consecutive_failures=pattern.consecutive_failures or 0,
            last_seen=stability.ensure_utc(pattern.last_seen),
        )

    def recent_runs(self, pattern_id: int) -> List[RunOutcome]:
        """Counted runs of one test, oldest first."""
        rows = (
            self.db.query(TestResult)
            .filter(
                TestResult.pattern_id == pattern_id,
                TestResult.status.in_(sorted(engine_config.COUNTED_STATUSES)),
            )
            .order_by(TestResult.created_at.desc(), TestResult.id.desc())
            .limit(self.settings.recent_runs_limit)
            .all()
        )
        return [
            RunOutcome(
                passed=not stability.is_failure(row.status),
                timestamp=stability.ensure_utc(row.created_at),
                duration_ms=row.duration_ms or 0.0,
            )
            for row in reversed(rows)
        ]

    def snapshot(self, project_id: int) -> ProjectSnapshot:
        tests = []
        for pattern in self.patterns(project_id):
            tests.append(
                SimulatedTest(
                    record=self.to_record(pattern),
                    recent_runs=self.recent_runs(pattern.id),
                    quarantined_at=stability.ensure_utc(pattern.quarantined_at) if pattern.is_quarantined else None,
                    previously_auto_released=self.ledger.was_auto_released(pattern.id),
                )
            )
        return ProjectSnapshot(project_id=project_id, tests=tests)

    # -----------------------------------------------------------------
    # Stability check
    # -----------------------------------------------------------------

    def run_check(self, project_id: int) -> RunReport:
        """
        Evaluate every test of a project against the active policy.

        Each test is committed on its own; a failure for one test is rolled
        back, recorded in the report and does not stop the batch. Quarantined
        tests go first so releases free cap slots for new candidates.
        """
        self.get_project(project_id)
        policy_id, policy = self.active_policy(project_id)
        now = self.clock()
        snapshot = self.snapshot(project_id)
        total_tests = len(snapshot.tests)
        report = RunReport(project_id=project_id, policy_id=policy_id)
        logger.info(
            "Stability check started for project %s (%d tests, policy %s)",
            project_id,
            total_tests,
            policy_id if policy_id is not None else "default",
        )

        for test in self._check_order(snapshot, policy, now):
            name = test.record.qualified_name
            attempts = 0
            while True:
                try:
                    self._check_one(test.record.id, policy, policy_id, total_tests, now, report)
                    self.db.commit()
                    report.evaluated += 1
                    break
                except ConflictError:
                    self.db.rollback()
                    if attempts < self.settings.conflict_retries:
                        attempts += 1
                        logger.info("Retrying %s after a concurrent quarantine change", name)
                        continue
                    report.conflicts.append(name)
                    break
                except Exception as exc:
                    self.db.rollback()
                    logger.exception("Stability check failed for %s", name)
                    report.errors.append({"test": name, "error": str(exc)})
                    break

        logger.info(
            "Stability check finished for project %s: evaluated=%d quarantined=%d "
            "unquarantined=%d suppressed=%d conflicts=%d errors=%d",
            project_id,
            report.evaluated,
            len(report.quarantined),
            len(report.unquarantined),
            len(report.suppressed),
            len(report.conflicts),
            len(report.errors),
        )
        return report

    def _check_order(
        self, snapshot: ProjectSnapshot, policy: QuarantinePolicyConfig, now: datetime
    ) -> List[SimulatedTest]:
        quarantined = [test for test in snapshot.tests if test.quarantined_at is not None]
        total_tests = len(snapshot.tests)

        def _key(test: SimulatedTest):
            context = EvaluationContext(now=now, total_tests=total_tests, recent_runs=test.recent_runs)
            best, lifetime = self.evaluator.eligibility_rates(test.record, policy, context)
            return (-best, -lifetime, test.record.qualified_name)

        candidates = sorted((test for test in snapshot.tests if test.quarantined_at is None), key=_key)
        return sorted(quarantined, key=lambda test: test.record.qualified_name) + candidates

    def _check_one(
        self,
        pattern_id: int,
        policy: QuarantinePolicyConfig,
        policy_id: Optional[int],
        total_tests: int,
        now: datetime,
        report: RunReport,
    ) -> None:
        # Re-read state: another run may have changed it since the snapshot.
        pattern = self.get_pattern(pattern_id)
        record = self.to_record(pattern)
        quarantined_at = stability.ensure_utc(pattern.quarantined_at) if pattern.is_quarantined else None
        context = EvaluationContext(
            now=now,
            total_tests=total_tests,
            quarantined_tests=self.quarantined_count(pattern.project_id),
            quarantined_at=quarantined_at,
            recent_runs=self.recent_runs(pattern.id),
        )
        decision = self.evaluator.evaluate(record, policy, context)
        metadata = {"rule": decision.rule}

        if decision.action == DecisionAction.QUARANTINE:
            self.ledger.quarantine(
                pattern, decision.reason, now, AUTO, record=record, policy_id=policy_id, metadata=metadata
            )
            report.quarantined.append(record.qualified_name)
        elif decision.action == DecisionAction.UNQUARANTINE:
            self.ledger.unquarantine(
                pattern,
                decision.reason,
                now,
                AUTO,
                auto_unquarantined=decision.auto_unquarantined,
                record=record,
                policy_id=policy_id,
                metadata=metadata,
            )
            report.unquarantined.append(record.qualified_name)
        elif decision.suppressed:
            report.suppressed.append(record.qualified_name)

    # -----------------------------------------------------------------
    # Manual overrides
    # -----------------------------------------------------------------

    def manual_quarantine(self, pattern_id: int, reason: str, user_id: int):
        """Quarantine a test by hand, or restart the clock if it already is."""
        pattern = self.get_pattern(pattern_id)
        now = self.clock()
        if pattern.is_quarantined:
            return self.ledger.extend(pattern, reason, now, str(user_id))
        return self.ledger.quarantine(pattern, reason, now, str(user_id), metadata={"rule": "manual"})

    def manual_unquarantine(self, pattern_id: int, reason: str, user_id: int):
        """Release a quarantined test regardless of the active policy."""
        pattern = self.get_pattern(pattern_id)
        if not pattern.is_quarantined:
            raise QuarantineError(f"Test '{pattern.qualified_name}' is not quarantined")
        return self.ledger.unquarantine(
            pattern,
            reason,
            self.clock(),
            str(user_id),
            auto_unquarantined=False,
            metadata={"rule": "manual"},
        )

    # -----------------------------------------------------------------
    # Read models
    # -----------------------------------------------------------------

    def list_quarantined(self, project_id: int) -> List[Dict[str, Any]]:
        self.get_project(project_id)
        now = self.clock()
        rows = (
            self.db.query(FlakyTestPattern)
            .filter(FlakyTestPattern.project_id == project_id, FlakyTestPattern.is_quarantined.is_(True))
            .order_by(FlakyTestPattern.quarantined_at.asc(), FlakyTestPattern.id.asc())
            .all()
        )
        items = []
        for pattern in rows:
            latest = self.ledger.latest_entry(pattern.id)
            impact = self.ledger.open_impact(pattern.id)
            payload = pattern.to_dict()
            payload["confidence"] = round(stability.confidence_for(pattern.total_runs or 0), 4)
            days = stability.elapsed_days(pattern.quarantined_at, now) if pattern.quarantined_at else 0.0
            payload["quarantineDays"] = round(max(days, 0.0), 2)
            payload["latestHistory"] = latest.to_dict() if latest else None
            payload["currentImpact"] = impact.to_dict() if impact else None
            items.append(payload)
        return items

    def list_records(
        self,
        project_id: int,
        sort_by: str = "failureRate",
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Stability records for every test in the project, quarantined or not."""
        self.get_project(project_id)
        keys = {
            "failureRate": lambda item: item["failureRate"],
            "confidence": lambda item: item["confidence"],
            "totalRuns": lambda item: item["totalRuns"],
            "testName": lambda item: item["testName"],
        }
        if sort_by not in keys:
            raise QuarantineError(f"Cannot sort by '{sort_by}'; expected one of {sorted(keys)}")

        items = []
        for pattern in self.patterns(project_id):
            record = self.to_record(pattern)
            payload = record.to_json_dict()
            payload["failureRate"] = round(record.failure_rate, 4)
            payload["confidence"] = round(record.confidence, 4)
            payload["stabilityScore"] = round(1.0 - record.failure_rate, 4)
            payload["isQuarantined"] = bool(pattern.is_quarantined)
            items.append(payload)
        # Rows arrive in id order and the sort is stable, so ties stay deterministic.
        items.sort(key=keys[sort_by], reverse=descending)
        return items[:limit] if limit is not None else items

    def critical_tests(self, project_id: int) -> List[Dict[str, Any]]:
        """Tests with enough runs under the active policy and a stability score below the floor."""
        _, policy = self.active_policy(project_id)
        return [
            item
            for item in self.list_records(project_id)
            if item["totalRuns"] >= policy.min_runs_required
            and item["stabilityScore"] < self.settings.critical_stability_score
        ]

    def history(self, pattern_id: int) -> List[Dict[str, Any]]:
        self.get_pattern(pattern_id)
        return [entry.to_dict() for entry in self.ledger.history(pattern_id)]

    def stats(self, project_id: int) -> QuarantineStats:
        self.get_project(project_id)
        now = self.clock()
        quarantined = (
            self.db.query(FlakyTestPattern)
            .filter(FlakyTestPattern.project_id == project_id, FlakyTestPattern.is_quarantined.is_(True))
            .all()
        )
        impacts = self._impacts(project_id)
        closed = [impact for impact in impacts if not impact.is_open]

        auto_count = sum(1 for pattern in quarantined if pattern.quarantined_by == AUTO)
        periods = [
            impact.quarantine_period if not impact.is_open
            else max(stability.elapsed_days(impact.period_start, now), 0.0)
            for impact in impacts
        ]
        false_positive_periods = sum(1 for impact in closed if impact.false_positives)

        return QuarantineStats(
            total_quarantined=len(quarantined),
            auto_quarantined=auto_count,
            manual_quarantined=len(quarantined) - auto_count,
            auto_unquarantined=sum(1 for impact in closed if impact.auto_unquarantined),
            quarantine_savings=QuarantineSavings(
                ci_time_minutes=round(sum(impact.ci_time_wasted or 0.0 for impact in impacts), 2),
                developer_hours=round(sum(impact.developer_hours or 0.0 for impact in impacts), 2),
                builds_protected=sum(impact.builds_blocked or 0 for impact in impacts),
            ),
            avg_quarantine_days=round(sum(periods) / len(periods), 2) if periods else 0.0,
            false_positive_rate=round(false_positive_periods / len(closed), 4) if closed else 0.0,
        )

    # -----------------------------------------------------------------
    # Simulation and recommendation
    # -----------------------------------------------------------------

    def simulate(self, project_id: int, policy: Any) -> PolicyImpactSimulation:
        """Read-only forecast of a candidate policy against current data."""
        config = parse_policy_config(policy)
        self.get_project(project_id)
        return self.simulator.simulate(
            config,
            self.snapshot(project_id),
            self.clock(),
            self.team_configuration(project_id),
        )

    def recommend(self, project_id: int) -> QuarantinePolicyConfig:
        self.get_project(project_id)
        return self.recommender.recommend([self.to_record(pattern) for pattern in self.patterns(project_id)])

    # -----------------------------------------------------------------
    # Impact
    # -----------------------------------------------------------------

    def _impacts(self, project_id: int) -> List[QuarantineImpact]:
        return (
            self.db.query(QuarantineImpact)
            .filter(QuarantineImpact.project_id == project_id)
            .order_by(QuarantineImpact.id.asc())
            .all()
        )

    def recalculate_impact(self, project_id: int) -> Dict[str, Any]:
        """Recompute every impact period of a project from stored results."""
        self.get_project(project_id)
        tracker = ImpactTracker(self.team_configuration(project_id))
        impacts = self._impacts(project_id)
        for impact in impacts:
            start = stability.ensure_utc(impact.period_start)
            end = stability.ensure_utc(impact.period_end)
            failures = 0
            rows = (
                self.db.query(TestResult.status, TestResult.created_at)
                .filter(TestResult.pattern_id == impact.pattern_id)
                .all()
            )
            for status, created_at in rows:
                created_at = stability.ensure_utc(created_at)
                if created_at < start or (end is not None and created_at >= end):
                    continue
                if stability.is_failure(status):
                    failures += 1
            estimate = tracker.for_failures(failures)
            impact.builds_blocked = estimate.builds_protected
            impact.ci_time_wasted = estimate.ci_minutes
            impact.developer_hours = estimate.developer_hours
            if end is not None:
                impact.quarantine_period = max(stability.elapsed_days(start, end), 0.0)
                impact.false_positives = 0 if failures else 1
        self.db.flush()
        logger.info("Recalculated %d impact periods for project %s", len(impacts), project_id)
        summary = self.impact_summary(project_id)
        summary["impactsRecalculated"] = len(impacts)
        return summary

    def track_impact(self, request: TrackImpactRequest) -> QuarantineImpact:
        """Add explicit increments to the test's current (or last) impact period."""
        pattern = self.get_pattern(request.flaky_test_pattern_id, request.project_id)
        impact = self.ledger.open_impact(pattern.id) or (
            self.db.query(QuarantineImpact)
            .filter(QuarantineImpact.pattern_id == pattern.id)
            .order_by(QuarantineImpact.id.desc())
            .first()
        )
        if impact is None:
            raise NotFoundError("Quarantine impact for test", pattern.id)
        impact.builds_blocked = (impact.builds_blocked or 0) + request.builds_blocked
        impact.ci_time_wasted = (impact.ci_time_wasted or 0.0) + request.ci_time_wasted
        impact.developer_hours = (impact.developer_hours or 0.0) + request.developer_hours
        if request.false_positive:
            impact.false_positives = (impact.false_positives or 0) + 1
        self.db.flush()
        return impact

    def impact_summary(self, project_id: int) -> Dict[str, Any]:
        self.get_project(project_id)
        pricing = self.team_configuration(project_id)
        tracker = ImpactTracker(pricing)
        impacts = self._impacts(project_id)
        ci_minutes = round(sum(impact.ci_time_wasted or 0.0 for impact in impacts), 2)
        developer_hours = round(sum(impact.developer_hours or 0.0 for impact in impacts), 2)
        return {
            "projectId": project_id,
            "totals": {
                "buildsBlocked": sum(impact.builds_blocked or 0 for impact in impacts),
                "ciTimeWasted": ci_minutes,
                "developerHours": developer_hours,
                "falsePositives": sum(impact.false_positives or 0 for impact in impacts),
                "openPeriods": sum(1 for impact in impacts if impact.is_open),
            },
            "costSavings": tracker.cost_savings(ci_minutes, developer_hours),
            "teamConfiguration": pricing.to_json_dict(),
            "impacts": [impact.to_dict() for impact in impacts],
        }
