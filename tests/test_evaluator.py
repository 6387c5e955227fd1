"""
Policy evaluator tests.

Covers:
    - zero-run records never quarantine
    - the threshold, confidence and consecutive-failure triggers
    - rapid degradation, critical path protection and time-based windows
    - the quarantine percentage cap
    - automatic release after a stable period, and the max-period release
    - idempotence of repeated evaluation
"""
from datetime import timedelta

import pytest

from conftest import NOW
from quarantine import config
from quarantine.errors import PolicyValidationError
from quarantine.evaluator import CAP_REACHED_REASON, MAX_PERIOD_REASON, PolicyEvaluator
from quarantine.schemas import (
    DecisionAction,
    EvaluationContext,
    RunOutcome,
    TestStabilityRecord,
    parse_policy_config,
)


def _policy(**overrides):
    return parse_policy_config({**config.DEFAULT_POLICY_CONFIG, **overrides})


def _record(total=20, failed=12, consecutive=4, confidence=None, name="test_checkout", suite="cart"):
    return TestStabilityRecord(
        id=1,
        project_id=1,
        test_name=name,
        test_suite=suite,
        total_runs=total,
        failed_runs=failed,
        consecutive_failures=consecutive,
        confidence=confidence,
    )


def _runs(outcomes, end=NOW - timedelta(minutes=1), spacing=timedelta(hours=1)):
    """Build runs oldest first from a string like 'PPFF'."""
    start = end - spacing * (len(outcomes) - 1)
    return [
        RunOutcome(passed=outcome == "P", timestamp=start + spacing * index)
        for index, outcome in enumerate(outcomes)
    ]


def _context(**kwargs):
    kwargs.setdefault("now", NOW)
    return EvaluationContext(**kwargs)


evaluator = PolicyEvaluator()


# ---------------------------------------------------------------------------
# Quarantine triggers
# ---------------------------------------------------------------------------
def test_flaky_test_over_threshold_is_quarantined():
    record = _record(total=20, failed=12, consecutive=4, confidence=0.8)
    policy = _policy(
        failure_rate_threshold=0.5,
        confidence_threshold=0.7,
        consecutive_failures=3,
        min_runs_required=5,
    )

    decision = evaluator.evaluate(record, policy, _context())

    assert decision.action == DecisionAction.QUARANTINE
    assert decision.rule == "threshold"
    assert not decision.suppressed


def test_derived_confidence_matches_sample_size():
    assert _record(total=20, failed=12).confidence == pytest.approx(0.8)
    assert _record(total=0, failed=0, consecutive=0).confidence == 0.0


@pytest.mark.parametrize("threshold", [0.0, 0.5, 1.0])
def test_zero_runs_never_quarantine(threshold):
    record = _record(total=0, failed=0, consecutive=0)
    policy = _policy(failure_rate_threshold=threshold, min_runs_required=1, confidence_threshold=0.0)

    decision = evaluator.evaluate(record, policy, _context())

    assert decision.action == DecisionAction.NO_ACTION
    assert decision.rule == "insufficient_data"


def test_too_few_runs_is_insufficient_data():
    record = _record(total=4, failed=4, consecutive=4, confidence=0.9)

    decision = evaluator.evaluate(record, _policy(), _context())

    assert decision.action == DecisionAction.NO_ACTION
    assert decision.rule == "insufficient_data"


def test_below_threshold_is_no_action():
    decision = evaluator.evaluate(_record(total=20, failed=6), _policy(), _context())

    assert decision.action == DecisionAction.NO_ACTION
    assert decision.rule == "threshold"


def test_low_confidence_is_no_action():
    record = _record(total=20, failed=12, confidence=0.5)

    decision = evaluator.evaluate(record, _policy(), _context())

    assert decision.action == DecisionAction.NO_ACTION
    assert decision.rule == "confidence"


def test_consecutive_failures_required():
    record = _record(total=20, failed=12, consecutive=2)

    decision = evaluator.evaluate(record, _policy(), _context())

    assert decision.action == DecisionAction.NO_ACTION
    assert decision.rule == "consecutive_failures"


def test_priority_tests_need_more_consecutive_failures():
    record = _record(total=20, failed=12, consecutive=4, name="test_pay")
    policy = _policy(priority_tests=["test_pay"], critical_path_multiplier=2.0)

    protected = evaluator.evaluate(record, policy, _context())
    unprotected = evaluator.evaluate(
        record, _policy(priority_tests=["test_pay"], enable_critical_path_protection=False), _context()
    )

    assert protected.action == DecisionAction.NO_ACTION
    assert "6 required" in protected.reason
    assert unprotected.action == DecisionAction.QUARANTINE


def test_priority_tests_match_qualified_name():
    record = _record(total=20, failed=12, consecutive=4, name="test_pay", suite="billing")
    policy = _policy(priority_tests=["billing::test_pay"])

    assert evaluator.evaluate(record, policy, _context()).action == DecisionAction.NO_ACTION


def test_rapid_degradation_quarantines_below_lifetime_threshold():
    record = _record(total=30, failed=8, consecutive=5)
    runs = _runs("P" * 22 + "FFF" + "FFFFF")

    decision = evaluator.evaluate(record, _policy(), _context(recent_runs=runs))
    disabled = evaluator.evaluate(
        record, _policy(enable_rapid_degradation=False), _context(recent_runs=runs)
    )

    assert decision.action == DecisionAction.QUARANTINE
    assert decision.rule == "rapid_degradation"
    assert disabled.action == DecisionAction.NO_ACTION
    assert disabled.rule == "threshold"


def test_time_based_rules_use_recent_window():
    record = _record(total=40, failed=10, consecutive=3)
    old = _runs("P" * 30, end=NOW - timedelta(days=30))
    recent = _runs("FFPFFFFPFF", end=NOW - timedelta(hours=1))
    policy = _policy(enable_rapid_degradation=False, enable_time_based_rules=True, time_window_days=14)

    windowed = evaluator.evaluate(record, policy, _context(recent_runs=old + recent))
    lifetime = evaluator.evaluate(
        record, _policy(enable_rapid_degradation=False), _context(recent_runs=old + recent)
    )

    assert windowed.action == DecisionAction.QUARANTINE
    assert lifetime.action == DecisionAction.NO_ACTION


# ---------------------------------------------------------------------------
# Cap
# ---------------------------------------------------------------------------
def test_cap_blocks_second_quarantine_in_four_test_project():
    record = _record(total=20, failed=12, consecutive=4)
    policy = _policy(max_quarantine_percentage=25)

    decision = evaluator.evaluate(record, policy, _context(total_tests=4, quarantined_tests=1))

    assert decision.action == DecisionAction.NO_ACTION
    assert decision.reason == CAP_REACHED_REASON
    assert decision.suppressed


def test_cap_allows_first_quarantine_in_four_test_project():
    record = _record(total=20, failed=12, consecutive=4)
    policy = _policy(max_quarantine_percentage=25)

    decision = evaluator.evaluate(record, policy, _context(total_tests=4, quarantined_tests=0))

    assert decision.action == DecisionAction.QUARANTINE


def test_no_cap_when_percentage_unset():
    record = _record(total=20, failed=12, consecutive=4)
    policy = _policy(max_quarantine_percentage=None)

    decision = evaluator.evaluate(record, policy, _context(total_tests=4, quarantined_tests=3))

    assert decision.action == DecisionAction.QUARANTINE


# ---------------------------------------------------------------------------
# Release
# ---------------------------------------------------------------------------
def test_stable_quarantined_test_is_released():
    quarantined_at = NOW - timedelta(days=8)
    runs = _runs("P" * 10, end=NOW - timedelta(hours=1), spacing=timedelta(hours=12))
    policy = _policy(success_rate_required=0.95, min_successful_runs=10, stability_period=7)

    decision = evaluator.evaluate(
        _record(total=30, failed=12, consecutive=0),
        policy,
        _context(quarantined_at=quarantined_at, recent_runs=runs),
    )

    assert decision.action == DecisionAction.UNQUARANTINE
    assert decision.auto_unquarantined
    assert decision.rule == "stability"


def test_release_waits_for_stability_period():
    quarantined_at = NOW - timedelta(days=3)
    runs = _runs("P" * 10, end=NOW - timedelta(hours=1), spacing=timedelta(hours=6))

    decision = evaluator.evaluate(
        _record(total=30, failed=12, consecutive=0),
        _policy(),
        _context(quarantined_at=quarantined_at, recent_runs=runs),
    )

    assert decision.action == DecisionAction.NO_ACTION
    assert decision.rule == "stability"


def test_release_requires_success_rate():
    quarantined_at = NOW - timedelta(days=8)
    runs = _runs("PPFPPPPFPP", end=NOW - timedelta(hours=1), spacing=timedelta(hours=12))

    decision = evaluator.evaluate(
        _record(total=30, failed=14, consecutive=0),
        _policy(),
        _context(quarantined_at=quarantined_at, recent_runs=runs),
    )

    assert decision.action == DecisionAction.NO_ACTION


def test_max_period_forces_release():
    quarantined_at = NOW - timedelta(days=31)
    runs = _runs("PPFPPPFPPP", end=NOW - timedelta(hours=1), spacing=timedelta(days=1))
    policy = _policy(max_quarantine_period=30, success_rate_required=0.95)

    decision = evaluator.evaluate(
        _record(total=40, failed=20, consecutive=0),
        policy,
        _context(quarantined_at=quarantined_at, recent_runs=runs),
    )

    assert decision.action == DecisionAction.UNQUARANTINE
    assert decision.reason == MAX_PERIOD_REASON
    assert decision.auto_unquarantined


def test_zero_run_quarantined_test_is_not_released_past_max_period():
    # Only skipped results since a manual quarantine: no evidence either way.
    decision = evaluator.evaluate(
        _record(total=0, failed=0, consecutive=0),
        _policy(max_quarantine_period=30),
        _context(quarantined_at=NOW - timedelta(days=45)),
    )

    assert decision.action == DecisionAction.NO_ACTION
    assert decision.rule == "insufficient_data"
    assert not decision.auto_unquarantined


def test_runs_before_quarantine_do_not_count_towards_release():
    quarantined_at = NOW - timedelta(days=8)
    runs = _runs("P" * 10, end=NOW - timedelta(days=9))

    decision = evaluator.evaluate(
        _record(), _policy(), _context(quarantined_at=quarantined_at, recent_runs=runs)
    )

    assert decision.action == DecisionAction.NO_ACTION
    assert "0 runs since quarantine" in decision.reason


# ---------------------------------------------------------------------------
# Idempotence and validation
# ---------------------------------------------------------------------------
def test_repeated_evaluation_is_identical():
    record = _record()
    context = _context(total_tests=10, recent_runs=_runs("PFFPFFFF"))

    assert evaluator.evaluate(record, _policy(), context) == evaluator.evaluate(record, _policy(), context)


def test_just_quarantined_test_is_no_op():
    record = _record()
    runs = _runs("PFFPFFFF")

    decision = evaluator.evaluate(record, _policy(), _context(quarantined_at=NOW, recent_runs=runs))

    assert decision.action == DecisionAction.NO_ACTION
    assert decision.reason.startswith("already quarantined")


def test_invalid_policy_raises():
    with pytest.raises(PolicyValidationError):
        evaluator.evaluate(_record(), {"failureRateThreshold": 2}, _context())
