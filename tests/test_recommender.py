"""
Recommended policy tests.

Covers:
    - defaults when there is no history
    - minRunsRequired follows thin histories down to the floor
    - failureRateThreshold tracks the 75th percentile of failing tests, clamped
    - highImpactSuites ranks suites by failure count
"""
from quarantine.recommender import PolicyRecommender
from quarantine.schemas import TestStabilityRecord, default_policy_config

recommender = PolicyRecommender()


def _record(total, failed, suite="suite", name=None):
    return TestStabilityRecord(
        project_id=1,
        test_name=name or f"test_{suite}_{total}_{failed}",
        test_suite=suite,
        total_runs=total,
        failed_runs=failed,
        consecutive_failures=0,
    )


def test_no_history_returns_defaults():
    assert recommender.recommend([]) == default_policy_config()


def test_thin_history_lowers_min_runs():
    records = [_record(2, 1, "api"), _record(3, 3, "ui"), _record(4, 0, "db")]

    policy = recommender.recommend(records)

    assert policy.min_runs_required == 3
    assert policy.failure_rate_threshold == 0.8
    assert policy.high_impact_suites == ["ui", "api"]


def test_min_runs_never_below_floor():
    records = [_record(1, 1), _record(1, 0), _record(2, 1)]

    assert recommender.recommend(records).min_runs_required == 3


def test_long_history_keeps_default_min_runs():
    records = [_record(50, failed) for failed in (5, 5, 5, 5)]

    policy = recommender.recommend(records)

    assert policy.min_runs_required == 5
    assert policy.failure_rate_threshold == 0.2


def test_threshold_uses_nearest_rank_percentile():
    records = [_record(20, failed, name=f"t{failed}") for failed in (6, 8, 10, 12)]

    # Rates 0.3, 0.4, 0.5, 0.6: the 75th percentile is the third value.
    assert recommender.recommend(records).failure_rate_threshold == 0.5


def test_top_three_suites():
    records = [
        _record(20, 9, "checkout"),
        _record(20, 4, "search"),
        _record(20, 7, "cart"),
        _record(20, 1, "profile"),
        _record(20, 0, "admin"),
    ]

    assert recommender.recommend(records).high_impact_suites == ["checkout", "cart", "search"]


def test_recommendation_is_a_valid_policy():
    records = [_record(30, 12, "api"), _record(30, 0, "api")]

    policy = recommender.recommend(records)

    assert policy.model_dump() == type(policy).model_validate(policy.to_json_dict()).model_dump()
