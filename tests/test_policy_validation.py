"""
Policy configuration validation.

Covers:
    - every missing or out-of-range field reported at once
    - unknown fields rejected
    - camelCase and snake_case input
    - validation results with warnings for risky settings
"""
import pytest

from quarantine import config
from quarantine.errors import PolicyValidationError
from quarantine.policies import validate_policy
from quarantine.schemas import default_policy_config, parse_policy_config

CORE_FIELDS = {
    "failureRateThreshold",
    "confidenceThreshold",
    "consecutiveFailures",
    "minRunsRequired",
    "stabilityPeriod",
    "successRateRequired",
    "minSuccessfulRuns",
}


def test_all_missing_fields_are_reported():
    with pytest.raises(PolicyValidationError) as exc_info:
        parse_policy_config({})

    fields = {err["field"] for err in exc_info.value.errors}
    assert CORE_FIELDS <= fields


def test_all_out_of_range_fields_are_reported():
    payload = {
        "failureRateThreshold": 1.5,
        "confidenceThreshold": -0.1,
        "consecutiveFailures": 0,
        "minRunsRequired": 5,
        "stabilityPeriod": 7,
        "successRateRequired": 0.95,
        "minSuccessfulRuns": 10,
        "maxQuarantinePercentage": 150,
    }

    with pytest.raises(PolicyValidationError) as exc_info:
        parse_policy_config(payload)

    fields = {err["field"] for err in exc_info.value.errors}
    assert fields == {
        "failureRateThreshold",
        "confidenceThreshold",
        "consecutiveFailures",
        "maxQuarantinePercentage",
    }
    assert exc_info.value.status_code == 422
    assert exc_info.value.to_dict()["details"] == exc_info.value.errors


def test_unknown_fields_are_rejected():
    payload = {**default_policy_config().to_json_dict(), "autoDeleteTests": True}

    with pytest.raises(PolicyValidationError) as exc_info:
        parse_policy_config(payload)

    assert [err["field"] for err in exc_info.value.errors] == ["autoDeleteTests"]


def test_non_object_config_is_rejected():
    with pytest.raises(PolicyValidationError) as exc_info:
        parse_policy_config(["not", "a", "policy"])

    assert exc_info.value.errors[0]["field"] == "config"


def test_snake_and_camel_case_are_equivalent():
    camel = parse_policy_config(default_policy_config().to_json_dict())
    snake = parse_policy_config(dict(config.DEFAULT_POLICY_CONFIG))

    assert camel == snake


def test_defaults():
    policy = default_policy_config()

    assert policy.failure_rate_threshold == 0.5
    assert policy.confidence_threshold == 0.7
    assert policy.consecutive_failures == 3
    assert policy.min_runs_required == 5
    assert policy.stability_period == 7
    assert policy.success_rate_required == 0.95
    assert policy.min_successful_runs == 10
    assert policy.enable_rapid_degradation
    assert policy.enable_critical_path_protection
    assert not policy.enable_time_based_rules
    assert policy.max_quarantine_period == 30
    assert policy.max_quarantine_percentage == 25


def test_name_lists_are_cleaned():
    policy = parse_policy_config(
        {**config.DEFAULT_POLICY_CONFIG, "priority_tests": [" test_a ", "", "test_a", "test_b"]}
    )

    assert policy.priority_tests == ["test_a", "test_b"]


def test_validate_policy_reports_errors_without_raising():
    result = validate_policy({"failureRateThreshold": 3})

    assert not result.is_valid
    assert "failureRateThreshold" in {err["field"] for err in result.errors}


def test_validate_policy_warns_about_risky_settings():
    payload = {
        **config.DEFAULT_POLICY_CONFIG,
        "max_quarantine_percentage": None,
        "consecutive_failures": 8,
    }

    result = validate_policy(payload)

    assert result.is_valid
    assert any("maxQuarantinePercentage" in warning for warning in result.warnings)
    assert any("consecutiveFailures" in warning for warning in result.warnings)


def test_default_policy_has_no_warnings():
    assert validate_policy(default_policy_config().to_json_dict()).warnings == []
