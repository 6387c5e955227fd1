"""
REST API tests.

Covers:
    - signup/login, owner vs member roles, cross-organization isolation
    - the {"success": true, "data": ...} and {"error": ..., "details": [...]} envelopes
    - result ingestion and the background stability-check job
    - policy CRUD with a single active policy per project
    - validate, simulate and recommended-policy endpoints
    - stability record and critical-test listings
    - manual quarantine/unquarantine, impact summary and team configuration
"""
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from main import app


@pytest.fixture
def client():
    # No context manager: startup schema validation expects Alembic-managed tables.
    return TestClient(app)


def _auth(client, organization="Acme", email="owner@acme.io", password="s3cret-pass"):
    body = {"organization": organization, "email": email, "password": password}
    signup = client.post("/signup", json=body)
    assert signup.status_code == 201, signup.text
    login = client.post("/login", json=body)
    assert login.status_code == 200, login.text
    return {"Authorization": f"Bearer {login.json()['access_token']}"}


def _project(client, headers, name="Checkout"):
    response = client.post("/projects", json={"project_name": name}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["id"]


def _data(response):
    body = response.json()
    assert body["success"] is True, body
    return body["data"]


def _results(test_name, statuses, suite="suite"):
    start = datetime.now(timezone.utc) - timedelta(hours=len(statuses) + 1)
    return [
        {
            "testName": test_name,
            "testSuite": suite,
            "status": status,
            "duration": 800,
            "timestamp": (start + timedelta(hours=index)).isoformat(),
        }
        for index, status in enumerate(statuses)
    ]


def _submit(client, headers, project_id, results, build="b1"):
    response = client.post(
        "/api/test-results",
        json={
            "projectId": project_id,
            "buildId": build,
            "commitHash": "abc123",
            "branch": "main",
            "ciProvider": "github",
            "results": results,
        },
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return _data(response)


def _seed_flaky_project(client, headers):
    project_id = _project(client, headers)
    results = _results("test_flaky", ["passed"] * 8 + ["failed"] * 12)
    for index in range(3):
        results += _results(f"test_stable_{index}", ["passed"] * 20)
    _submit(client, headers, project_id, results)
    return project_id


def _policy_config(**overrides):
    config = {
        "failureRateThreshold": 0.5,
        "confidenceThreshold": 0.7,
        "consecutiveFailures": 3,
        "minRunsRequired": 5,
        "stabilityPeriod": 7,
        "successRateRequired": 0.95,
        "minSuccessfulRuns": 10,
        "maxQuarantinePercentage": 25,
        "maxQuarantinePeriod": 30,
    }
    config.update(overrides)
    return config


# ---------------------------------------------------------------------------
# Auth and tenancy
# ---------------------------------------------------------------------------
def test_first_member_owns_organization(client):
    first = client.post(
        "/signup", json={"organization": "Acme", "email": "owner@acme.io", "password": "s3cret-pass"}
    )
    second = client.post(
        "/signup", json={"organization": "Acme", "email": "dev@acme.io", "password": "s3cret-pass"}
    )

    assert first.json()["user"]["role"] == "owner"
    assert second.json()["user"]["role"] == "member"


def test_bad_credentials_are_rejected(client):
    _auth(client)

    response = client.post(
        "/login", json={"organization": "Acme", "email": "owner@acme.io", "password": "wrong-pass"}
    )

    assert response.status_code == 401
    assert response.json() == {"error": "Incorrect credentials."}


def test_missing_token_is_unauthorized(client):
    response = client.get("/projects")

    assert response.status_code == 401
    assert "error" in response.json()


def test_member_cannot_mutate(client):
    owner = _auth(client)
    project_id = _project(client, owner)
    member = _auth(client, email="dev@acme.io")

    create = client.post("/projects", json={"project_name": "Other"}, headers=member)
    run = client.post(f"/api/quarantine/run-check/{project_id}", headers=member)
    read = client.get(f"/api/quarantine/stats/{project_id}", headers=member)

    assert create.status_code == 403
    assert create.json() == {"error": "Admin or owner role required."}
    assert run.status_code == 403
    assert read.status_code == 200


def test_other_organization_cannot_see_project(client):
    owner = _auth(client)
    project_id = _project(client, owner)
    outsider = _auth(client, organization="Globex", email="owner@globex.io")

    response = client.get(f"/api/quarantine/{project_id}", headers=outsider)

    assert response.status_code == 404
    assert "not found" in response.json()["error"]


def test_invalid_body_uses_error_envelope(client):
    headers = _auth(client)

    response = client.post("/api/test-results", json={"buildId": "b1"}, headers=headers)

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "Invalid request"
    fields = {detail["field"] for detail in body["details"]}
    assert {"projectId", "commitHash", "branch", "results"} <= fields


# ---------------------------------------------------------------------------
# Ingestion and stability check
# ---------------------------------------------------------------------------
def test_ingestion_summary(client):
    headers = _auth(client)
    project_id = _project(client, headers)

    summary = _submit(
        client,
        headers,
        project_id,
        _results("test_a", ["passed", "failed", "skipped"]) + _results("test_b", ["passed"]),
    )

    assert summary["accepted"] == 4
    assert summary["counted"] == 3
    assert summary["newTests"] == 2
    assert set(summary["testIds"]) == {"suite::test_a", "suite::test_b"}
    assert summary["quarantinedFailures"] == []


def test_run_check_job_quarantines_flaky_test(client):
    headers = _auth(client)
    project_id = _seed_flaky_project(client, headers)

    queued = client.post(f"/api/quarantine/run-check/{project_id}", headers=headers)
    assert queued.status_code == 202
    job = _data(client.get(f"/api/quarantine/jobs/{_data(queued)['id']}", headers=headers))

    assert job["status"] == "completed"
    assert job["report"]["quarantined"] == ["suite::test_flaky"]

    quarantined = _data(client.get(f"/api/quarantine/{project_id}", headers=headers))
    assert [item["testName"] for item in quarantined] == ["test_flaky"]
    assert quarantined[0]["confidence"] == pytest.approx(0.8)
    history = _data(client.get(f"/api/quarantine/history/{quarantined[0]['id']}", headers=headers))
    assert [entry["action"] for entry in history] == ["quarantined"]

    stats = _data(client.get(f"/api/quarantine/stats/{project_id}", headers=headers))
    assert stats["totalQuarantined"] == 1
    assert stats["autoQuarantined"] == 1


def test_unknown_job_is_not_found(client):
    headers = _auth(client)

    response = client.get("/api/quarantine/jobs/999", headers=headers)

    assert response.status_code == 404
    assert response.json() == {"error": "Job '999' not found"}


# ---------------------------------------------------------------------------
# Stability records
# ---------------------------------------------------------------------------
def test_stability_tests_lists_unquarantined_records(client):
    headers = _auth(client)
    project_id = _seed_flaky_project(client, headers)

    response = client.get(f"/api/stability/project/{project_id}/tests", headers=headers)

    assert response.status_code == 200
    tests = _data(response)["tests"]
    assert len(tests) == 4
    assert tests[0]["testName"] == "test_flaky"
    assert tests[0]["failureRate"] == pytest.approx(0.6)
    assert tests[0]["confidence"] == pytest.approx(0.8)
    assert tests[0]["isQuarantined"] is False
    assert all(isinstance(test["id"], int) for test in tests)


def test_stability_tests_sorting_and_limit(client):
    headers = _auth(client)
    project_id = _seed_flaky_project(client, headers)

    ascending = client.get(
        f"/api/stability/project/{project_id}/tests",
        params={"sortBy": "failureRate", "order": "asc", "limit": 3},
        headers=headers,
    )
    bad_sort = client.get(
        f"/api/stability/project/{project_id}/tests", params={"sortBy": "duration"}, headers=headers
    )

    assert [test["failureRate"] for test in _data(ascending)["tests"]] == [0.0, 0.0, 0.0]
    assert bad_sort.status_code == 422
    assert bad_sort.json()["error"] == "Invalid request"


def test_critical_tests_endpoint(client):
    headers = _auth(client)
    project_id = _seed_flaky_project(client, headers)
    outsider = _auth(client, organization="Globex", email="owner@globex.io")

    critical = client.get(f"/api/stability/project/{project_id}/critical", headers=headers)
    hidden = client.get(f"/api/stability/project/{project_id}/critical", headers=outsider)

    assert [test["testName"] for test in _data(critical)["criticalTests"]] == ["test_flaky"]
    assert hidden.status_code == 404


# ---------------------------------------------------------------------------
# Manual overrides
# ---------------------------------------------------------------------------
def test_manual_quarantine_and_release(client):
    headers = _auth(client)
    project_id = _project(client, headers)
    _submit(client, headers, project_id, _results("test_a", ["passed"] * 3))
    tests = _data(client.get(f"/api/stability/project/{project_id}/tests", headers=headers))["tests"]
    pattern_id = tests[0]["id"]

    quarantined = client.post(
        "/api/quarantine/quarantine",
        json={"flakyTestPatternId": pattern_id, "reason": "investigating"},
        headers=headers,
    )
    released = client.post(
        "/api/quarantine/unquarantine",
        json={"flakyTestPatternId": pattern_id, "reason": "fixed"},
        headers=headers,
    )
    again = client.post(
        "/api/quarantine/unquarantine",
        json={"flakyTestPatternId": pattern_id},
        headers=headers,
    )

    assert quarantined.status_code == 201
    assert _data(quarantined)["test"]["isQuarantined"] is True
    assert _data(quarantined)["entry"]["action"] == "quarantined"
    assert released.status_code == 200
    assert _data(released)["test"]["isQuarantined"] is False
    assert again.status_code == 400
    assert "not quarantined" in again.json()["error"]


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------
def test_policy_crud_keeps_single_active_policy(client):
    headers = _auth(client)
    project_id = _project(client, headers)

    first = client.post(
        "/api/quarantine/policies",
        json={"projectId": project_id, "name": "Strict", "isActive": True, "config": _policy_config()},
        headers=headers,
    )
    second = client.post(
        "/api/quarantine/policies",
        json={
            "projectId": project_id,
            "name": "Lenient",
            "isActive": True,
            "config": _policy_config(failureRateThreshold=0.7),
        },
        headers=headers,
    )
    assert first.status_code == 201 and second.status_code == 201
    first_id, second_id = _data(first)["id"], _data(second)["id"]

    policies = _data(client.get(f"/api/quarantine/policies/{project_id}", headers=headers))
    assert {policy["id"]: policy["isActive"] for policy in policies} == {first_id: False, second_id: True}

    reactivated = client.put(
        f"/api/quarantine/policies/{first_id}/status", json={"isActive": True}, headers=headers
    )
    assert _data(reactivated)["isActive"] is True
    policies = _data(client.get(f"/api/quarantine/policies/{project_id}", headers=headers))
    assert [policy["id"] for policy in policies if policy["isActive"]] == [first_id]

    updated = client.put(
        f"/api/quarantine/policies/{second_id}",
        json={"name": "Renamed", "config": _policy_config(minRunsRequired=8)},
        headers=headers,
    )
    assert _data(updated)["name"] == "Renamed"
    assert _data(updated)["minRunsRequired"] == 8

    deleted = client.delete(f"/api/quarantine/policies/{second_id}", headers=headers)
    assert _data(deleted) == {"id": second_id, "deleted": True}
    missing = client.put(f"/api/quarantine/policies/{second_id}/status", json={"isActive": True}, headers=headers)
    assert missing.status_code == 404


def test_invalid_policy_reports_every_field(client):
    headers = _auth(client)
    project_id = _project(client, headers)
    config = _policy_config(failureRateThreshold=1.5, consecutiveFailures=0, maxQuarantinePercentage=150)

    response = client.post(
        "/api/quarantine/policies",
        json={"projectId": project_id, "name": "Broken", "config": config},
        headers=headers,
    )

    assert response.status_code == 422
    fields = {detail["field"] for detail in response.json()["details"]}
    assert fields == {"failureRateThreshold", "consecutiveFailures", "maxQuarantinePercentage"}
    assert _data(client.get(f"/api/quarantine/policies/{project_id}", headers=headers)) == []


def test_validate_endpoint(client):
    headers = _auth(client)

    valid = client.post(
        "/api/quarantine/policies/validate",
        json={"config": _policy_config(maxQuarantinePercentage=None)},
        headers=headers,
    )
    invalid = client.post(
        "/api/quarantine/policies/validate",
        json={"config": {"failureRateThreshold": 2}},
        headers=headers,
    )
    valid, invalid = _data(valid), _data(invalid)

    assert valid["isValid"] is True
    assert any("maxQuarantinePercentage" in warning for warning in valid["warnings"])
    assert invalid["isValid"] is False
    assert "failureRateThreshold" in {error["field"] for error in invalid["errors"]}


def test_simulate_does_not_change_state(client):
    headers = _auth(client)
    project_id = _seed_flaky_project(client, headers)

    first = client.post(
        "/api/quarantine/policies/simulate",
        json={"projectId": project_id, "config": _policy_config()},
        headers=headers,
    )
    second = client.post(
        "/api/quarantine/policies/simulate",
        json={"projectId": project_id, "config": _policy_config()},
        headers=headers,
    )

    assert first.status_code == 200
    assert _data(first) == _data(second)
    assert _data(first)["wouldQuarantine"] == 1
    assert _data(first)["estimatedSavings"]["buildsProtected"] == 12
    assert _data(client.get(f"/api/quarantine/{project_id}", headers=headers)) == []


def test_simulate_with_invalid_config(client):
    headers = _auth(client)
    project_id = _project(client, headers)

    response = client.post(
        "/api/quarantine/policies/simulate",
        json={"projectId": project_id, "config": {"failureRateThreshold": -1}},
        headers=headers,
    )

    assert response.status_code == 422
    assert "details" in response.json()


def test_recommended_policy(client):
    headers = _auth(client)
    project_id = _seed_flaky_project(client, headers)

    response = client.get(f"/api/quarantine/policies/recommended/{project_id}", headers=headers)

    assert response.status_code == 200
    body = _data(response)
    assert body["failureRateThreshold"] == 0.6
    assert body["highImpactSuites"] == ["suite"]


# ---------------------------------------------------------------------------
# Impact
# ---------------------------------------------------------------------------
def test_team_configuration_round_trip(client):
    headers = _auth(client)
    project_id = _project(client, headers)
    member = _auth(client, email="dev@acme.io")

    defaults = _data(client.get(f"/api/impact/project/{project_id}/team-config", headers=headers))
    saved = client.put(
        f"/api/impact/project/{project_id}/team-config",
        json={**defaults, "averageBuildMinutes": 20},
        headers=headers,
    )
    forbidden = client.put(
        f"/api/impact/project/{project_id}/team-config", json=defaults, headers=member
    )

    assert defaults["averageBuildMinutes"] == 15
    assert _data(saved)["averageBuildMinutes"] == 20
    assert forbidden.status_code == 403
    summary = _data(client.get(f"/api/impact/project/{project_id}", headers=headers))
    assert summary["teamConfiguration"]["averageBuildMinutes"] == 20


def test_impact_accrues_and_recalculates(client):
    headers = _auth(client)
    project_id = _seed_flaky_project(client, headers)
    client.post(f"/api/quarantine/run-check/{project_id}", headers=headers)

    failure = [
        {
            "testName": "test_flaky",
            "testSuite": "suite",
            "status": "failed",
            "timestamp": (datetime.now(timezone.utc) + timedelta(minutes=5)).isoformat(),
        }
    ]
    summary = _submit(client, headers, project_id, failure, build="b2")
    assert summary["quarantinedFailures"] == ["suite::test_flaky"]

    impact = _data(client.get(f"/api/impact/project/{project_id}", headers=headers))
    assert impact["totals"]["buildsBlocked"] == 1
    assert impact["totals"]["ciTimeWasted"] == 15
    assert impact["totals"]["openPeriods"] == 1

    queued = client.post(f"/api/impact/project/{project_id}/calculate", headers=headers)
    assert queued.status_code == 202
    job = _data(client.get(f"/api/quarantine/jobs/{_data(queued)['id']}", headers=headers))
    assert job["status"] == "completed"
    assert job["report"]["totals"]["buildsBlocked"] == 1
    assert job["report"]["impactsRecalculated"] == 1
