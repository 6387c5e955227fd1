"""
Shared fixtures. The database URL must be set before any backend module is
imported because the engine is created at import time.
"""
import os
import tempfile
from datetime import datetime, timedelta, timezone

_DB_DIR = tempfile.mkdtemp(prefix="flakeguard-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest

from database.models import Organization, Project
from database.session import Base, SessionLocal, engine
from quarantine.engine import QuarantineEngine
from quarantine.ingestion import ResultIngestor
from quarantine.schemas import SubmitTestResultsRequest

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def project(db):
    org = Organization.get_or_create(db, "Acme")
    project = Project(organization_id=org.id, project_name="Checkout")
    db.add(project)
    db.commit()
    return project


@pytest.fixture
def engine_at(db):
    """QuarantineEngine factory with a frozen clock."""

    def _make(now=NOW):
        return QuarantineEngine(db, clock=lambda: now)

    return _make


@pytest.fixture
def ingest(db):
    """Record results for one test, oldest first, one hour apart ending at `end`."""

    def _ingest(project_id, test_name, statuses, suite="suite", end=NOW - timedelta(hours=1), build="b1"):
        start = end - timedelta(hours=len(statuses) - 1)
        results = [
            {
                "testName": test_name,
                "testSuite": suite,
                "status": status,
                "duration": 1200,
                "timestamp": (start + timedelta(hours=index)).isoformat(),
            }
            for index, status in enumerate(statuses)
        ]
        request = SubmitTestResultsRequest.model_validate(
            {
                "projectId": project_id,
                "buildId": build,
                "commitHash": "abc123",
                "branch": "main",
                "ciProvider": "github",
                "results": results,
            }
        )
        summary = ResultIngestor(db, clock=lambda: NOW).ingest(request)
        db.commit()
        return summary

    return _ingest
