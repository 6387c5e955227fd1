from fastapi import APIRouter, BackgroundTasks, Depends, status
from pydantic import Field
from sqlalchemy.orm import Session

from apis.projects_api import get_project_for_user
from auth import get_current_user, require_admin
from database.models import FlakyTestPattern, User
from database.session import get_db
from quarantine.engine import QuarantineEngine
from quarantine.errors import NotFoundError
from quarantine.jobs import STABILITY_CHECK, create_job, get_job, run_stability_check_job
from quarantine.schemas import CamelModel

router = APIRouter(tags=["quarantine"])


class ManualQuarantineRequest(CamelModel):
    flaky_test_pattern_id: int
    reason: str = Field("manually quarantined", min_length=1)


class UnquarantineRequest(CamelModel):
    flaky_test_pattern_id: int
    reason: str = Field("manually released", min_length=1)


def _pattern_for_user(pattern_id: int, db: Session, user: User) -> FlakyTestPattern:
    pattern = db.get(FlakyTestPattern, pattern_id)
    if pattern is None:
        raise NotFoundError("Test", pattern_id)
    get_project_for_user(pattern.project_id, db, user.organization_id)
    return pattern


@router.get("/api/quarantine/stats/{project_id}")
def quarantine_stats(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_project_for_user(project_id, db, current_user.organization_id)
    return {"success": True, "data": QuarantineEngine(db).stats(project_id).to_json_dict()}


@router.get("/api/quarantine/jobs/{job_id}")
def job_status(
    job_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    job = get_job(db, job_id)
    get_project_for_user(job.project_id, db, current_user.organization_id)
    return {"success": True, "data": job.to_dict()}


@router.get("/api/quarantine/history/{pattern_id}")
def quarantine_history(
    pattern_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    _pattern_for_user(pattern_id, db, current_user)
    return {"success": True, "data": QuarantineEngine(db).history(pattern_id)}


@router.post("/api/quarantine/run-check/{project_id}", status_code=status.HTTP_202_ACCEPTED)
def run_stability_check(
    project_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Queue a stability check. Poll GET /api/quarantine/jobs/{job_id} for the report."""
    get_project_for_user(project_id, db, current_user.organization_id)
    job = create_job(db, project_id, STABILITY_CHECK, requested_by=current_user.id)
    background_tasks.add_task(run_stability_check_job, job.id)
    return {"success": True, "data": job.to_dict()}


@router.post("/api/quarantine/quarantine", status_code=status.HTTP_201_CREATED)
def quarantine_test(
    payload: ManualQuarantineRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    _pattern_for_user(payload.flaky_test_pattern_id, db, current_user)
    engine = QuarantineEngine(db)
    entry = engine.manual_quarantine(payload.flaky_test_pattern_id, payload.reason, current_user.id)
    pattern = engine.get_pattern(payload.flaky_test_pattern_id)
    return {"success": True, "data": {"entry": entry.to_dict(), "test": pattern.to_dict()}}


@router.post("/api/quarantine/unquarantine")
def unquarantine_test(
    payload: UnquarantineRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    _pattern_for_user(payload.flaky_test_pattern_id, db, current_user)
    engine = QuarantineEngine(db)
    entry = engine.manual_unquarantine(payload.flaky_test_pattern_id, payload.reason, current_user.id)
    pattern = engine.get_pattern(payload.flaky_test_pattern_id)
    return {"success": True, "data": {"entry": entry.to_dict(), "test": pattern.to_dict()}}


@router.get("/api/quarantine/{project_id}")
def quarantined_tests(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_project_for_user(project_id, db, current_user.organization_id)
    return {"success": True, "data": QuarantineEngine(db).list_quarantined(project_id)}
