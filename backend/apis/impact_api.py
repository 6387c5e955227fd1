from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.orm import Session

from apis.projects_api import get_project_for_user
from auth import get_current_user, require_admin
from database.models import User
from database.session import get_db
from quarantine.engine import QuarantineEngine
from quarantine.jobs import IMPACT_RECALCULATION, create_job, run_impact_recalculation_job
from quarantine.schemas import TeamConfiguration, TrackImpactRequest

router = APIRouter(tags=["impact"])


@router.get("/api/impact/project/{project_id}")
def project_impact(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_project_for_user(project_id, db, current_user.organization_id)
    return {"success": True, "data": QuarantineEngine(db).impact_summary(project_id)}


@router.get("/api/impact/project/{project_id}/team-config")
def get_team_configuration(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_project_for_user(project_id, db, current_user.organization_id)
    return {"success": True, "data": QuarantineEngine(db).team_configuration(project_id).to_json_dict()}


@router.put("/api/impact/project/{project_id}/team-config")
def put_team_configuration(
    project_id: int,
    payload: TeamConfiguration,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    get_project_for_user(project_id, db, current_user.organization_id)
    saved = QuarantineEngine(db).save_team_configuration(project_id, payload)
    return {"success": True, "data": saved.to_json_dict()}


@router.post("/api/impact/project/{project_id}/calculate", status_code=status.HTTP_202_ACCEPTED)
def recalculate_impact(
    project_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Queue an impact recalculation. Poll GET /api/quarantine/jobs/{job_id} for the result."""
    get_project_for_user(project_id, db, current_user.organization_id)
    job = create_job(db, project_id, IMPACT_RECALCULATION, requested_by=current_user.id)
    background_tasks.add_task(run_impact_recalculation_job, job.id)
    return {"success": True, "data": job.to_dict()}


@router.post("/api/quarantine/impact/track")
def track_impact(
    payload: TrackImpactRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    get_project_for_user(payload.project_id, db, current_user.organization_id)
    return {"success": True, "data": QuarantineEngine(db).track_impact(payload).to_dict()}
