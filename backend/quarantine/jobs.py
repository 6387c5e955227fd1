"""
Fire-and-forget jobs for stability checks and impact recalculation.

The API creates a job row, schedules the runner as a background task and
returns immediately; clients poll the job for its status and report.
"""

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from database.models import QuarantineJob
from database.session import session_scope

from . import stability
from .engine import QuarantineEngine
from .errors import NotFoundError

logger = logging.getLogger(__name__)

STABILITY_CHECK = "stability_check"
IMPACT_RECALCULATION = "impact_recalculation"


def create_job(db: Session, project_id: int, kind: str, requested_by: Optional[int] = None) -> QuarantineJob:
    job = QuarantineJob(project_id=project_id, kind=kind, status="pending", requested_by=requested_by)
    db.add(job)
    # Committed before the response so the background runner can see it.
    db.commit()
    db.refresh(job)
    logger.info("Queued %s job %s for project %s", kind, job.id, project_id)
    return job


def get_job(db: Session, job_id: int) -> QuarantineJob:
    job = db.get(QuarantineJob, job_id)
    if job is None:
        raise NotFoundError("Job", job_id)
    return job


def _run(job_id: int, work: Callable[[QuarantineEngine, int], Dict[str, Any]]) -> None:
    with session_scope() as db:
        job = get_job(db, job_id)
        job.status = "running"
        job.started_at = stability.utcnow()
        project_id = job.project_id
        kind = job.kind

    try:
        with session_scope() as db:
            report = work(QuarantineEngine(db), project_id)
    except Exception as exc:
        logger.exception("%s job %s failed", kind, job_id)
        with session_scope() as db:
            job = get_job(db, job_id)
            job.status = "failed"
            job.error = str(exc)
            job.finished_at = stability.utcnow()
        return

    with session_scope() as db:
        job = get_job(db, job_id)
        job.status = "completed"
        job.report = report
        job.finished_at = stability.utcnow()
    logger.info("%s job %s completed", kind, job_id)


def run_stability_check_job(job_id: int) -> None:
    _run(job_id, lambda engine, project_id: engine.run_check(project_id).to_json_dict())


def run_impact_recalculation_job(job_id: int) -> None:
    _run(job_id, lambda engine, project_id: engine.recalculate_impact(project_id))
