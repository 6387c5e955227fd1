from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from apis.projects_api import get_project_for_user
from auth import get_current_user
from database.models import User
from database.session import get_db
from quarantine.engine import QuarantineEngine

router = APIRouter(tags=["stability"])


@router.get("/api/stability/project/{project_id}/tests")
def project_tests(
    project_id: int,
    sort_by: Literal["failureRate", "confidence", "totalRuns", "testName"] = Query("failureRate", alias="sortBy"),
    order: Literal["asc", "desc"] = Query("desc"),
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    """Stability records of every test; ids here feed the manual quarantine endpoints."""
    get_project_for_user(project_id, db, current_user.organization_id)
    tests = QuarantineEngine(db).list_records(
        project_id, sort_by=sort_by, descending=order == "desc", limit=limit
    )
    return {"success": True, "data": {"tests": tests}}


@router.get("/api/stability/project/{project_id}/critical")
def critical_tests(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_project_for_user(project_id, db, current_user.organization_id)
    return {"success": True, "data": {"criticalTests": QuarantineEngine(db).critical_tests(project_id)}}
