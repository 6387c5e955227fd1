from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from auth import get_current_user, require_admin
from database.models import Project, User
from database.session import get_db

router = APIRouter()


def get_project_for_user(project_id: int, db: Session, org_id: int) -> Project:
    project = (
        db.query(Project)
        .filter(Project.id == project_id, Project.organization_id == org_id)
        .first()
    )
    if not project:
        raise HTTPException(status_code=404, detail=f"Project with id '{project_id}' not found")
    return project


class ProjectDetails(BaseModel):
    project_name: str
    description: Optional[str] = None
    repository_url: Optional[str] = None
    default_branch: Optional[str] = "main"

    @field_validator("project_name")
    @classmethod
    def _project_name_not_empty(cls, value: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValueError("project_name is required")
        return cleaned


@router.post("/projects", status_code=status.HTTP_201_CREATED)
def create_project(
    payload: ProjectDetails,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    key = Project.normalized_key(payload.project_name)
    existing = (
        db.query(Project)
        .filter(Project.organization_id == current_user.organization_id, Project.project_key == key)
        .first()
    )
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Project '{payload.project_name}' already exists",
        )

    project = Project(
        organization_id=current_user.organization_id,
        project_name=payload.project_name,
        description=payload.description,
        repository_url=payload.repository_url,
        default_branch=payload.default_branch,
    )
    try:
        db.add(project)
        db.flush()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Project '{payload.project_name}' already exists",
        )
    db.refresh(project)
    return project.to_dict()


@router.get("/projects")
def list_projects(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    projects = (
        db.query(Project)
        .filter(Project.organization_id == current_user.organization_id)
        .order_by(Project.id.asc())
        .all()
    )
    return [project.to_dict() for project in projects]


@router.get("/projects/{project_id}")
def get_project(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return get_project_for_user(project_id, db, current_user.organization_id).to_dict()
