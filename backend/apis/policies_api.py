from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from apis.projects_api import get_project_for_user
from auth import get_current_user, require_admin
from database.models import QuarantinePolicy, User
from database.session import get_db
from quarantine.engine import QuarantineEngine
from quarantine.policies import PolicyStore, validate_policy
from quarantine.schemas import CamelModel

router = APIRouter(tags=["quarantine-policies"])


class CreatePolicyRequest(CamelModel):
    project_id: int
    name: str
    description: Optional[str] = None
    is_active: bool = False
    # Validated by the rules engine so every bad field is reported together.
    config: Dict[str, Any]


class UpdatePolicyRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    config: Optional[Dict[str, Any]] = None


class PolicyStatusRequest(CamelModel):
    is_active: bool


class SimulatePolicyRequest(CamelModel):
    project_id: int
    config: Dict[str, Any]


class ValidatePolicyRequest(CamelModel):
    config: Dict[str, Any]


def _policy_for_user(policy_id: int, db: Session, user: User) -> QuarantinePolicy:
    policy = PolicyStore(db).get(policy_id)
    get_project_for_user(policy.project_id, db, user.organization_id)
    return policy


@router.get("/api/quarantine/policies/recommended/{project_id}")
def recommended_policy(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_project_for_user(project_id, db, current_user.organization_id)
    return {"success": True, "data": QuarantineEngine(db).recommend(project_id).to_json_dict()}


@router.post("/api/quarantine/policies/simulate")
def simulate_policy(
    payload: SimulatePolicyRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_project_for_user(payload.project_id, db, current_user.organization_id)
    simulation = QuarantineEngine(db).simulate(payload.project_id, payload.config)
    return {"success": True, "data": simulation.to_json_dict()}


@router.post("/api/quarantine/policies/validate")
def validate_policy_config(
    payload: ValidatePolicyRequest,
    current_user: User = Depends(get_current_user),
):
    return {"success": True, "data": validate_policy(payload.config).to_json_dict()}


@router.get("/api/quarantine/policies/{project_id}")
def list_policies(
    project_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    get_project_for_user(project_id, db, current_user.organization_id)
    return {"success": True, "data": [policy.to_dict() for policy in PolicyStore(db).list(project_id)]}


@router.post("/api/quarantine/policies", status_code=status.HTTP_201_CREATED)
def create_policy(
    payload: CreatePolicyRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    get_project_for_user(payload.project_id, db, current_user.organization_id)
    policy = PolicyStore(db).create(
        payload.project_id,
        payload.name,
        payload.config,
        description=payload.description,
        is_active=payload.is_active,
        created_by=current_user.id,
    )
    db.refresh(policy)
    return {"success": True, "data": policy.to_dict()}


@router.put("/api/quarantine/policies/{policy_id}")
def update_policy(
    policy_id: int,
    payload: UpdatePolicyRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    _policy_for_user(policy_id, db, current_user)
    policy = PolicyStore(db).update(
        policy_id,
        name=payload.name,
        description=payload.description,
        config=payload.config,
    )
    db.refresh(policy)
    return {"success": True, "data": policy.to_dict()}


@router.put("/api/quarantine/policies/{policy_id}/status")
def set_policy_status(
    policy_id: int,
    payload: PolicyStatusRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    _policy_for_user(policy_id, db, current_user)
    policy = PolicyStore(db).set_status(policy_id, payload.is_active)
    return {"success": True, "data": policy.to_dict()}


@router.delete("/api/quarantine/policies/{policy_id}")
def delete_policy(
    policy_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    _policy_for_user(policy_id, db, current_user)
    PolicyStore(db).delete(policy_id)
    return {"success": True, "data": {"id": policy_id, "deleted": True}}
