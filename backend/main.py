import sys
import os

sys.path.append(os.path.dirname(os.path.abspath(__file__)))

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.requests import Request
from fastapi import FastAPI, Depends, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from psycopg.errors import UndefinedTable as PsycopgUndefinedTable

# Routers
from apis.projects_api import router as projects_router
from apis.test_results_api import router as test_results_router
from apis.policies_api import router as policies_router
from apis.impact_api import router as impact_router
from apis.quarantine_api import router as quarantine_router
from apis.stability_api import router as stability_router

import auth
from database.models import Organization, User
from database.session import engine, get_db, sanitize_database_url
from database.migration_runner import (
    auto_migrate_enabled,
    build_alembic_config,
    schema_status,
    upgrade_to_head,
)
from quarantine.errors import QuarantineError
from utils.security import hash_password, verify_password

REQUIRED_TABLES = {
    "organizations",
    "users",
    "projects",
    "flaky_test_patterns",
    "test_results",
    "quarantine_policies",
    "quarantine_history",
    "quarantine_impacts",
    "team_configurations",
    "quarantine_jobs",
}

SCHEMA_OUT_OF_SYNC = "Database schema out of sync. Run Alembic migrations."


# -------------------------------------------------------
# DB STARTUP VALIDATION (NO RUNTIME DDL)
# -------------------------------------------------------
_startup_logger = logging.getLogger("startup")
logger = logging.getLogger(__name__)


def _validate_database_schema() -> None:
    config = build_alembic_config()
    schema = schema_status(engine, config, REQUIRED_TABLES)

    if schema.out_of_sync and auto_migrate_enabled():
        upgrade_to_head(engine, config, _startup_logger)
        schema = schema_status(engine, config, REQUIRED_TABLES)

    if schema.out_of_sync:
        _startup_logger.error(
            "Database schema out of sync. current=%s head=%s db=%s missing_tables=%s",
            schema.current,
            schema.head,
            sanitize_database_url(os.getenv("DATABASE_URL")),
            sorted(schema.missing_tables),
        )
        raise RuntimeError(SCHEMA_OUT_OF_SYNC)


# -------------------------------------------------------
# FASTAPI INITIALIZATION
# -------------------------------------------------------
@asynccontextmanager
async def _lifespan(app: FastAPI):
    try:
        _validate_database_schema()
    except RuntimeError:
        raise SystemExit(1)
    yield


app = FastAPI(title="Flaky Test Quarantine", lifespan=_lifespan)


def _cors_origins() -> list:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "*")
    return [origin.strip() for origin in raw.split(",") if origin.strip()] or ["*"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# -------------------------------------------------------
# AUTH MODELS
# -------------------------------------------------------
class _AuthBase(BaseModel):
    organization: str
    email: EmailStr
    password: str

    @field_validator("organization")
    @classmethod
    def _organization_not_empty(cls, value: str) -> str:
        cleaned = (value or "").strip()
        if not cleaned:
            raise ValueError("Organization is required.")
        return cleaned

    @field_validator("password")
    @classmethod
    def _password_min_length(cls, value: str) -> str:
        if not value or len(value) < 8:
            raise ValueError("Password must be at least 8 characters long.")
        return value

    def normalized_email(self) -> str:
        return str(self.email).strip().lower()

    def normalized_org(self) -> str:
        return (self.organization or "").strip().lower()


class SignupRequest(_AuthBase):
    pass


class LoginRequest(_AuthBase):
    pass


def _is_schema_missing_error(exc: Exception) -> bool:
    if isinstance(getattr(exc, "orig", None), PsycopgUndefinedTable):
        return True
    message = str(exc).lower()
    return "relation" in message and "does not exist" in message


# -------------------------------------------------------
# SIGNUP
# -------------------------------------------------------
@app.post("/signup", status_code=status.HTTP_201_CREATED)
def signup_user(payload: SignupRequest, db: Session = Depends(get_db)):
    try:
        org = Organization.get_or_create(db, payload.organization)
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        password_hash = hash_password(payload.password)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    # The first member of an organization owns it; later members start without admin rights.
    has_members = db.query(User.id).filter(User.organization_id == org.id).first() is not None
    user = User(
        organization=org.display_name,
        organization_id=org.id,
        email=payload.normalized_email(),
        password_hash=password_hash,
        role="member" if has_members else "owner",
    )

    try:
        db.add(user)
        db.flush()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A user with this email already exists.",
        )
    except (ProgrammingError, OperationalError) as exc:
        db.rollback()
        if _is_schema_missing_error(exc):
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=SCHEMA_OUT_OF_SYNC,
            ) from exc
        raise

    db.refresh(user)
    logger.info("Created %s account %s in organization %s", user.role, user.id, org.id)
    return {"status": "created", "user": user.to_dict()}


# -------------------------------------------------------
# LOGIN
# -------------------------------------------------------
@app.post("/login")
def login_for_access_token(payload: LoginRequest, db: Session = Depends(get_db)):
    email = payload.normalized_email()
    organization = payload.normalized_org()

    user = db.query(User).filter(User.email == email).first()

    if not user:
        raise HTTPException(status_code=401, detail="Incorrect credentials.")

    stored_org = (user.organization or "").strip().lower()

    if stored_org != organization or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Incorrect credentials.")

    access_token = auth.create_access_token(
        data={
            "sub": user.email,
            "uid": user.id,
            "org": user.organization,
            "org_id": user.organization_id,
            "role": user.role,
        }
    )

    return {"access_token": access_token, "token_type": "bearer"}


# -------------------------------------------------------
# EXCEPTION HANDLERS
# -------------------------------------------------------
@app.exception_handler(QuarantineError)
async def quarantine_exception_handler(request: Request, exc: QuarantineError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body") or "body",
            "message": err.get("msg", "invalid value"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"error": "Invalid request", "details": details},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": str(exc) or "Internal server error"})


# -------------------------------------------------------
# ROUTERS
# -------------------------------------------------------
app.include_router(projects_router)
app.include_router(test_results_router)
app.include_router(policies_router)
app.include_router(impact_router)
app.include_router(quarantine_router)
app.include_router(stability_router)


# -------------------------------------------------------
# MAIN SERVER
# -------------------------------------------------------
if __name__ == "__main__":
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(levelname)s: %(name)s: %(message)s",
    )
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("watchfiles").setLevel(logging.ERROR)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    import uvicorn

    uvicorn.run("main:app", host="127.0.0.1", port=8001, reload=False, log_level="info")
