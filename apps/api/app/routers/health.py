from collections.abc import Callable
from typing import Literal

from fastapi import APIRouter, Response, status
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.db.migration_check import read_schema_state
from app.db.session import SessionLocal, engine
from app.observability import log_event
from app.schemas.health import HealthResponse, ReadinessDependency, ReadinessResponse

ReadinessStatus = Literal["ok", "error"]

router = APIRouter(tags=["health"])


@router.get("/health", summary="Liveness check", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    summary="Readiness check",
    response_model=ReadinessResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ReadinessResponse}},
)
def readiness(response: Response) -> ReadinessResponse:
    database_status = _safe_dependency_status(
        "database", lambda: _database_dependency_status(SessionLocal)
    )
    dependencies = [ReadinessDependency(name="database", status=database_status)]
    if settings.require_migrations:
        schema_status = _safe_dependency_status("schema", lambda: _schema_dependency_status(engine))
        dependencies.append(ReadinessDependency(name="schema", status=schema_status))

    readiness_status = "ok" if all(dep.status == "ok" for dep in dependencies) else "degraded"
    if readiness_status != "ok":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(status=readiness_status, dependencies=dependencies)


def _safe_dependency_status(
    dependency_name: str,
    checker: Callable[[], ReadinessStatus],
) -> ReadinessStatus:
    try:
        return checker()
    except Exception as exc:  # readiness fails closed to degraded
        log_event(
            f"readiness_dependency_check_failed:{dependency_name}:{type(exc).__name__}",
            channel=dependency_name,
        )
        return "error"


def _database_dependency_status(
    session_factory: Callable[[], Session],
) -> ReadinessStatus:
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return "error"
    return "ok"


def _schema_dependency_status(db_engine: Engine) -> ReadinessStatus:
    # a database behind the alembic head is not ready
    return "ok" if read_schema_state(db_engine).up_to_date else "error"
