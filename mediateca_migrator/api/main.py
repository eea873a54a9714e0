"""FastAPI application for the mediateca migrator service."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..exceptions import (
    ConfigurationError,
    DecisionError,
    ImportFormatError,
    InvalidTransitionError,
    MigrationNotFoundError,
    MigratorError,
    NotReadyError,
    ObjectStoreError,
    TaskExecutionError,
)
from ..utils.config import ensure_runtime_configuration, get_settings
from ..utils.logging import setup_logger

logger = setup_logger(__name__, context={"phase": "api"})


@asynccontextmanager
async def lifespan(app: FastAPI):  # type: ignore
    """Application lifespan context manager for startup/shutdown."""
    # Startup
    ensure_runtime_configuration(get_settings())
    logger.info("Mediateca migrator API starting up...")
    yield
    # Shutdown
    logger.info("Mediateca migrator API shutting down...")


app = FastAPI(
    title="Mediateca Migrator API",
    description="Control surface for importing, reviewing and executing legacy media migrations",
    version="0.1.0",
    lifespan=lifespan,
)


def _status_code_for(exc: MigratorError) -> int:
    if isinstance(exc, MigrationNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (InvalidTransitionError, DecisionError, ImportFormatError, ConfigurationError)):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, ObjectStoreError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, TaskExecutionError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _details_for(exc: MigratorError) -> dict[str, Any] | None:
    if isinstance(exc, (NotReadyError, DecisionError)):
        return exc.details or None
    if isinstance(exc, InvalidTransitionError):
        return {"current": exc.current, "target": exc.target}
    return None


def error_body(message: str, error_type: str, details: Any = None) -> dict[str, Any]:
    content: dict[str, Any] = {"status": "error", "message": message, "error_type": error_type}
    if details:
        content["details"] = details
    return content


@app.exception_handler(MigratorError)
async def migrator_exception_handler(request: Request, exc: MigratorError) -> JSONResponse:
    """Map domain exceptions onto HTTP responses."""
    status_code = _status_code_for(exc)
    log_method = logger.error if status_code >= 500 else logger.warning
    log_method(
        "%s: %s",
        exc.__class__.__name__,
        exc,
        extra={"status": "error", "migration_id": request.path_params.get("migration_id", "-")},
    )
    return JSONResponse(
        status_code=status_code,
        content=error_body(str(exc), exc.__class__.__name__, _details_for(exc)),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Report malformed requests with the same envelope as domain errors."""
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", "")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("Invalid request", "RequestValidationError", errors),
    )


# Import routers
from .routes import health, metrics, migrations  # noqa: E402

app.include_router(health.router, tags=["health"])
app.include_router(migrations.router, prefix="/migrations", tags=["migrations"])
app.include_router(metrics.router, tags=["monitoring"])
