"""Health check endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ...models.base import session_scope

router = APIRouter()


def _database_status() -> dict[str, Any]:
    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return {"status": "error", "error": str(exc)}
    return {"status": "ok"}


@router.get("/health")
def health_check() -> dict[str, Any]:
    """Health check endpoint including database connectivity status."""

    database = _database_status()
    return {
        "status": "healthy" if database["status"] == "ok" else "unhealthy",
        "service": "mediateca_migrator",
        "database": database,
    }
