"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Header

from ..tasks.migration import TaskDispatcher
from ..utils.config import get_settings

_dispatcher = TaskDispatcher()


def get_dispatcher() -> TaskDispatcher:
    """Return the dispatcher used to queue phase tasks."""

    return _dispatcher


def get_operator(x_operator: str | None = Header(default=None)) -> str:
    """Return the trusted operator identity for audit fields."""

    if x_operator and x_operator.strip():
        return x_operator.strip()
    return get_settings().default_operator
