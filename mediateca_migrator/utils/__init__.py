"""Utilities package initialization."""
from .config import (
    GlobalSettings,
    ensure_runtime_configuration,
    get_default_policy,
    get_settings,
    load_yaml_config,
)
from .logging import log_phase_outcome, setup_logger

__all__ = [
    "GlobalSettings",
    "ensure_runtime_configuration",
    "get_default_policy",
    "get_settings",
    "load_yaml_config",
    "log_phase_outcome",
    "setup_logger",
]
