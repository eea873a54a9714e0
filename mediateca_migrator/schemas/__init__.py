"""Schemas package initialization."""
from .migration import (
    AnalysisSummary,
    DedupSummary,
    Issue,
    MigrationRead,
    ProgressSnapshot,
)
from .policy import MigrationPolicy, parse_policy, parse_policy_yaml

__all__ = [
    "AnalysisSummary",
    "DedupSummary",
    "Issue",
    "MigrationRead",
    "ProgressSnapshot",
    "MigrationPolicy",
    "parse_policy",
    "parse_policy_yaml",
]
