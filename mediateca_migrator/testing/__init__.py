"""Testing utilities for the mediateca migrator."""

from .dispatcher import InlineDispatcher
from .object_store import InMemoryObjectStore

__all__ = [
    "InMemoryObjectStore",
    "InlineDispatcher",
]
