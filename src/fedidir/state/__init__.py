"""State management helpers for fedidir."""
from __future__ import annotations

from .directory import DirectoryStore, DirectoryValidationError, DuplicateInstanceError
from .registry import StateRegistry, StateRegistryError

__all__ = [
    "DirectoryStore",
    "DirectoryValidationError",
    "DuplicateInstanceError",
    "StateRegistry",
    "StateRegistryError",
]
