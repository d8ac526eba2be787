"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from fedidir.directory import DirectoryWriter
from fedidir.locking import LockManager
from fedidir.models import InstanceSnapshot
from fedidir.state import DirectoryStore, StateRegistry


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture()
def store(tmp_path: Path) -> DirectoryStore:
    """Return a directory store rooted in a temporary registry."""
    registry = StateRegistry(tmp_path / "registry")
    registry.ensure_root()
    return DirectoryStore(registry, LockManager(tmp_path / "run", default_timeout=5.0))


@pytest.fixture()
def writer(store: DirectoryStore) -> DirectoryWriter:
    """Return a directory writer bound to the temporary store."""
    return DirectoryWriter(store)


@pytest.fixture()
def snapshot() -> InstanceSnapshot:
    """Return a representative Mastodon-style snapshot."""
    return InstanceSnapshot(
        title="Example Social",
        description="A friendly place",
        thumbnail_url="https://example.social/thumb.png",
        user_count=120,
        status_count=4500,
        contact_handle="admin",
        registrations_open=True,
        approval_required=False,
    )
