"""Tests for the directory writer."""
from __future__ import annotations

import pytest

from fedidir.directory import DirectoryWriter, mint_credential
from fedidir.models import (
    BAN_REASON,
    BAN_THRESHOLD,
    Candidate,
    CreateFailure,
    InstanceSnapshot,
    PlatformFamily,
    ProbeFailure,
    ProbeOutcome,
    UpdateFailure,
)
from fedidir.state import DirectoryStore, StateRegistryError


def _candidate(uri: str = "example.social", **extra: object) -> Candidate:
    values: dict[str, object] = {
        "uri": uri,
        "platform": PlatformFamily.MASTODON,
        "content_policy": "sfw",
    }
    values.update(extra)
    return Candidate(**values)  # type: ignore[arg-type]


def _failure(uri: str = "example.social") -> ProbeOutcome:
    return ProbeOutcome.failed(uri, "mastodon", ProbeFailure("timeout"))


def test_create_instance_starts_unverified_and_healthy(
    writer: DirectoryWriter,
    store: DirectoryStore,
    snapshot: InstanceSnapshot,
) -> None:
    """New instances are unverified with clean health fields."""
    created = writer.create_instance(_candidate(category="art"), snapshot, "cred")

    entry = store.get(created.instance_id)
    assert entry is not None
    assert entry["verified"] is False
    assert entry["failed_checks"] == 0
    assert entry["banned"] is False
    assert entry["ban_reason"] is None
    assert entry["name"] == "Example Social"
    assert entry["category"] == "art"
    assert entry["data"]["contact"] == "admin"
    assert store.find_credential(created.instance_id) == created.credential == "cred"


def test_create_instance_mints_credential_when_missing(
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """A fresh credential is minted when none is supplied."""
    created = writer.create_instance(_candidate(), snapshot)

    assert len(created.credential) >= 32
    assert created.credential != mint_credential()


def test_create_instance_duplicate(
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """A second create for the same address reports a duplicate."""
    writer.create_instance(_candidate(), snapshot)

    with pytest.raises(CreateFailure) as excinfo:
        writer.create_instance(_candidate("Example.Social"), snapshot)

    assert excinfo.value.kind == CreateFailure.DUPLICATE


def test_create_instance_invalid(
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """Validation errors surface as invalid creates."""
    with pytest.raises(CreateFailure) as excinfo:
        writer.create_instance(_candidate(content_policy="unknown"), snapshot)

    assert excinfo.value.kind == CreateFailure.INVALID


def test_create_instance_survives_failed_verified_reassert(
    writer: DirectoryWriter,
    store: DirectoryStore,
    snapshot: InstanceSnapshot,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A committed create is reported even if the follow-up write fails."""

    def _fail(*_args: object, **_kwargs: object) -> None:
        raise StateRegistryError("disk full")

    monkeypatch.setattr(store, "update", _fail)

    created = writer.create_instance(_candidate(), snapshot, "cred")

    entry = store.get_by_uri("example.social")
    assert entry is not None
    assert entry["id"] == created.instance_id
    assert entry["verified"] is False
    assert store.find_credential(created.instance_id) == "cred"


def test_fifth_failure_bans_instance(
    writer: DirectoryWriter,
    store: DirectoryStore,
    snapshot: InstanceSnapshot,
) -> None:
    """Consecutive failures ban exactly at the threshold."""
    created = writer.create_instance(_candidate(), snapshot)

    for expected in range(1, BAN_THRESHOLD):
        transition = writer.update_health_and_snapshot(created.instance_id, _failure())
        assert transition.after.failed_checks == expected
        assert transition.after.banned is False

    transition = writer.update_health_and_snapshot(created.instance_id, _failure())

    assert transition.after.failed_checks == BAN_THRESHOLD
    assert transition.after.banned is True
    assert transition.after.ban_reason == BAN_REASON
    assert transition.snapshot_updated is False
    entry = store.get(created.instance_id)
    assert entry is not None
    assert entry["banned"] is True
    assert entry["ban_reason"] == BAN_REASON


def test_success_resets_and_overwrites_data(
    writer: DirectoryWriter,
    store: DirectoryStore,
    snapshot: InstanceSnapshot,
) -> None:
    """A successful probe restores health and replaces instance data."""
    created = writer.create_instance(_candidate(), snapshot)
    for _ in range(BAN_THRESHOLD):
        writer.update_health_and_snapshot(created.instance_id, _failure())

    fresh = InstanceSnapshot(
        title="Example Social",
        description="Back online",
        thumbnail_url=None,
        user_count=150,
        status_count=5000,
        contact_handle="admin",
        registrations_open=False,
        approval_required=True,
    )
    outcome = ProbeOutcome.succeeded("example.social", "mastodon", fresh)
    transition = writer.update_health_and_snapshot(created.instance_id, outcome)

    assert transition.changed
    assert transition.snapshot_updated is True
    entry = store.get(created.instance_id)
    assert entry is not None
    assert entry["failed_checks"] == 0
    assert entry["banned"] is False
    assert entry["ban_reason"] is None
    assert entry["data"]["description"] == "Back online"
    assert entry["data"]["user_count"] == 150
    assert entry["data"]["registrations"] is False


def test_failure_keeps_existing_data(
    writer: DirectoryWriter,
    store: DirectoryStore,
    snapshot: InstanceSnapshot,
) -> None:
    """Failed probes never touch the stored snapshot."""
    created = writer.create_instance(_candidate(), snapshot)

    writer.update_health_and_snapshot(created.instance_id, _failure())

    entry = store.get(created.instance_id)
    assert entry is not None
    assert entry["data"]["title"] == "Example Social"
    assert entry["data"]["user_count"] == 120


def test_update_is_idempotent_for_success(
    writer: DirectoryWriter,
    store: DirectoryStore,
    snapshot: InstanceSnapshot,
) -> None:
    """Applying the same successful outcome twice yields the same fields."""
    created = writer.create_instance(_candidate(), snapshot)
    outcome = ProbeOutcome.succeeded("example.social", "mastodon", snapshot)

    writer.update_health_and_snapshot(created.instance_id, outcome)
    first = store.get(created.instance_id)
    transition = writer.update_health_and_snapshot(created.instance_id, outcome)
    second = store.get(created.instance_id)

    assert transition.changed is False
    assert first is not None and second is not None
    for key in ("failed_checks", "banned", "ban_reason", "verified"):
        assert first[key] == second[key]
    assert {k: v for k, v in first["data"].items() if k != "fetched_at"} == {
        k: v for k, v in second["data"].items() if k != "fetched_at"
    }


def test_update_missing_instance_raises(writer: DirectoryWriter) -> None:
    """Unknown ids are reported as update failures."""
    with pytest.raises(UpdateFailure, match="not found"):
        writer.update_health_and_snapshot(99, _failure())
