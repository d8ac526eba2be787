"""Tests for the candidate onboarding flow."""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any

import pytest

from fedidir.config import DirectoryAccountConfig
from fedidir.directory import DirectoryWriter
from fedidir.logging import StructuredLogger
from fedidir.models import (
    ChallengeRecord,
    InstanceSnapshot,
    PlatformFamily,
    ProbeFailure,
    ProbeOutcome,
)
from fedidir.onboarding import (
    INVALID_POLICY_MESSAGE,
    SUCCESS_MESSAGE,
    InvalidAddressError,
    OnboardingService,
    SubmissionResult,
    normalize_address,
)
from fedidir.providers import MessagingError
from fedidir.state import DirectoryStore, StateRegistryError
from fedidir.verification import ChallengeIssuer

ACCOUNT = DirectoryAccountConfig(
    name="Example Directory",
    base_url="https://directory.example",
    access_token="token",
)


class FakeApi:
    """Scripted probe and user-search responses."""

    def __init__(
        self,
        snapshot: InstanceSnapshot | None,
        search_results: list[Any] | None = None,
    ) -> None:
        self.snapshot = snapshot
        self.search_results = search_results or []
        self.probed: list[tuple[str, str]] = []

    async def probe(self, address: str, platform: PlatformFamily | str) -> ProbeOutcome:
        label = platform.value if isinstance(platform, PlatformFamily) else str(platform)
        self.probed.append((address, label))
        if PlatformFamily.parse(label) is None:
            return ProbeOutcome.failed(address, label, ProbeFailure("unsupported-platform"))
        if self.snapshot is None:
            return ProbeOutcome.failed(address, label, ProbeFailure("timeout"))
        return ProbeOutcome.succeeded(address, label, self.snapshot)

    async def search_local_users(self, address: str, query: str, *, limit: int = 1) -> list[Any]:
        return self.search_results


class FakeSender:
    """Records challenges; optionally fails or waits for a release signal."""

    def __init__(self, *, error: Exception | None = None) -> None:
        self.error = error
        self.sent: list[ChallengeRecord] = []
        self.release: asyncio.Event | None = None

    async def send(self, challenge: ChallengeRecord) -> str | None:
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        self.sent.append(challenge)
        return "1"


def _service(
    api: FakeApi,
    writer: DirectoryWriter,
    sender: FakeSender,
    logs_dir: Path,
) -> OnboardingService:
    return OnboardingService(
        api,  # type: ignore[arg-type]
        ChallengeIssuer(api, ACCOUNT),  # type: ignore[arg-type]
        writer,
        sender,
        StructuredLogger(logs_dir),
    )


def _submit(service: OnboardingService, *args: Any, **kwargs: Any) -> SubmissionResult:
    async def _run() -> SubmissionResult:
        result = await service.submit_candidate(*args, **kwargs)
        await service.drain()
        return result

    return asyncio.run(_run())


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("example.social", "example.social"),
        ("https://Example.Social/", "example.social"),
        ("http://example.social", "example.social"),
        ("  mk.example.org  ", "mk.example.org"),
        ("example.social:8443", "example.social:8443"),
    ],
)
def test_normalize_address_accepts_hostnames(raw: str, expected: str) -> None:
    """Schemes, trailing slashes and case are normalised away."""
    assert normalize_address(raw) == expected


@pytest.mark.parametrize(
    "raw",
    ["", "localhost", "example.social/about", "exa mple.social", "-bad.example", "ftp://x.example"],
)
def test_normalize_address_rejects_invalid(raw: str) -> None:
    """Anything that is not a bare hostname is rejected."""
    with pytest.raises(InvalidAddressError):
        normalize_address(raw)


def test_mastodon_submission_persists_and_sends_challenge(
    tmp_path: Path,
    store: DirectoryStore,
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """A valid Mastodon candidate is stored unverified and messaged."""
    api = FakeApi(snapshot)
    sender = FakeSender()
    service = _service(api, writer, sender, tmp_path / "logs")

    result = _submit(service, "https://Example.Social/", "mastodon", "sfw", category="art")

    assert result.ok
    assert result.message == SUCCESS_MESSAGE
    assert result.to_payload() == {"message": SUCCESS_MESSAGE, "type": "success"}
    assert api.probed == [("example.social", "mastodon")]

    entry = store.get_by_uri("example.social")
    assert entry is not None
    assert entry["id"] == result.instance_id
    assert entry["verified"] is False
    assert entry["category"] == "art"

    credential = store.find_credential(entry["id"])
    assert len(sender.sent) == 1
    challenge = sender.sent[0]
    assert challenge.recipient == "@admin@example.social"
    assert challenge.body.endswith(f"/{credential}")


def test_invalid_uri_is_rejected_before_probe(
    tmp_path: Path,
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """Malformed URIs never reach the network."""
    api = FakeApi(snapshot)
    service = _service(api, writer, FakeSender(), tmp_path / "logs")

    result = _submit(service, "not a host", "mastodon", "sfw")

    assert result.status == "error"
    assert result.reason == "invalid-uri"
    assert api.probed == []


def test_probe_failure_persists_nothing(
    tmp_path: Path,
    store: DirectoryStore,
    writer: DirectoryWriter,
) -> None:
    """An unreachable candidate is rejected without a directory write."""
    sender = FakeSender()
    service = _service(FakeApi(None), writer, sender, tmp_path / "logs")

    result = _submit(service, "down.example", "mastodon", "sfw")

    assert result.to_payload() == {"message": "failed to verify URI", "type": "error"}
    assert result.http_status == 400
    assert store.list_instances() == []
    assert sender.sent == []


def test_unsupported_platform_fails_probe(
    tmp_path: Path,
    store: DirectoryStore,
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """Unknown platforms are reported as probe failures."""
    service = _service(FakeApi(snapshot), writer, FakeSender(), tmp_path / "logs")

    result = _submit(service, "example.social", "lemmy", "sfw")

    assert result.reason == "probe-failed"
    assert store.list_instances() == []


def test_misskey_admin_check_failure_persists_nothing(
    tmp_path: Path,
    store: DirectoryStore,
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """Failed ownership checks leave no instance behind and send nothing."""
    api = FakeApi(snapshot, search_results=[{"isAdmin": False}])
    sender = FakeSender()
    service = _service(api, writer, sender, tmp_path / "logs")

    result = _submit(service, "misskey.example", "misskey", "nsfw", "root")

    assert result.status == "error"
    assert result.message == "Administrator verification failed"
    assert store.list_instances() == []
    assert sender.sent == []


def test_misskey_admin_submission_succeeds(
    tmp_path: Path,
    store: DirectoryStore,
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """A confirmed Misskey admin is messaged at the claimed handle."""
    api = FakeApi(snapshot, search_results=[{"isAdmin": True}])
    sender = FakeSender()
    service = _service(api, writer, sender, tmp_path / "logs")

    result = _submit(service, "misskey.example", "misskey", "nsfw", "@root")

    assert result.ok
    entry = store.get_by_uri("misskey.example")
    assert entry is not None
    assert entry["platform"] == "misskey"
    assert entry["content_policy"] == "nsfw"
    assert sender.sent[0].recipient == "@root@misskey.example"


def test_duplicate_submission_is_rejected(
    tmp_path: Path,
    store: DirectoryStore,
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """Submitting an existing instance reports a duplicate."""
    sender = FakeSender()
    service = _service(FakeApi(snapshot), writer, sender, tmp_path / "logs")

    first = _submit(service, "example.social", "mastodon", "sfw")
    second = _submit(service, "EXAMPLE.social", "mastodon", "sfw")

    assert first.ok
    assert second.reason == "duplicate"
    assert second.message == "Instance already exists"
    assert len(store.list_instances()) == 1
    assert len(sender.sent) == 1


def test_invalid_content_policy_is_rejected(
    tmp_path: Path,
    store: DirectoryStore,
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """Unknown content policies are refused before contacting the instance."""
    api = FakeApi(snapshot)
    sender = FakeSender()
    service = _service(api, writer, sender, tmp_path / "logs")

    result = _submit(service, "example.social", "mastodon", "maybe")

    assert result.reason == "invalid"
    assert result.message == INVALID_POLICY_MESSAGE
    assert api.probed == []
    assert sender.sent == []
    assert store.list_instances() == []


def test_committed_create_still_sends_challenge(
    tmp_path: Path,
    store: DirectoryStore,
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A failed follow-up write does not hide an instance that was created."""

    def _fail(*_args: object, **_kwargs: object) -> None:
        raise StateRegistryError("disk full")

    monkeypatch.setattr(store, "update", _fail)
    sender = FakeSender()
    service = _service(FakeApi(snapshot), writer, sender, tmp_path / "logs")

    result = _submit(service, "example.social", "mastodon", "sfw")

    assert result.ok
    assert len(store.list_instances()) == 1
    assert len(sender.sent) == 1
    credential = store.find_credential(result.instance_id or 0)
    assert credential is not None
    assert credential in sender.sent[0].body


def test_send_failure_goes_to_dead_letter(
    tmp_path: Path,
    store: DirectoryStore,
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """Delivery failures are recorded without changing the result."""
    sender = FakeSender(error=MessagingError("HTTP 503"))
    service = _service(FakeApi(snapshot), writer, sender, tmp_path / "logs")

    result = _submit(service, "example.social", "mastodon", "sfw")

    assert result.ok
    assert store.get_by_uri("example.social") is not None
    lines = (tmp_path / "logs" / "dead-letter.jsonl").read_text().splitlines()
    record = json.loads(lines[0])
    assert record["kind"] == "verification-challenge"
    assert record["payload"]["uri"] == "example.social"
    assert record["payload"]["recipient"] == "@admin@example.social"
    assert "HTTP 503" in record["payload"]["error"]


def test_result_does_not_wait_for_delivery(
    tmp_path: Path,
    writer: DirectoryWriter,
    snapshot: InstanceSnapshot,
) -> None:
    """The submission result is available before the message is sent."""
    sender = FakeSender()
    service = _service(FakeApi(snapshot), writer, sender, tmp_path / "logs")

    async def _run() -> tuple[SubmissionResult, int, int]:
        sender.release = asyncio.Event()
        result = await service.submit_candidate("example.social", "mastodon", "sfw")
        pending_before = service.pending
        sent_before = len(sender.sent)
        sender.release.set()
        await service.drain()
        return result, pending_before, sent_before

    result, pending_before, sent_before = asyncio.run(_run())

    assert result.ok
    assert pending_before == 1
    assert sent_before == 0
    assert len(sender.sent) == 1
    assert service.pending == 0
