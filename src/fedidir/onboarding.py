"""Candidate submission flow: probe, verify, persist, then notify.

Every check that can reject a candidate runs before the directory is written,
so a failed administrator check never leaves a half-onboarded instance
behind. The verification message is sent from a background task after the
result has been produced; delivery failures are written to the dead-letter
log and never alter the result already returned.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Literal, Protocol

from .directory import CreatedInstance, DirectoryWriter, mint_credential
from .logging import StructuredLogger
from .models import (
    CONTENT_POLICY_VALUES,
    Candidate,
    ChallengeRecord,
    CreateFailure,
    PlatformFamily,
    VerificationFailure,
)
from .providers.instance_api import InstanceApiClient
from .verification import ChallengeIssuer

LOGGER = logging.getLogger(__name__)

SUCCESS_MESSAGE = (
    "Added instance successfully, your instance admin account needs to be verified! "
    "Check your DMs!"
)
INVALID_URI_MESSAGE = "invalid URI"
PROBE_FAILED_MESSAGE = "failed to verify URI"
ADMIN_FAILED_MESSAGE = "Administrator verification failed"
DUPLICATE_MESSAGE = "Instance already exists"
INVALID_POLICY_MESSAGE = "invalid content policy"

_HOST_PATTERN = re.compile(
    r"^(?=.{1,253}$)(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9-]{2,63}(?::\d{1,5})?$"
)


class InvalidAddressError(ValueError):
    """Raised when a submitted URI is not a bare instance hostname."""


class MessageSender(Protocol):
    """Anything able to deliver a composed challenge."""

    async def send(self, challenge: ChallengeRecord) -> str | None:
        """Deliver *challenge*."""


def normalize_address(uri: str) -> str:
    """Reduce *uri* to a lowercase hostname (optionally with port)."""
    text = (uri or "").strip().lower()
    for prefix in ("https://", "http://"):
        if text.startswith(prefix):
            text = text[len(prefix) :]
            break
    text = text.rstrip("/")
    if not _HOST_PATTERN.match(text):
        raise InvalidAddressError(f"'{uri}' is not a valid instance hostname.")
    return text


@dataclass(slots=True, frozen=True)
class SubmissionResult:
    """Outcome reported to whoever submitted the candidate."""

    message: str
    status: Literal["success", "error"]
    reason: str | None = None
    instance_id: int | None = None
    detail: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` for a successful submission."""
        return self.status == "success"

    @property
    def http_status(self) -> int:
        """Return the HTTP-style status code for this result."""
        return 200 if self.ok else 400

    def to_payload(self) -> dict[str, object]:
        """Return the ``{message, type}`` response body."""
        return {"message": self.message, "type": self.status}

    @classmethod
    def error(cls, message: str, reason: str, detail: str | None = None) -> SubmissionResult:
        """Build an error result."""
        return cls(message=message, status="error", reason=reason, detail=detail)


class OnboardingService:
    """Implements candidate submission end to end."""

    def __init__(
        self,
        api: InstanceApiClient,
        issuer: ChallengeIssuer,
        writer: DirectoryWriter,
        sender: MessageSender,
        logger: StructuredLogger,
    ) -> None:
        """Wire the collaborators used by :meth:`submit_candidate`."""
        self._api = api
        self._issuer = issuer
        self._writer = writer
        self._sender = sender
        self._logger = logger
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        """Return the number of challenge deliveries still in flight."""
        return len(self._pending)

    async def submit_candidate(
        self,
        uri: str,
        platform: str,
        content_policy: str,
        claimed_admin: str | None = None,
        *,
        category: str | None = None,
    ) -> SubmissionResult:
        """Onboard a candidate instance and schedule its verification message."""
        try:
            address = normalize_address(uri)
        except InvalidAddressError as exc:
            return SubmissionResult.error(INVALID_URI_MESSAGE, "invalid-uri", str(exc))
        policy = (content_policy or "").strip().lower()
        if policy not in CONTENT_POLICY_VALUES:
            allowed = ", ".join(CONTENT_POLICY_VALUES)
            detail = f"Unsupported content policy '{content_policy}'. Allowed: {allowed}."
            return SubmissionResult.error(INVALID_POLICY_MESSAGE, "invalid", detail)

        outcome = await self._api.probe(address, platform)
        family = PlatformFamily.parse(platform)
        if outcome.snapshot is None or family is None:
            detail = str(outcome.failure) if outcome.failure else None
            return SubmissionResult.error(PROBE_FAILED_MESSAGE, "probe-failed", detail)
        snapshot = outcome.snapshot

        try:
            handle = await self._issuer.verify_admin(snapshot, family, address, claimed_admin)
        except VerificationFailure as exc:
            return SubmissionResult.error(ADMIN_FAILED_MESSAGE, exc.reason, exc.detail)

        candidate = Candidate(
            uri=address,
            platform=family,
            content_policy=policy,
            claimed_admin=claimed_admin,
            category=category,
        )
        try:
            created = self._writer.create_instance(candidate, snapshot, mint_credential())
        except CreateFailure as exc:
            if exc.kind == CreateFailure.DUPLICATE:
                return SubmissionResult.error(DUPLICATE_MESSAGE, "duplicate", exc.detail)
            return SubmissionResult.error(exc.detail or "Invalid instance", "invalid", exc.detail)
        except OSError as exc:
            LOGGER.error("Directory write failed for %s: %s", address, exc)
            return SubmissionResult.error(
                "Unable to save instance", "storage-error", str(exc)
            )

        challenge = self._issuer.compose(handle, address, created.credential)
        self._schedule_delivery(challenge, created)
        return SubmissionResult(
            message=SUCCESS_MESSAGE,
            status="success",
            instance_id=created.instance_id,
        )

    async def drain(self) -> None:
        """Wait for outstanding challenge deliveries to settle."""
        if self._pending:
            await asyncio.gather(*tuple(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    def _schedule_delivery(self, challenge: ChallengeRecord, created: CreatedInstance) -> None:
        task = asyncio.get_running_loop().create_task(self._deliver(challenge, created))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, challenge: ChallengeRecord, created: CreatedInstance) -> None:
        try:
            status_id = await self._sender.send(challenge)
        except Exception as exc:
            LOGGER.warning("Challenge delivery failed to %s: %s", challenge.recipient, exc)
            self._logger.dead_letter(
                "verification-challenge",
                {
                    "instance_id": created.instance_id,
                    "uri": created.uri,
                    "recipient": challenge.recipient,
                    "visibility": challenge.visibility,
                    "error": str(exc),
                },
            )
            return
        LOGGER.info(
            "Challenge delivered to %s status_id=%s", challenge.recipient, status_id
        )


__all__ = [
    "InvalidAddressError",
    "OnboardingService",
    "SubmissionResult",
    "normalize_address",
]
