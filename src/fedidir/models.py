"""Domain types shared by the onboarding and reconciliation flows."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

UNKNOWN_CONTACT = "unknown"

BAN_THRESHOLD = 5
BAN_REASON = "Instance failed 5 checks in a row"


class PlatformFamily(str, Enum):
    """Supported federation server families."""

    MASTODON = "mastodon"
    MISSKEY = "misskey"

    @classmethod
    def parse(cls, value: str | PlatformFamily) -> PlatformFamily | None:
        """Return the family for *value*, or ``None`` when unsupported."""
        if isinstance(value, PlatformFamily):
            return value
        normalized = str(value).strip().lower()
        for family in cls:
            if family.value == normalized:
                return family
        return None


PLATFORM_VALUES: tuple[str, ...] = tuple(family.value for family in PlatformFamily)
CONTENT_POLICY_VALUES: tuple[str, ...] = ("sfw", "nsfw")


class FedidirError(RuntimeError):
    """Base class for recoverable onboarding/reconciliation failures."""


class ProbeFailure(FedidirError):
    """Raised when an instance probe cannot produce a complete snapshot."""

    def __init__(self, reason: str, detail: str = "") -> None:
        """Store a machine-readable *reason* plus a human *detail*."""
        self.reason = reason
        self.detail = detail
        message = f"{reason}: {detail}" if detail else reason
        super().__init__(message)


class VerificationFailure(FedidirError):
    """Raised when administrator ownership cannot be established."""

    ADMIN_CHECK_FAILED = "admin-check-failed"

    def __init__(self, detail: str = "", reason: str = ADMIN_CHECK_FAILED) -> None:
        """Store the failure reason and detail."""
        self.reason = reason
        self.detail = detail
        message = f"{reason}: {detail}" if detail else reason
        super().__init__(message)


class CreateFailure(FedidirError):
    """Raised when the directory rejects a new instance."""

    DUPLICATE = "duplicate"
    INVALID = "invalid"

    def __init__(self, kind: str, detail: str = "") -> None:
        """Store the failure *kind* (duplicate/invalid) and *detail*."""
        self.kind = kind
        self.detail = detail
        super().__init__(detail or kind)


class UpdateFailure(FedidirError):
    """Raised when a health/snapshot update could not be applied."""


@dataclass(slots=True, frozen=True)
class InstanceSnapshot:
    """Normalised instance metadata captured by a single probe."""

    title: str
    description: str
    thumbnail_url: str | None
    user_count: int
    status_count: int
    contact_handle: str
    registrations_open: bool
    approval_required: bool

    def to_data(self) -> dict[str, object]:
        """Return the persisted ``InstanceData`` field mapping."""
        return {
            "title": self.title,
            "description": self.description,
            "thumbnail": self.thumbnail_url,
            "user_count": self.user_count,
            "status_count": self.status_count,
            "contact": self.contact_handle,
            "registrations": self.registrations_open,
            "approval_required": self.approval_required,
        }


@dataclass(slots=True, frozen=True)
class ProbeOutcome:
    """Either a snapshot or the failure that prevented one."""

    address: str
    platform: str
    snapshot: InstanceSnapshot | None = None
    failure: ProbeFailure | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the probe produced a snapshot."""
        return self.snapshot is not None

    @classmethod
    def succeeded(cls, address: str, platform: str, snapshot: InstanceSnapshot) -> ProbeOutcome:
        """Build a successful outcome."""
        return cls(address=address, platform=platform, snapshot=snapshot)

    @classmethod
    def failed(cls, address: str, platform: str, failure: ProbeFailure) -> ProbeOutcome:
        """Build a failed outcome."""
        return cls(address=address, platform=platform, failure=failure)


@dataclass(slots=True, frozen=True)
class Candidate:
    """A submitted instance awaiting onboarding."""

    uri: str
    platform: PlatformFamily
    content_policy: str
    claimed_admin: str | None = None
    category: str | None = None


@dataclass(slots=True, frozen=True)
class ChallengeRecord:
    """A composed verification direct message."""

    recipient: str
    body: str
    visibility: str = "direct"


__all__ = [
    "BAN_REASON",
    "BAN_THRESHOLD",
    "CONTENT_POLICY_VALUES",
    "Candidate",
    "ChallengeRecord",
    "CreateFailure",
    "FedidirError",
    "InstanceSnapshot",
    "PLATFORM_VALUES",
    "PlatformFamily",
    "ProbeFailure",
    "ProbeOutcome",
    "UNKNOWN_CONTACT",
    "UpdateFailure",
    "VerificationFailure",
]
