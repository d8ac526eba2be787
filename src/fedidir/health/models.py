"""Health state machine and sweep report models."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from ..models import BAN_REASON, BAN_THRESHOLD

SweepScope = Literal["banned", "active"]

SWEEP_SCOPE_VALUES: tuple[SweepScope, ...] = ("banned", "active")

SWEEP_MESSAGE = "successfully updated instances"


class HealthState(str, Enum):
    """Health classification derived from an instance's health fields."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    BANNED = "banned"

    @classmethod
    def of(cls, fields: HealthFields) -> HealthState:
        """Classify *fields*."""
        if fields.banned:
            return cls.BANNED
        if fields.failed_checks > 0:
            return cls.DEGRADED
        return cls.HEALTHY


@dataclass(slots=True, frozen=True)
class HealthFields:
    """The health-related columns of an instance."""

    failed_checks: int = 0
    banned: bool = False
    ban_reason: str | None = None

    @classmethod
    def from_entry(cls, entry: Mapping[str, Any]) -> HealthFields:
        """Read the health fields from a directory entry."""
        return cls(
            failed_checks=int(entry.get("failed_checks", 0)),
            banned=bool(entry.get("banned", False)),
            ban_reason=entry.get("ban_reason") or None,
        )

    @property
    def state(self) -> HealthState:
        """Return the classified :class:`HealthState`."""
        return HealthState.of(self)

    def to_dict(self) -> dict[str, object]:
        """Return the persisted field mapping."""
        return {
            "failed_checks": self.failed_checks,
            "banned": self.banned,
            "ban_reason": self.ban_reason,
        }


def next_health(current: HealthFields, succeeded: bool) -> HealthFields:
    """Apply one probe outcome to *current*.

    Success always returns to a clean healthy state. A failure increments the
    counter and bans at ``BAN_THRESHOLD``; a banned instance that fails again
    is left exactly as it is.
    """
    if succeeded:
        return HealthFields()
    if current.banned:
        return current
    failed_checks = current.failed_checks + 1
    if failed_checks >= BAN_THRESHOLD:
        return HealthFields(failed_checks=failed_checks, banned=True, ban_reason=BAN_REASON)
    return HealthFields(failed_checks=failed_checks)


@dataclass(slots=True, frozen=True)
class HealthTransition:
    """Result of applying one probe outcome to one instance."""

    instance_id: int
    uri: str
    before: HealthFields
    after: HealthFields
    snapshot_updated: bool

    @property
    def changed(self) -> bool:
        """Return ``True`` when the health fields changed."""
        return self.before != self.after


class SweepStatus(str, Enum):
    """Per-instance outcome of a sweep."""

    RECOVERED = "recovered"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    BANNED = "banned"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class SweepOptions:
    """Runtime tunables for a reconciliation sweep."""

    scope: SweepScope = "banned"
    max_concurrency: int = 8


@dataclass(slots=True, frozen=True)
class SweepResult:
    """Outcome of reconciling one instance."""

    instance_id: int
    uri: str
    platform: str
    status: SweepStatus
    message: str
    failed_checks: int
    probe_failure: str | None = None
    duration_ms: int | None = None
    warnings: Sequence[str] = field(default_factory=tuple)

    @property
    def is_error(self) -> bool:
        """Return ``True`` when the instance could not be reconciled."""
        return self.status is SweepStatus.ERROR


@dataclass(slots=True, frozen=True)
class SweepSummary:
    """Aggregated totals for a sweep."""

    message: str
    selected: int
    totals: Mapping[SweepStatus, int]

    @property
    def errors(self) -> int:
        """Return the number of instances that could not be reconciled."""
        return int(self.totals.get(SweepStatus.ERROR, 0))


@dataclass(slots=True, frozen=True)
class SweepReport:
    """Complete report for a sweep."""

    results: Sequence[SweepResult]
    summary: SweepSummary
    metadata: Mapping[str, Any] | None = None


def aggregate_results(results: Iterable[SweepResult]) -> SweepSummary:
    """Count results by status; the message never reflects individual failures."""
    totals: dict[SweepStatus, int] = {status: 0 for status in SweepStatus}
    selected = 0
    for result in results:
        totals[result.status] += 1
        selected += 1
    return SweepSummary(message=SWEEP_MESSAGE, selected=selected, totals=totals)


def build_report(
    results: Sequence[SweepResult],
    metadata: Mapping[str, Any] | None = None,
) -> SweepReport:
    """Create a full SweepReport from per-instance results."""
    summary = aggregate_results(results)
    return SweepReport(results=tuple(results), summary=summary, metadata=metadata)
