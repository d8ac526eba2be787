"""Reconciliation sweep that re-probes instances and applies health transitions."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any

from ..models import BAN_REASON, PlatformFamily, ProbeFailure, ProbeOutcome, UpdateFailure
from .models import (
    HealthState,
    HealthTransition,
    SweepOptions,
    SweepReport,
    SweepResult,
    SweepScope,
    SweepStatus,
    build_report,
)

if TYPE_CHECKING:
    from ..directory import DirectoryWriter
    from ..providers.instance_api import InstanceApiClient
    from ..state import DirectoryStore

LOGGER = logging.getLogger(__name__)


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def selection_filter(scope: SweepScope) -> Mapping[str, object]:
    """Return the directory filter for *scope*.

    ``banned`` only retries instances banned by this loop's own health checks;
    instances banned for any other reason are never selected.
    """
    if scope == "banned":
        return {"banned": True, "ban_reason": BAN_REASON}
    if scope == "active":
        return {"banned": False}
    raise ValueError(f"Unsupported sweep scope: {scope}")


def _status_for(transition: HealthTransition) -> SweepStatus:
    after = transition.after.state
    if after is HealthState.BANNED:
        return SweepStatus.BANNED
    if after is HealthState.DEGRADED:
        return SweepStatus.DEGRADED
    if transition.before.state is HealthState.HEALTHY:
        return SweepStatus.HEALTHY
    return SweepStatus.RECOVERED


def _result_from_transition(
    entry: Mapping[str, Any],
    outcome: ProbeOutcome,
    transition: HealthTransition,
    duration_ms: int,
) -> SweepResult:
    status = _status_for(transition)
    failure = outcome.failure
    if status is SweepStatus.RECOVERED:
        message = "Probe succeeded; instance restored."
    elif status is SweepStatus.HEALTHY:
        message = "Probe succeeded; snapshot refreshed."
    elif status is SweepStatus.BANNED:
        message = f"Probe failed; instance banned ({transition.after.ban_reason})."
    else:
        message = f"Probe failed ({transition.after.failed_checks} consecutive)."
    return SweepResult(
        instance_id=int(entry["id"]),
        uri=str(entry["uri"]),
        platform=str(entry["platform"]),
        status=status,
        message=message,
        failed_checks=transition.after.failed_checks,
        probe_failure=str(failure) if failure is not None else None,
        duration_ms=duration_ms,
    )


def _error_result(
    entry: Mapping[str, Any],
    message: str,
    duration_ms: int,
    *,
    warning: str,
) -> SweepResult:
    return SweepResult(
        instance_id=int(entry["id"]),
        uri=str(entry["uri"]),
        platform=str(entry["platform"]),
        status=SweepStatus.ERROR,
        message=message,
        failed_checks=int(entry.get("failed_checks", 0)),
        duration_ms=duration_ms,
        warnings=(warning,),
    )


class ReconciliationEngine:
    """Coordinator that re-probes selected instances with bounded concurrency."""

    def __init__(
        self,
        store: DirectoryStore,
        writer: DirectoryWriter,
        api: InstanceApiClient,
        options: SweepOptions | None = None,
    ) -> None:
        """Store collaborators and execution options."""
        self._store = store
        self._writer = writer
        self._api = api
        self._options = options or SweepOptions()

    @property
    def options(self) -> SweepOptions:
        """Return the execution options associated with this engine."""
        return self._options

    def select(self) -> list[dict[str, Any]]:
        """Evaluate the selection once for this sweep."""
        return self._store.find_many(selection_filter(self._options.scope))

    async def run(self, *, metadata: Mapping[str, object] | None = None) -> SweepReport:
        """Reconcile every selected instance and build a sweep report."""
        start = time.perf_counter()
        selected = self.select()
        results = await self.reconcile(selected)
        run_metadata: dict[str, object] = {
            "duration_ms": _duration_ms(start),
            "scope": self._options.scope,
            "selected": len(selected),
            "concurrency": self._options.max_concurrency,
        }
        if metadata:
            run_metadata.update(metadata)
        return build_report(results, metadata=run_metadata)

    async def reconcile(self, entries: Sequence[Mapping[str, Any]]) -> list[SweepResult]:
        """Reconcile *entries*, returning results in the same order."""
        if not entries:
            return []
        semaphore = asyncio.Semaphore(max(1, self._options.max_concurrency))

        async def _bounded(entry: Mapping[str, Any]) -> SweepResult:
            async with semaphore:
                return await self._reconcile_one(entry)

        return list(await asyncio.gather(*(_bounded(entry) for entry in entries)))

    async def _reconcile_one(self, entry: Mapping[str, Any]) -> SweepResult:
        start = time.perf_counter()
        uri = str(entry["uri"])
        try:
            platform = PlatformFamily.parse(str(entry["platform"]))
            if platform is None:
                outcome = ProbeOutcome.failed(
                    uri,
                    str(entry["platform"]),
                    ProbeFailure("unsupported-platform", str(entry["platform"])),
                )
            else:
                outcome = await self._api.probe(uri, platform)
            transition = self._writer.update_health_and_snapshot(int(entry["id"]), outcome)
        except UpdateFailure as exc:
            LOGGER.warning("Sweep update failed uri=%s error=%s", uri, exc)
            return _error_result(entry, str(exc), _duration_ms(start), warning="update-failed")
        except Exception as exc:  # pragma: no cover - unexpected failure path
            LOGGER.exception("Sweep crashed for uri=%s", uri)
            return _error_result(
                entry,
                f"Reconciliation of '{uri}' raised an unexpected error: {exc}",
                _duration_ms(start),
                warning="unhandled-exception",
            )
        return _result_from_transition(entry, outcome, transition, _duration_ms(start))


__all__ = ["ReconciliationEngine", "selection_filter"]
