"""Utility helpers for serialising sweep reports."""
from __future__ import annotations

from collections.abc import Mapping, Sequence

from .models import SweepReport, SweepStatus


def _sanitize_payload(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize_payload(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize_payload(item) for item in value]
    return str(value)


def serialize_report(report: SweepReport) -> dict[str, object]:
    """Convert a sweep report into a JSON-serialisable mapping."""
    totals = {
        status.value: int(report.summary.totals.get(status, 0))
        for status in SweepStatus
    }
    summary_payload = {
        "message": report.summary.message,
        "selected": report.summary.selected,
        "totals": totals,
    }
    results_payload: list[dict[str, object]] = []
    for result in report.results:
        result_payload: dict[str, object] = {
            "id": result.instance_id,
            "uri": result.uri,
            "platform": result.platform,
            "status": result.status.value,
            "message": result.message,
            "failed_checks": result.failed_checks,
        }
        if result.probe_failure:
            result_payload["probe_failure"] = result.probe_failure
        if result.duration_ms is not None:
            result_payload["duration_ms"] = result.duration_ms
        if result.warnings:
            result_payload["warnings"] = list(result.warnings)
        results_payload.append(result_payload)

    metadata_payload = _sanitize_payload(report.metadata) if report.metadata else {}
    return {
        "message": report.summary.message,
        "summary": summary_payload,
        "results": results_payload,
        "metadata": metadata_payload,
    }
