"""Health reconciliation infrastructure."""

from __future__ import annotations

from .engine import ReconciliationEngine, selection_filter
from .models import (
    SWEEP_MESSAGE,
    SWEEP_SCOPE_VALUES,
    HealthFields,
    HealthState,
    HealthTransition,
    SweepOptions,
    SweepReport,
    SweepResult,
    SweepScope,
    SweepStatus,
    SweepSummary,
    aggregate_results,
    build_report,
    next_health,
)
from .utils import serialize_report

__all__ = [
    "HealthFields",
    "HealthState",
    "HealthTransition",
    "ReconciliationEngine",
    "SWEEP_MESSAGE",
    "SWEEP_SCOPE_VALUES",
    "SweepOptions",
    "SweepReport",
    "SweepResult",
    "SweepScope",
    "SweepStatus",
    "SweepSummary",
    "aggregate_results",
    "build_report",
    "next_health",
    "selection_filter",
    "serialize_report",
]
