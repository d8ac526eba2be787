"""Structured operation logging for fedidir.

Every CLI command runs inside an :class:`OperationScope` obtained from
:meth:`StructuredLogger.operation`. When the scope closes, a single JSON line
describing the command (arguments, target, steps, and result) is appended to
``operations.jsonl`` in the configured logs directory.

Undeliverable side effects (verification messages that failed to send) are
recorded separately through :meth:`StructuredLogger.dead_letter` so an
operator can replay them; that channel never affects the outcome already
reported to the caller.

Logging must never break a command: when the directory cannot be created or a
write fails, the logger disables itself and later writes become no-ops.
"""
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"
DEAD_LETTER_LOG = "dead-letter.jsonl"


def _timestamp() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result for one logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self._logger = logger
        self.command = command
        self.op_id = uuid.uuid4().hex
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = _timestamp()
        self._start = time.perf_counter()

    def add_step(
        self,
        name: str,
        *,
        status: str = "success",
        detail: str | None = None,
    ) -> None:
        """Record an intermediate step of the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            rc=0,
            changed=changed,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            rc=0,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            warnings=warnings,
            errors=list(errors) if errors else [message],
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int | None = None,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message, "rc": rc}
        if changed is not None:
            result["changed"] = changed
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, Any]:
        """Return the JSON-safe record written to the operations log."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "started_at": self._started_at,
            "finished_at": _timestamp(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "steps": list(self.steps),
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSON-lines logger for operations and dead letters."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare *logs_dir*; disable logging when it is unusable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._dead_letter_path = self.logs_dir / DEAD_LETTER_LOG
        self._lock = threading.Lock()
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled; cannot create %s: %s", self.logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return ``True`` while log writes are being persisted."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and log it when the block exits."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                # typer.Exit/SystemExit after op.error() already carries a result.
                scope.error(f"Unhandled {type(exc).__name__}: {exc}", rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(self._operations_log_path, scope.to_record())

    def dead_letter(self, kind: str, payload: Mapping[str, object]) -> None:
        """Record an undeliverable side effect for later replay."""
        record = {
            "kind": kind,
            "recorded_at": _timestamp(),
            "payload": _sanitize(payload),
        }
        LOGGER.warning("Dead letter recorded kind=%s", kind)
        self._write(self._dead_letter_path, record)

    def _write(self, path: Path, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=False)
        with self._lock:
            try:
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as exc:
                LOGGER.warning("Structured logging disabled after write failure: %s", exc)
                self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
