"""Structured operation logging for certcompanion.

Every CLI command and every reconciliation cycle is recorded as a single JSON
object appended to ``<logs_dir>/operations.jsonl``. Records carry the
operation name, its arguments, the ordered list of steps performed and a
final result block::

    {"op_id": "...", "command": "reconcile cycle", "steps": [...],
     "result": {"status": "success", "message": "...", "changed": 2}}

The logger never raises for I/O problems. When the log directory cannot be
created, or a write fails, the logger disables itself so that certificate
management keeps running on read-only or full filesystems.
"""
from __future__ import annotations

import json
import logging
import os
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result for one logged operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope for *command*."""
        self.op_id = uuid.uuid4().hex
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started = time.monotonic()

    @property
    def finished(self) -> bool:
        """Return True once a result has been recorded."""
        return self.result is not None

    def add_step(self, name: str, *, status: str = "success", detail: object = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._finish("success", message, changed=changed, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            warnings=list(warnings or [message]),
            errors=list(errors or []),
            changed=changed,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._finish(
            "error",
            message,
            errors=list(errors or [message]),
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        warnings: list[str] | None = None,
        errors: list[str] | None = None,
        changed: int | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {"status": status, "message": message}
        if warnings:
            result["warnings"] = warnings
        if errors:
            result["errors"] = errors
        if changed is not None:
            result["changed"] = changed
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(dict(context))
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-ready record for this scope."""
        return {
            "timestamp": datetime.now(UTC).isoformat(),
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "duration_ms": int((time.monotonic() - self._started) * 1000),
            "steps": self.steps,
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to a JSON-lines log file."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging if it is unusable."""
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Operation log disabled; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if not scope.finished:
                scope.error(f"{type(exc).__name__}: {exc}")
            raise
        finally:
            if not scope.finished:
                scope.success("Operation complete.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=False)
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
            os.chmod(self._operations_log_path, 0o640)
        except OSError as exc:
            LOGGER.warning("Operation log disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
