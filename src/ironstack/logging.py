"""Structured operation logging.

Every CLI command and lifecycle workflow runs inside an *operation scope*.
The scope collects the steps taken (with status and detail), the time spent
waiting for locks and the final result, then appends a single JSON record to
``operations.jsonl`` in the logs directory. Records are mirrored to the
standard library logger named ``ironstack`` so that embedding applications can
route them with their own handlers.

The logger never lets its own I/O failures break an operation: when the log
directory cannot be created or written it disables itself and carries on.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

_log = logging.getLogger("ironstack")

_STATUS_LEVELS = {
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationStep:
    """A single step recorded inside an operation scope."""

    name: str
    status: str
    detail: str | None
    at: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"name": self.name, "status": self.status, "at": self.at}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


@dataclass(slots=True)
class OperationScope:
    """Mutable record of an in-flight operation."""

    op_id: str
    command: str
    args: dict[str, object]
    target: dict[str, object]
    started_at: str
    steps: list[OperationStep] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a step outcome."""
        self.steps.append(OperationStep(name=name, status=status, detail=detail, at=_now_iso()))
        level = _STATUS_LEVELS.get(status, logging.DEBUG)
        _log.log(level, "%s: %s %s%s", self.command, name, status, f" ({detail})" if detail else "")

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for its locks."""
        self.lock_wait_ms = wait_ms

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            warnings=warnings,
            context=context,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            backups=backups,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            changed=changed,
            errors=errors if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitize(dict(context or {})),
        }
        if rc is not None:
            result["rc"] = rc
        self.result = result

    def to_dict(self, *, duration_ms: int) -> dict[str, object]:
        """Return the JSON record for this operation."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "started_at": self.started_at,
            "duration_ms": duration_ms,
            "lock_wait_ms": self.lock_wait_ms,
            "steps": [step.to_dict() for step in self.steps],
            "result": self.result,
        }


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / "operations.jsonl"
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _log.warning("Structured logging disabled; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSONL operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Open an operation scope and persist it on exit."""
        scope = OperationScope(
            op_id=f"{datetime.now(tz=UTC):%Y%m%dT%H%M%S}-{secrets.token_hex(4)}",
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
            started_at=_now_iso(),
        )
        started = time.monotonic()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__)
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            duration_ms = int((time.monotonic() - started) * 1000)
            self._emit(scope, duration_ms)

    def _emit(self, scope: OperationScope, duration_ms: int) -> None:
        record = scope.to_dict(duration_ms=duration_ms)
        result = scope.result or {}
        status = str(result.get("status", "success"))
        _log.log(
            _STATUS_LEVELS.get(status, logging.INFO),
            "%s %s: %s",
            scope.command,
            status,
            result.get("message", ""),
        )
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False) + "\n")
            os.chmod(self._operations_log_path, 0o640)
        except OSError as exc:
            _log.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["OperationScope", "OperationStep", "StructuredLogger"]
