"""Compensating-transaction execution for multi-step workflows.

A :class:`Saga` runs steps one at a time. Each completed step may register a
compensation; when a later step fails the registered compensations run in
reverse order before the original error propagates. Compensation failures do
not mask the original error: they are attached to it as
``compensation_failures`` and recorded in the operation log.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from types import TracebackType
from typing import TypeVar

from ..errors import FilesystemError, IronstackError
from ..logging import OperationScope

T = TypeVar("T")

_log = logging.getLogger("ironstack.saga")


class Saga:
    """Ordered steps with reverse-order compensation on failure."""

    def __init__(self, scope: OperationScope | None = None, *, rollback: bool = True) -> None:
        """Record steps on *scope*; with ``rollback=False`` compensations are skipped."""
        self._scope = scope
        self._rollback = rollback
        self._compensations: list[tuple[str, Callable[[], object]]] = []
        self.completed: list[str] = []
        self.warnings: list[str] = []

    def __enter__(self) -> Saga:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if exc is None:
            return False
        failures = self.unwind()
        if isinstance(exc, IronstackError):
            exc.compensation_failures.extend(failures)
        return False

    def step(
        self,
        name: str,
        action: Callable[[], T],
        *,
        compensation: Callable[[], object] | None = None,
        compensate_partial: bool = False,
    ) -> T:
        """Run *action* as step *name*.

        With ``compensate_partial`` the compensation is registered before the
        action runs, so a step that fails half-way is cleaned up too.
        """
        if compensation is not None and compensate_partial:
            self._compensations.append((name, compensation))
        try:
            result = action()
        except IronstackError as exc:
            if exc.step is None:
                exc.step = name
            self._record(name, "error", exc.message)
            raise
        except OSError as exc:
            self._record(name, "error", str(exc))
            raise FilesystemError(str(exc), step=name) from exc
        if compensation is not None and not compensate_partial:
            self._compensations.append((name, compensation))
        self.completed.append(name)
        self._record(name, "success")
        return result

    def best_effort(self, name: str, action: Callable[[], str | None]) -> bool:
        """Run *action*, which reports failure by returning error text."""
        error = action()
        if error:
            self.warnings.append(f"{name}: {error}")
            self._record(name, "warning", error)
            _log.warning("%s failed: %s", name, error)
            return False
        self.completed.append(name)
        self._record(name, "success")
        return True

    def unwind(self) -> list[tuple[str, str]]:
        """Run registered compensations in reverse order."""
        failures: list[tuple[str, str]] = []
        while self._compensations:
            name, compensation = self._compensations.pop()
            if not self._rollback:
                self._record(f"{name}.compensate", "skipped", "rollback disabled")
                continue
            try:
                compensation()
            except Exception as exc:  # noqa: BLE001 - recorded on the propagating error
                failures.append((name, str(exc)))
                self._record(f"{name}.compensate", "error", str(exc))
                _log.error("Compensation for %s failed: %s", name, exc)
            else:
                self._record(f"{name}.compensate", "success")
        return failures

    def _record(self, name: str, status: str, detail: str | None = None) -> None:
        if self._scope is not None:
            self._scope.add_step(name, status=status, detail=detail)


__all__ = ["Saga"]
