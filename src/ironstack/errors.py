"""Error taxonomy shared by the lifecycle workflows and providers.

Every error carries the name of the workflow step that raised it (when known)
so callers can report *where* a multi-step operation stopped. Saga execution
additionally attaches the outcome of compensations that failed while unwinding.
"""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class IronstackError(RuntimeError):
    """Base class for all ironstack failures."""

    exit_code: ExitCode = ExitCode.PROVIDER

    def __init__(self, message: str, *, step: str | None = None) -> None:
        """Capture *message* and the optional failing *step*."""
        super().__init__(message)
        self.message = message
        self.step = step
        self.compensation_failures: list[tuple[str, str]] = []

    def __str__(self) -> str:
        """Return the message prefixed with the failing step when known."""
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class ValidationError(IronstackError):
    """Malformed or duplicate input rejected before any side effect."""

    exit_code = ExitCode.VALIDATION


class NotFoundError(IronstackError):
    """The targeted domain has no corresponding site or alias."""

    exit_code = ExitCode.VALIDATION


class FilesystemError(IronstackError):
    """Layout creation, copy, sync or removal failed."""

    exit_code = ExitCode.ENVIRONMENT


class ProvisioningError(IronstackError):
    """The database engine rejected a statement or was unreachable."""


class ContentRuntimeError(IronstackError):
    """The application CLI exited with a non-zero status."""


class ProxyError(IronstackError):
    """Reverse-proxy configuration could not be written or applied."""


class BackupError(IronstackError):
    """Creating, verifying or restoring a backup archive failed."""


class ConflictError(IronstackError):
    """Another workflow already holds the lock for a domain."""

    exit_code = ExitCode.CONFLICT


class CommandTimeoutError(IronstackError, TimeoutError):
    """An external command did not finish within its time budget."""

    exit_code = ExitCode.TIMEOUT

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        timeout: float | None = None,
        step: str | None = None,
    ) -> None:
        """Record the hung *command* and the *timeout* that expired."""
        super().__init__(message, step=step)
        self.command = list(command)
        self.timeout = timeout


class PartialFailureError(IronstackError):
    """Some steps of an idempotent multi-step operation failed."""

    exit_code = ExitCode.PARTIAL

    def __init__(self, message: str, failures: Sequence[tuple[str, str]]) -> None:
        """Capture the ``(step, error)`` pairs that failed."""
        super().__init__(message)
        self.failures = list(failures)

    def __str__(self) -> str:
        """Return the message followed by each failing step."""
        details = "; ".join(f"{step}: {error}" for step, error in self.failures)
        return f"{self.message} ({details})" if details else self.message


__all__ = [
    "BackupError",
    "CommandTimeoutError",
    "ConflictError",
    "ContentRuntimeError",
    "FilesystemError",
    "IronstackError",
    "NotFoundError",
    "PartialFailureError",
    "ProvisioningError",
    "ProxyError",
    "ValidationError",
]
