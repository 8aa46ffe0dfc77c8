"""File-based exclusive locks for lifecycle workflows.

Only one workflow may act on a domain at a time. Workflows acquire the global
lock first and then one lock per domain they touch, in sorted order, so two
workflows touching overlapping domains can never deadlock. Lock files persist
after release and keep the metadata of their last holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import ConflictError

_POLL_INTERVAL = 0.05


class LockTimeoutError(ConflictError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and the time spent waiting for it."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the cumulative wait across every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Hand out global and per-domain locks under *runtime_dir*."""

    GLOBAL_LOCK_NAME = "ironstack.lock"

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout (seconds)."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def site_lock_path(self, domain: str) -> Path:
        """Return the lock file path for *domain*."""
        safe = domain.replace("/", "-")
        return self.runtime_dir / "sites" / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide lock."""
        with self._acquire(self.runtime_dir / self.GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def site_lock(self, domain: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single *domain*."""
        with self._acquire(self.site_lock_path(domain), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_sites(
        self,
        domains: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by every per-domain lock."""
        ordered = sorted({domain for domain in domains if domain})
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for domain in ordered:
                handles.append(stack.enter_context(self.site_lock(domain, timeout=timeout)))
            yield LockBundle(handles=handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        holder = _read_holder(path)
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}"
                            + (f" (held by pid {holder})" if holder else "")
                            + "; another operation is in progress."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(UTC).isoformat(),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


def _read_holder(path: Path) -> int | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    pid = data.get("pid") if isinstance(data, dict) else None
    return pid if isinstance(pid, int) else None


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
