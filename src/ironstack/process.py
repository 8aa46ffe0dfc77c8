"""Subprocess execution with bounded timeouts."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path

from .errors import CommandTimeoutError, IronstackError

_log = logging.getLogger("ironstack.process")


def run_command(
    argv: Sequence[str],
    *,
    timeout: float,
    error_cls: type[IronstackError] = IronstackError,
    step: str | None = None,
    input: str | None = None,  # noqa: A002 - mirrors subprocess.run
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *argv* and return the completed process.

    A non-zero exit status raises *error_cls* carrying the command's stderr. A
    command still running after *timeout* seconds is killed and raises
    :class:`CommandTimeoutError` so callers can tell a hang apart from a failure.
    A missing executable is reported through *error_cls* as well.
    """
    command = [str(part) for part in argv]
    merged_env: dict[str, str] | None = None
    if env is not None:
        merged_env = os.environ.copy()
        merged_env.update(env)
    _log.debug("Running %s", " ".join(command))
    try:
        result = subprocess.run(  # noqa: S603 - controlled command execution
            command,
            capture_output=True,
            text=True,
            input=input,
            env=merged_env,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(
            f"{command[0]} did not finish within {timeout:g}s",
            command=command,
            timeout=timeout,
            step=step,
        ) from exc
    except FileNotFoundError as exc:
        raise error_cls(f"Executable not found: {command[0]}", step=step) from exc
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "no output").strip()
        raise error_cls(
            f"{' '.join(command[:3])} failed (exit {result.returncode}): {message}",
            step=step,
        )
    return result


__all__ = ["run_command"]
