"""Edits to ``wp-config.php``."""
from __future__ import annotations

import re
from pathlib import Path

from ..errors import ContentRuntimeError
from ..templates import write_if_changed
from .models import DatabaseCredentials

STOP_EDITING_MARKER = "/* That's all, stop editing!"
OPTIMIZATIONS_MARKER = "// ironstack performance optimizations"

_DEFINE = r"""define\(\s*(['"]){name}\1\s*,\s*(['"])(?P<value>.*?)\2\s*\)"""


def _pattern(name: str) -> re.Pattern[str]:
    return re.compile(_DEFINE.format(name=re.escape(name)))


def replace_define(content: str, name: str, value: str) -> str:
    """Replace the value of the first ``define('<name>', '...')`` statement."""
    pattern = _pattern(name)
    if pattern.search(content) is None:
        raise ContentRuntimeError(f"wp-config.php does not define {name}.", step="runtime.configure")
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return pattern.sub(lambda _match: f"define( '{name}', '{escaped}' )", content, count=1)


def read_define(content: str, name: str) -> str | None:
    """Return the value of the first ``define('<name>', '...')`` statement."""
    match = _pattern(name).search(content)
    return match.group("value") if match else None


def rewrite_credentials(path: Path, credentials: DatabaseCredentials) -> None:
    """Point the configuration at *credentials*."""
    content = path.read_text(encoding="utf-8")
    content = replace_define(content, "DB_NAME", credentials.name)
    content = replace_define(content, "DB_USER", credentials.user)
    content = replace_define(content, "DB_PASSWORD", credentials.password)
    write_if_changed(path, content, mode=0o640)


def read_credentials(path: Path) -> dict[str, str | None]:
    """Return the database settings stored in the configuration."""
    content = path.read_text(encoding="utf-8")
    return {
        name: read_define(content, name)
        for name in ("DB_NAME", "DB_USER", "DB_PASSWORD", "DB_HOST")
    }


def insert_optimizations(path: Path, block: str) -> bool:
    """Insert *block* before the stop-editing marker, or append it.

    Returns ``False`` when the block is already present.
    """
    content = path.read_text(encoding="utf-8")
    if OPTIMIZATIONS_MARKER in content:
        return False
    if not block.endswith("\n"):
        block += "\n"
    index = content.find(STOP_EDITING_MARKER)
    if index >= 0:
        content = content[:index] + block + "\n" + content[index:]
    else:
        if not content.endswith("\n"):
            content += "\n"
        content += "\n" + block
    return write_if_changed(path, content, mode=0o640)


__all__ = [
    "insert_optimizations",
    "read_credentials",
    "read_define",
    "replace_define",
    "rewrite_credentials",
]
