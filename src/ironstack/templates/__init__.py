"""Jinja2 template rendering with on-disk overrides.

Built-in templates ship inside this package. Operators may shadow any of them
by placing a file with the same relative name under the configured
``templates_dir``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, PackageLoader, StrictUndefined


@dataclass(slots=True)
class TemplateEngine:
    """Render built-in or overridden templates with strict variables."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates found in *override_dir*."""
        loaders: list[FileSystemLoader | PackageLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("ironstack", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        return cls(environment=environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self.environment.get_template(name)
        return template.render(**dict(context))

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when content changed."""
        content = self.render_to_string(name, context)
        return write_if_changed(destination, content, mode=mode)


def write_if_changed(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Atomically write *content* to *destination* unless it is already current."""
    if destination.exists():
        try:
            if destination.read_text(encoding="utf-8") == content:
                if (destination.stat().st_mode & 0o777) != mode:
                    os.chmod(destination, mode)
                return False
        except UnicodeDecodeError:
            pass
    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(content)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["TemplateEngine", "write_if_changed"]
