"""WP-CLI provider for the application runtime of a site."""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path

from ..errors import ContentRuntimeError
from ..process import run_command
from ..sites.models import DatabaseCredentials


@dataclass(slots=True)
class WordPressCLI:
    """Run WP-CLI commands against the document root of one site."""

    site_root: Path
    cli_bin: str = "wp"
    allow_root: bool = True
    command_timeout: float = 600.0

    @property
    def document_root(self) -> Path:
        """Return the directory WP-CLI operates on."""
        return self.site_root / "public"

    def run(
        self,
        *args: str,
        step: str = "runtime.run",
        input: str | None = None,  # noqa: A002 - mirrors subprocess.run
    ) -> subprocess.CompletedProcess[str]:
        """Run ``wp <args>`` for this site."""
        command = [self.cli_bin, f"--path={self.document_root}"]
        if self.allow_root:
            command.append("--allow-root")
        command.extend(args)
        return run_command(
            command,
            timeout=self.command_timeout,
            error_cls=ContentRuntimeError,
            step=step,
            input=input,
        )

    def download_core(self) -> None:
        """Download the application core into the document root."""
        self.run("core", "download", step="runtime.install")

    def create_config(self, credentials: DatabaseCredentials) -> None:
        """Generate ``wp-config.php`` for *credentials*."""
        self.run(
            "config",
            "create",
            f"--dbname={credentials.name}",
            f"--dbuser={credentials.user}",
            f"--dbhost={credentials.host}",
            "--prompt=dbpass",
            step="runtime.install",
            input=credentials.password + "\n",
        )

    def set_config(self, name: str, value: str, *, raw: bool = False) -> None:
        """Set a constant in ``wp-config.php``."""
        args = ["config", "set", name, value]
        if raw:
            args.append("--raw")
        self.run(*args, step="runtime.configure")

    def export_db(self, destination: Path) -> None:
        """Dump the site database into *destination*."""
        self.run("db", "export", str(destination), step="database.export")

    def import_db(self, source: Path) -> None:
        """Replace the site database with the dump at *source*."""
        self.run("db", "import", str(source), step="database.import")

    def search_replace(self, old: str, new: str) -> None:
        """Rewrite *old* to *new* across every table."""
        self.run("search-replace", old, new, "--all-tables", step="runtime.search_replace")

    def flush_cache(self) -> None:
        """Flush the object cache."""
        self.run("cache", "flush", step="runtime.flush_cache")


@dataclass(slots=True)
class WordPressCLIFactory:
    """Build :class:`WordPressCLI` instances bound to a site root."""

    cli_bin: str = "wp"
    allow_root: bool = True
    command_timeout: float = 600.0

    def __call__(self, site_root: Path) -> WordPressCLI:
        """Return a runtime bound to *site_root*."""
        return WordPressCLI(
            site_root=site_root,
            cli_bin=self.cli_bin,
            allow_root=self.allow_root,
            command_timeout=self.command_timeout,
        )


__all__ = ["WordPressCLI", "WordPressCLIFactory"]
