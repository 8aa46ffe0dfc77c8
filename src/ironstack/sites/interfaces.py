"""Collaborator interfaces used by the lifecycle orchestrator.

Concrete implementations live in :mod:`ironstack.providers` and
:mod:`ironstack.backups`; tests substitute in-memory fakes.
"""
from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from .models import DatabaseCredentials

if TYPE_CHECKING:
    from ..backups import BackupArtifact


class DatabaseProvisioner(Protocol):
    """Create and drop per-site databases."""

    def create_database(self, name: str, user: str, password: str) -> DatabaseCredentials:
        """Create database and user with full privileges on it."""

    def drop_database(self, name: str, user: str) -> None:
        """Drop database and user, tolerating absence."""

    def database_exists(self, name: str) -> bool:
        """Return True when the database exists."""

    def user_exists(self, user: str) -> bool:
        """Return True when the database account exists."""


class ContentRuntime(Protocol):
    """The application CLI bound to one site root."""

    def download_core(self) -> None:
        """Install the application core files."""

    def create_config(self, credentials: DatabaseCredentials) -> None:
        """Generate the application configuration file."""

    def export_db(self, destination: Path) -> None:
        """Dump the site database to *destination*."""

    def import_db(self, source: Path) -> None:
        """Replace the site database with *source*."""

    def search_replace(self, old: str, new: str) -> None:
        """Rewrite stored content."""

    def flush_cache(self) -> None:
        """Flush the object cache."""


ContentRuntimeFactory = Callable[[Path], ContentRuntime]


class ConfigGenerator(Protocol):
    """Render proxy configuration for a domain."""

    def render(self, domain: str, cache_enabled: bool, *, document_root: Path | None = None) -> str:
        """Return the site block text."""


class ReverseProxyController(Protocol):
    """Persist and apply per-domain proxy configuration."""

    def config_path(self, domain: str) -> Path:
        """Return the configuration file path for *domain*."""

    def write_config(self, domain: str, content: str) -> bool:
        """Write the configuration for *domain*."""

    def remove_config(self, domain: str) -> bool:
        """Remove the configuration for *domain*."""

    def try_reload(self) -> str | None:
        """Reload the proxy, returning error text on failure."""


class BackupArchiver(Protocol):
    """Site backup, restore and removal."""

    def create(
        self, domain: str, site_root: Path, *, kind: str = "full", label: str | None = None
    ) -> BackupArtifact:
        """Archive a site, its database, or both depending on *kind*."""

    def create_full(self, domain: str, site_root: Path, *, label: str = "full") -> BackupArtifact:
        """Archive a site and its database."""

    def restore(self, artifact: BackupArtifact, site_root: Path) -> None:
        """Restore a site and its database from *artifact*."""

    def list_for_domain(self, domain: str) -> list[BackupArtifact]:
        """Return recorded artifacts for *domain*."""

    def get(self, backup_id: str) -> BackupArtifact:
        """Return the artifact recorded as *backup_id*."""

    def delete(self, backup_id: str) -> BackupArtifact:
        """Remove an artifact and its index entry."""


__all__ = [
    "BackupArchiver",
    "ConfigGenerator",
    "ContentRuntime",
    "ContentRuntimeFactory",
    "DatabaseProvisioner",
    "ReverseProxyController",
]
