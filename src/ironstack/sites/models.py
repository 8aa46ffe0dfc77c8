"""Value types shared by the site lifecycle workflows."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class DatabaseCredentials:
    """Database name, user and password issued to a single site."""

    name: str
    user: str
    password: str = field(repr=False)
    host: str = "localhost"


@dataclass(frozen=True)
class Site:
    """A provisioned site.

    ``path`` is always ``web_root / domain``. The password is carried only while
    a workflow runs; it is written to ``wp-config.php`` and never to the
    registry.
    """

    domain: str
    path: Path
    db_name: str
    db_user: str
    cache_enabled: bool = False
    created_at: str = field(default_factory=utc_now_iso)
    db_password: str | None = field(default=None, repr=False)

    @property
    def public_dir(self) -> Path:
        """Return the document root served by the proxy."""
        return self.path / "public"

    @property
    def logs_dir(self) -> Path:
        """Return the per-site log directory."""
        return self.path / "logs"

    @property
    def backups_dir(self) -> Path:
        """Return the per-site scratch backup directory."""
        return self.path / "backups"

    @property
    def wp_config(self) -> Path:
        """Return the path of the application configuration file."""
        return self.public_dir / "wp-config.php"

    def to_record(self) -> dict[str, object]:
        """Return the registry representation (without the password)."""
        return {
            "domain": self.domain,
            "path": str(self.path),
            "db_name": self.db_name,
            "db_user": self.db_user,
            "cache_enabled": self.cache_enabled,
            "created_at": self.created_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, object], *, web_root: Path) -> Site:
        """Build a :class:`Site` from a registry record."""
        domain = str(record["domain"])
        path_value = record.get("path")
        return cls(
            domain=domain,
            path=Path(str(path_value)) if path_value else web_root / domain,
            db_name=str(record.get("db_name", "")),
            db_user=str(record.get("db_user", "")),
            cache_enabled=bool(record.get("cache_enabled", False)),
            created_at=str(record.get("created_at") or utc_now_iso()),
        )


@dataclass(frozen=True)
class SiteEntry:
    """A domain backed by a real site directory."""

    domain: str
    path: Path


@dataclass(frozen=True)
class AliasEntry:
    """A domain that is a symlink to another site's directory."""

    domain: str
    path: Path
    target: str


DomainEntry = SiteEntry | AliasEntry


@dataclass(frozen=True)
class StagingLink:
    """Explicit record that ``staging_domain`` is a copy of ``production_domain``."""

    staging_domain: str
    production_domain: str
    created_at: str = field(default_factory=utc_now_iso)

    @classmethod
    def from_record(cls, record: dict[str, object]) -> StagingLink:
        """Build a link from its registry record."""
        return cls(
            staging_domain=str(record["staging_domain"]),
            production_domain=str(record["production_domain"]),
            created_at=str(record.get("created_at") or utc_now_iso()),
        )


@dataclass(frozen=True)
class DomainInfo:
    """Diagnostic view of one entry under the web root."""

    domain: str
    has_application: bool
    has_valid_tls: bool | None
    is_staging: bool
    is_alias: bool
    alias_target: str | None = None
    tls_status: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "has_application": self.has_application,
            "has_valid_tls": self.has_valid_tls,
            "is_staging": self.is_staging,
            "is_alias": self.is_alias,
            "alias_target": self.alias_target,
            "tls_status": self.tls_status,
        }


__all__ = [
    "AliasEntry",
    "DatabaseCredentials",
    "DomainEntry",
    "DomainInfo",
    "Site",
    "SiteEntry",
    "StagingLink",
    "utc_now_iso",
]
