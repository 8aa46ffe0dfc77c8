"""Helpers for interacting with the ironstack state registry.

The registry directory (``/var/lib/ironstack/registry`` by default) stores YAML
artifacts describing what ironstack manages:

``sites.yml``
    One record per provisioned site (never the database password).
``aliases.yml``
    Alias domains and the site each one points at.
``staging.yml``
    Explicit staging -> production relationships.

Writes are atomic (temp file + ``os.replace``) so an interrupted workflow never
leaves a truncated registry file behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage ironstack state. Install with `pip install ironstack`."
    ) from exc

from ..errors import IronstackError
from ..exit_codes import ExitCode

SITES_FILE = "sites.yml"
ALIASES_FILE = "aliases.yml"
STAGING_FILE = "staging.yml"


class StateRegistryError(IronstackError):
    """Raised when state registry operations fail."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        try:
            self.ensure_root()
        except OSError as exc:
            raise StateRegistryError(f"Cannot create registry directory {self.root}: {exc}") from exc
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # Sites -------------------------------------------------------------
    def list_sites(self) -> list[dict[str, Any]]:
        """Return every site record."""
        return _entries(self.read(SITES_FILE, default={"sites": []}), "sites")

    def get_site(self, domain: str) -> dict[str, Any] | None:
        """Return the record for *domain* if registered."""
        normalized = _normalise_domain(domain)
        for entry in self.list_sites():
            if entry.get("domain") == normalized:
                return entry
        return None

    def upsert_site(self, entry: Mapping[str, object]) -> None:
        """Add or replace the record for ``entry['domain']``."""
        normalized = _normalise_site_entry(entry)
        sites = [site for site in self.list_sites() if site.get("domain") != normalized["domain"]]
        sites.append(normalized)
        self._write_list(SITES_FILE, "sites", sorted(sites, key=lambda item: item["domain"]))

    def remove_site(self, domain: str) -> bool:
        """Remove the record for *domain*; return ``False`` when absent."""
        normalized = _normalise_domain(domain)
        sites = self.list_sites()
        remaining = [site for site in sites if site.get("domain") != normalized]
        if len(remaining) == len(sites):
            return False
        self._write_list(SITES_FILE, "sites", remaining)
        return True

    # Aliases -----------------------------------------------------------
    def list_aliases(self) -> list[dict[str, Any]]:
        """Return every alias record."""
        return _entries(self.read(ALIASES_FILE, default={"aliases": []}), "aliases")

    def get_alias(self, alias: str) -> dict[str, Any] | None:
        """Return the record for *alias* if registered."""
        normalized = _normalise_domain(alias)
        for entry in self.list_aliases():
            if entry.get("alias") == normalized:
                return entry
        return None

    def aliases_for(self, target: str) -> list[str]:
        """Return the alias domains recorded for *target*."""
        normalized = _normalise_domain(target)
        return sorted(
            str(entry["alias"])
            for entry in self.list_aliases()
            if entry.get("target") == normalized and entry.get("alias")
        )

    def add_alias(self, alias: str, target: str, *, created_at: str) -> None:
        """Record *alias* as pointing at *target*."""
        alias_name = _normalise_domain(alias)
        aliases = [entry for entry in self.list_aliases() if entry.get("alias") != alias_name]
        aliases.append(
            {"alias": alias_name, "target": _normalise_domain(target), "created_at": created_at}
        )
        self._write_list(ALIASES_FILE, "aliases", sorted(aliases, key=lambda item: item["alias"]))

    def remove_alias(self, alias: str) -> bool:
        """Remove *alias*; return ``False`` when it was not recorded."""
        normalized = _normalise_domain(alias)
        aliases = self.list_aliases()
        remaining = [entry for entry in aliases if entry.get("alias") != normalized]
        if len(remaining) == len(aliases):
            return False
        self._write_list(ALIASES_FILE, "aliases", remaining)
        return True

    # Staging links -----------------------------------------------------
    def list_staging_links(self) -> list[dict[str, Any]]:
        """Return every staging relationship record."""
        return _entries(self.read(STAGING_FILE, default={"links": []}), "links")

    def get_staging_link(self, production: str) -> dict[str, Any] | None:
        """Return the staging link whose production domain is *production*."""
        normalized = _normalise_domain(production)
        for entry in self.list_staging_links():
            if entry.get("production_domain") == normalized:
                return entry
        return None

    def staging_domains(self) -> set[str]:
        """Return the set of domains recorded as staging copies."""
        return {
            str(entry["staging_domain"])
            for entry in self.list_staging_links()
            if entry.get("staging_domain")
        }

    def record_staging_link(self, staging: str, production: str, *, created_at: str) -> None:
        """Record *staging* as the staging copy of *production*."""
        production_name = _normalise_domain(production)
        links = [
            entry
            for entry in self.list_staging_links()
            if entry.get("production_domain") != production_name
        ]
        links.append(
            {
                "staging_domain": _normalise_domain(staging),
                "production_domain": production_name,
                "created_at": created_at,
            }
        )
        self._write_list(STAGING_FILE, "links", links)

    def remove_staging_links(self, domain: str) -> int:
        """Drop every link that mentions *domain* on either side."""
        normalized = _normalise_domain(domain)
        links = self.list_staging_links()
        remaining = [
            entry
            for entry in links
            if normalized not in (entry.get("staging_domain"), entry.get("production_domain"))
        ]
        removed = len(links) - len(remaining)
        if removed:
            self._write_list(STAGING_FILE, "links", remaining)
        return removed

    # ------------------------------------------------------------------
    def _write_list(self, name: str, key: str, entries: Iterable[Mapping[str, object]]) -> None:
        self.write(name, {key: [dict(entry) for entry in entries]})


def _entries(raw: object, key: str) -> list[dict[str, Any]]:
    if not isinstance(raw, Mapping):
        return []
    items = raw.get(key, [])
    if not isinstance(items, list):
        raise StateRegistryError(f"Registry key '{key}' must contain a list.")
    return [dict(item) for item in items if isinstance(item, Mapping)]


def _normalise_domain(value: str) -> str:
    normalized = str(value).strip().lower()
    if not normalized:
        raise StateRegistryError("Domain must be a non-empty string.")
    return normalized


def _normalise_site_entry(entry: Mapping[str, object]) -> dict[str, Any]:
    if "db_password" in entry:
        raise StateRegistryError("Site records must not carry database passwords.")
    domain_raw = entry.get("domain")
    if domain_raw is None:
        raise StateRegistryError("Site entry missing 'domain'.")
    normalized: dict[str, Any] = {"domain": _normalise_domain(str(domain_raw))}
    for key in ("path", "db_name", "db_user", "created_at"):
        value = entry.get(key)
        if value is not None:
            normalized[key] = str(value)
    normalized["cache_enabled"] = bool(entry.get("cache_enabled", False))
    return normalized


__all__ = ["StateRegistry", "StateRegistryError"]
