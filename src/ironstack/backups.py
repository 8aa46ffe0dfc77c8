"""Site backup archives and the JSON backup index.

A *full* backup captures a site's directory tree together with a dump of its
database (written as ``database.sql`` at the top of the site directory while
the archive is built). *Database* backups are a gzip-compressed dump and
*files* backups leave out ``wp-content/uploads``. Archives live under
``<backups.root>/<domain>/`` and are tracked in ``backups.json`` with their
size and SHA-256 checksum.
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .archive import (
    ARCHIVE_EXTENSION,
    DUMP_EXTENSION,
    checksum_path_for,
    compress_file,
    compute_checksum,
    create_archive,
    decompress_file,
    extract_archive,
    write_checksum_file,
)
from .errors import BackupError, IronstackError, NotFoundError, ValidationError
from .sites.interfaces import ContentRuntimeFactory

_log = logging.getLogger("ironstack.backups")

DUMP_NAME = "database.sql"
KIND_FULL = "full"
KIND_DATABASE = "database"
KIND_FILES = "files"
BACKUP_KINDS = (KIND_FULL, KIND_DATABASE, KIND_FILES)
UPLOADS_PATH = "public/wp-content/uploads"
UPLOADS_EXCLUDE = "wp-content/uploads"


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


@dataclass(frozen=True)
class BackupArtifact:
    """A backup archive recorded in the index."""

    id: str
    domain: str
    path: Path
    created_at: str
    size_bytes: int
    checksum: str
    label: str = KIND_FULL
    kind: str = KIND_FULL

    def to_dict(self) -> dict[str, object]:
        """Return the JSON-serialisable index entry."""
        return {
            "id": self.id,
            "domain": self.domain,
            "path": str(self.path),
            "created_at": self.created_at,
            "size_bytes": self.size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "label": self.label,
            "kind": self.kind,
        }

    @classmethod
    def from_dict(cls, entry: Mapping[str, object]) -> BackupArtifact:
        """Build an artifact from an index entry."""
        checksum = entry.get("checksum")
        checksum_value = checksum.get("value") if isinstance(checksum, Mapping) else checksum
        size = entry.get("size_bytes", 0)
        return cls(
            id=str(entry.get("id", "")),
            domain=str(entry.get("domain", "")),
            path=Path(str(entry.get("path", ""))),
            created_at=str(entry.get("created_at", "")),
            size_bytes=int(size) if isinstance(size, (int, str)) else 0,
            checksum=str(checksum_value or ""),
            label=str(entry.get("label", KIND_FULL)),
            kind=str(entry.get("kind", KIND_FULL)),
        )


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = Path(self.root).expanduser()
        self.index = Path(self.index).expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {"backups": []}
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        updated: list[object] = list(self.list_entries())
        updated.append(dict(entry))
        self.write({"backups": updated})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        backups = self.read().get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def entries_for_domain(self, domain: str) -> list[dict[str, object]]:
        """Return entries associated with *domain*."""
        normalized = _normalise_identifier(domain, label="Domain")
        return [
            entry
            for entry in self.list_entries()
            if str(entry.get("domain", "")).strip() == normalized
        ]

    def generate_identifier(self, domain: str) -> str:
        """Return a unique backup identifier for *domain*."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        safe_domain = "".join(
            char if char.isalnum() or char in {"-", "_", "."} else "-" for char in domain
        )
        return f"{timestamp}-{safe_domain}-{token}"

    def archive_directory(self, domain: str) -> Path:
        """Return the directory that should contain archives for *domain*."""
        return self.root / domain

    def remove(self, backup_id: str) -> bool:
        """Drop the entry for *backup_id*; return ``False`` when it was not indexed."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        entries = self.list_entries()
        remaining = [entry for entry in entries if str(entry.get("id", "")).strip() != normalized]
        if len(remaining) == len(entries):
            return False
        self.write({"backups": remaining})
        return True


@dataclass(slots=True)
class BackupArchiver:
    """Create, list, restore and delete site backups.

    Three kinds are supported. ``full`` archives the site tree together with a
    ``database.sql`` dump. ``database`` stores a gzip-compressed dump on its
    own. ``files`` archives the tree without the uploads directory.
    """

    registry: BackupsRegistry
    runtime_factory: ContentRuntimeFactory
    command_timeout: float = 600.0

    def create(
        self,
        domain: str,
        site_root: Path,
        *,
        kind: str = KIND_FULL,
        label: str | None = None,
    ) -> BackupArtifact:
        """Create a backup of *kind* for the site at *site_root*."""
        if kind not in BACKUP_KINDS:
            raise ValidationError(
                f"Unknown backup type {kind!r}; expected one of {', '.join(BACKUP_KINDS)}."
            )
        if not site_root.is_dir():
            raise NotFoundError(f"Site directory {site_root} does not exist.", step="backup.create")
        label = label or kind
        self.registry.ensure_root()
        backup_id = self.registry.generate_identifier(domain)
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d_%H%M%S")
        extension = DUMP_EXTENSION if kind == KIND_DATABASE else ARCHIVE_EXTENSION
        archive_path = self.registry.archive_directory(domain) / (
            f"{domain}_{label}_{timestamp}_{backup_id.rsplit('-', 1)[-1]}.{extension}"
        )
        try:
            if kind == KIND_DATABASE:
                self._write_database_dump(site_root, archive_path)
            elif kind == KIND_FILES:
                create_archive(
                    site_root, archive_path, timeout=self.command_timeout, excludes=(UPLOADS_EXCLUDE,)
                )
            else:
                self._write_full_archive(site_root, archive_path)
        except BackupError:
            archive_path.unlink(missing_ok=True)
            raise
        except (IronstackError, OSError) as exc:
            archive_path.unlink(missing_ok=True)
            raise BackupError(f"Backup of {domain} failed: {exc}", step="backup.create") from exc

        checksum = compute_checksum(archive_path)
        write_checksum_file(archive_path, checksum)
        artifact = BackupArtifact(
            id=backup_id,
            domain=domain,
            path=archive_path,
            created_at=_now_iso(),
            size_bytes=archive_path.stat().st_size,
            checksum=checksum,
            label=label,
            kind=kind,
        )
        self.registry.append(artifact.to_dict())
        _log.info("Created %s backup %s for %s", kind, backup_id, domain)
        return artifact

    def create_full(self, domain: str, site_root: Path, *, label: str = KIND_FULL) -> BackupArtifact:
        """Archive *site_root* plus a database dump."""
        return self.create(domain, site_root, kind=KIND_FULL, label=label)

    def create_database_only(self, domain: str, site_root: Path, *, label: str | None = None) -> BackupArtifact:
        """Store a compressed dump of the site database."""
        return self.create(domain, site_root, kind=KIND_DATABASE, label=label)

    def create_files_only(self, domain: str, site_root: Path, *, label: str | None = None) -> BackupArtifact:
        """Archive the site tree without its uploads directory."""
        return self.create(domain, site_root, kind=KIND_FILES, label=label)

    def list_for_domain(self, domain: str) -> list[BackupArtifact]:
        """Return the artifacts recorded for *domain*, oldest first."""
        artifacts = [BackupArtifact.from_dict(entry) for entry in self.registry.entries_for_domain(domain)]
        return sorted(artifacts, key=lambda artifact: artifact.created_at)

    def get(self, backup_id: str) -> BackupArtifact:
        """Return the artifact recorded as *backup_id*."""
        entry = self.registry.find_by_id(backup_id)
        if entry is None:
            raise NotFoundError(f"Backup '{backup_id}' not found in index.")
        return BackupArtifact.from_dict(entry)

    def delete(self, backup_id: str) -> BackupArtifact:
        """Remove the archive, its checksum file and the index entry for *backup_id*."""
        artifact = self.get(backup_id)
        try:
            artifact.path.unlink(missing_ok=True)
            checksum_path_for(artifact.path).unlink(missing_ok=True)
        except OSError as exc:
            raise BackupError(f"Failed to delete {artifact.path}: {exc}", step="backup.delete") from exc
        self.registry.remove(artifact.id)
        _log.info("Deleted backup %s for %s", artifact.id, artifact.domain)
        return artifact

    def restore(self, artifact: BackupArtifact, site_root: Path) -> None:
        """Restore *artifact* into *site_root*.

        A full backup replaces the tree and the database, a files backup
        replaces the tree while keeping the current uploads, and a database
        backup only imports the dump.
        """
        if not artifact.path.exists():
            raise BackupError(f"Backup archive {artifact.path} is missing.", step="backup.restore")
        if artifact.checksum and compute_checksum(artifact.path) != artifact.checksum:
            raise BackupError(
                f"Checksum mismatch for backup archive {artifact.path}.", step="backup.restore"
            )

        if artifact.kind == KIND_DATABASE:
            if not site_root.is_dir():
                raise NotFoundError(
                    f"Site directory {site_root} does not exist.", step="backup.restore"
                )
            handle, name = tempfile.mkstemp(dir=str(site_root), prefix=".restore-", suffix=".sql")
            os.close(handle)
            dump = Path(name)
            try:
                decompress_file(artifact.path, dump)
                self._import_dump(artifact, site_root, dump)
            finally:
                dump.unlink(missing_ok=True)
        elif artifact.kind == KIND_FILES:
            self._replace_tree(artifact, site_root, keep=(UPLOADS_PATH,))
        else:
            self._replace_tree(artifact, site_root)
            dump = site_root / DUMP_NAME
            if not dump.exists():
                raise BackupError(
                    f"Backup archive {artifact.path} does not contain a database dump.",
                    step="backup.restore",
                )
            try:
                self._import_dump(artifact, site_root, dump)
            finally:
                dump.unlink(missing_ok=True)
        _log.info("Restored %s backup %s into %s", artifact.kind, artifact.id, site_root)

    # ------------------------------------------------------------------
    def _write_full_archive(self, site_root: Path, archive_path: Path) -> None:
        dump = site_root / DUMP_NAME
        try:
            self.runtime_factory(site_root).export_db(dump)
            if dump.exists():
                os.chmod(dump, 0o600)
            create_archive(site_root, archive_path, timeout=self.command_timeout)
        finally:
            dump.unlink(missing_ok=True)

    def _write_database_dump(self, site_root: Path, archive_path: Path) -> None:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        handle, name = tempfile.mkstemp(dir=str(archive_path.parent), prefix=".dump-", suffix=".sql")
        os.close(handle)
        dump = Path(name)
        try:
            os.chmod(dump, 0o600)
            self.runtime_factory(site_root).export_db(dump)
            compress_file(dump, archive_path)
        finally:
            dump.unlink(missing_ok=True)

    def _import_dump(self, artifact: BackupArtifact, site_root: Path, dump: Path) -> None:
        try:
            self.runtime_factory(site_root).import_db(dump)
        except IronstackError as exc:
            raise BackupError(
                f"Failed to restore database from {artifact.path}: {exc}", step="backup.restore"
            ) from exc

    def _replace_tree(
        self,
        artifact: BackupArtifact,
        site_root: Path,
        *,
        keep: tuple[str, ...] = (),
    ) -> None:
        """Swap *site_root* for the archived tree, carrying *keep* paths across."""
        site_root.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(dir=str(site_root.parent), prefix=f".{site_root.name}.restore-"))
        previous = site_root.with_name(f".{site_root.name}.previous-{secrets.token_hex(3)}")
        try:
            extract_archive(artifact.path, staging, timeout=self.command_timeout)
            extracted = staging / site_root.name
            if not extracted.is_dir():
                members = [child for child in staging.iterdir() if child.is_dir()]
                if len(members) != 1:
                    raise BackupError(
                        f"Backup archive {artifact.path} has an unexpected layout.",
                        step="backup.restore",
                    )
                extracted = members[0]
            if site_root.exists():
                os.replace(site_root, previous)
            os.replace(extracted, site_root)
            for relative in keep:
                carried = previous / relative
                if carried.exists() and not (site_root / relative).exists():
                    (site_root / relative).parent.mkdir(parents=True, exist_ok=True)
                    os.replace(carried, site_root / relative)
        except OSError as exc:
            if previous.exists() and not site_root.exists():
                os.replace(previous, site_root)
            raise BackupError(f"Failed to restore files from {artifact.path}: {exc}", step="backup.restore") from exc
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        shutil.rmtree(previous, ignore_errors=True)


__all__ = [
    "BACKUP_KINDS",
    "BackupArchiver",
    "BackupArtifact",
    "BackupError",
    "BackupRegistryError",
    "BackupsRegistry",
]
