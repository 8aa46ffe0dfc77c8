"""Archive helpers used by the backup workflows."""
from __future__ import annotations

import gzip
import hashlib
import os
import shutil
from collections.abc import Sequence
from pathlib import Path

from .errors import BackupError
from .process import run_command

ARCHIVE_EXTENSION = "tar.gz"
DUMP_EXTENSION = "sql.gz"


def _tar_bin() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise BackupError("The 'tar' command is required to create archives.")
    return tar_bin


def _restrict(path: Path) -> None:
    try:
        os.chmod(path, 0o640)
    except OSError:
        pass


def create_archive(
    source_dir: Path,
    archive_path: Path,
    *,
    timeout: float,
    excludes: Sequence[str] = (),
) -> None:
    """Create a gzip-compressed archive of *source_dir* at *archive_path*.

    Members are stored relative to the parent of *source_dir*, so the archive
    unpacks into a single top-level directory named after it. Each entry of
    *excludes* is passed to tar as an ``--exclude`` pattern.
    """
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    command = [_tar_bin(), "-czf", str(archive_path)]
    command.extend(f"--exclude={pattern}" for pattern in excludes)
    command.extend(["-C", str(source_dir.parent), source_dir.name])
    run_command(command, timeout=timeout, error_cls=BackupError, step="backup.create")
    _restrict(archive_path)


def extract_archive(archive_path: Path, destination: Path, *, timeout: float) -> None:
    """Unpack *archive_path* into *destination*."""
    destination.mkdir(parents=True, exist_ok=True)
    run_command(
        [_tar_bin(), "-xzf", str(archive_path), "-C", str(destination)],
        timeout=timeout,
        error_cls=BackupError,
        step="backup.restore",
    )


def compress_file(source: Path, destination: Path) -> None:
    """Write a gzip-compressed copy of *source* to *destination*."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    with source.open("rb") as raw, gzip.open(destination, "wb") as packed:
        shutil.copyfileobj(raw, packed)
    _restrict(destination)


def decompress_file(source: Path, destination: Path) -> None:
    """Expand the gzip file *source* into *destination*."""
    try:
        with gzip.open(source, "rb") as packed, destination.open("wb") as raw:
            shutil.copyfileobj(packed, raw)
    except (gzip.BadGzipFile, EOFError) as exc:
        raise BackupError(f"{source} is not a valid gzip file: {exc}", step="backup.restore") from exc


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(archive_path: Path) -> Path:
    """Return the ``<archive>.sha256`` sidecar path."""
    return archive_path.with_name(f"{archive_path.name}.sha256")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = checksum_path_for(archive_path)
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    _restrict(checksum_path)
    return checksum_path


__all__ = [
    "ARCHIVE_EXTENSION",
    "DUMP_EXTENSION",
    "checksum_path_for",
    "compress_file",
    "compute_checksum",
    "create_archive",
    "decompress_file",
    "extract_archive",
    "write_checksum_file",
]
