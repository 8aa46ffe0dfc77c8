"""Filesystem helpers for site trees."""
from __future__ import annotations

import filecmp
import grp
import os
import pwd
import shutil
import tempfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import FilesystemError

SITE_SUBDIRS = ("public", "logs", "backups")
MAINTENANCE_FILE = ".maintenance"
MAINTENANCE_CONTENT = "<?php $upgrading = time(); ?>\n"


def create_layout(path: Path) -> None:
    """Create the site directory and its standard subdirectories.

    *path* itself must not exist yet.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.mkdir(mode=0o755)
    for name in SITE_SUBDIRS:
        (path / name).mkdir(mode=0o755)


def copy_tree(source: Path, destination: Path) -> None:
    """Copy *source* to *destination*, preserving symlinks."""
    shutil.copytree(source, destination, symlinks=True)


def mirror_tree(source: Path, destination: Path, *, exclude: Iterable[str] = ()) -> int:
    """Make *destination* an exact copy of *source*.

    Entries whose name is in *exclude* are ignored on both sides: they are
    neither copied from *source* nor deleted from *destination*. Returns the
    number of entries copied or removed.
    """
    excluded = set(exclude)
    destination.mkdir(parents=True, exist_ok=True)
    changes = 0

    for entry in sorted(destination.iterdir()):
        if entry.name in excluded:
            continue
        counterpart = source / entry.name
        if not (counterpart.exists() or counterpart.is_symlink()):
            remove_path(entry)
            changes += 1
        elif counterpart.is_dir() != entry.is_dir() or counterpart.is_symlink() != entry.is_symlink():
            remove_path(entry)
            changes += 1

    for entry in sorted(source.iterdir()):
        if entry.name in excluded:
            continue
        target = destination / entry.name
        if entry.is_symlink():
            link = os.readlink(entry)
            if target.is_symlink() and os.readlink(target) == link:
                continue
            remove_path(target)
            os.symlink(link, target)
            changes += 1
        elif entry.is_dir():
            if not target.exists():
                target.mkdir()
                shutil.copystat(entry, target)
                changes += 1
            changes += mirror_tree(entry, target, exclude=excluded)
        else:
            if target.exists() and filecmp.cmp(entry, target, shallow=False):
                continue
            shutil.copy2(entry, target)
            changes += 1
    return changes


def remove_path(path: Path) -> bool:
    """Remove a file, symlink or directory tree; return ``False`` when absent."""
    if path.is_symlink() or path.is_file():
        path.unlink()
        return True
    if path.is_dir():
        shutil.rmtree(path)
        return True
    return False


def chown_tree(path: Path, user: str, group: str) -> None:
    """Recursively change ownership of *path* without following symlinks."""
    try:
        uid = pwd.getpwnam(user).pw_uid
        gid = grp.getgrnam(group).gr_gid
    except KeyError as exc:
        raise FilesystemError(f"Unknown service account {user}:{group}.") from exc
    os.chown(path, uid, gid, follow_symlinks=False)
    for root, dirs, files in os.walk(path):
        for name in (*dirs, *files):
            os.chown(os.path.join(root, name), uid, gid, follow_symlinks=False)


@contextmanager
def transient_file(directory: Path, *, prefix: str, suffix: str = ".sql") -> Iterator[Path]:
    """Yield a private (``0600``) scratch path that is always removed afterwards."""
    directory.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(dir=str(directory), prefix=prefix, suffix=suffix)
    os.close(fd)
    path = Path(name)
    os.chmod(path, 0o600)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)


def set_maintenance(public_dir: Path, enabled: bool) -> bool:
    """Create or remove the maintenance flag; return ``True`` when it changed."""
    flag = public_dir / MAINTENANCE_FILE
    if enabled:
        if flag.exists():
            return False
        flag.write_text(MAINTENANCE_CONTENT, encoding="utf-8")
        return True
    if not flag.exists():
        return False
    flag.unlink()
    return True


__all__ = [
    "MAINTENANCE_FILE",
    "chown_tree",
    "copy_tree",
    "create_layout",
    "mirror_tree",
    "remove_path",
    "set_maintenance",
    "transient_file",
]
