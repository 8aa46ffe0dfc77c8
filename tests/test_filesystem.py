"""Tests for site tree helpers and wp-config edits."""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from ironstack.errors import ContentRuntimeError, FilesystemError
from ironstack.sites.filesystem import (
    chown_tree,
    create_layout,
    mirror_tree,
    remove_path,
    set_maintenance,
    transient_file,
)
from ironstack.sites.models import DatabaseCredentials
from ironstack.sites.wpconfig import (
    OPTIMIZATIONS_MARKER,
    insert_optimizations,
    read_credentials,
    read_define,
    replace_define,
    rewrite_credentials,
)

WP_CONFIG = """<?php
define( 'DB_NAME', 'alpha_example_db' );
define('DB_USER', "alpha_example_user");
define( 'DB_PASSWORD', 'old-secret' );
define( 'DB_HOST', 'localhost' );

/* That's all, stop editing! Happy publishing. */
require_once ABSPATH . 'wp-settings.php';
"""


def test_create_layout_refuses_existing_directory(tmp_path: Path) -> None:
    """The site root must be new; subdirectories are created beneath it."""
    root = tmp_path / "www" / "alpha.example"

    create_layout(root)

    assert sorted(child.name for child in root.iterdir()) == ["backups", "logs", "public"]
    with pytest.raises(FileExistsError):
        create_layout(root)


def test_mirror_tree_syncs_and_respects_excludes(tmp_path: Path) -> None:
    """Mirroring copies changes, prunes extras and leaves excluded names alone."""
    source = tmp_path / "source"
    destination = tmp_path / "destination"
    (source / "wp-content" / "plugins").mkdir(parents=True)
    (source / "index.php").write_text("new index")
    (source / "wp-config.php").write_text("staging config")
    (source / "wp-content" / "plugins" / "cache.php").write_text("plugin")
    (source / "wp-content" / ".htaccess").write_text("staging rules")
    os.symlink("index.php", source / "alias.php")

    (destination / "wp-content").mkdir(parents=True)
    (destination / "index.php").write_text("old index")
    (destination / "wp-config.php").write_text("production config")
    (destination / "wp-content" / ".htaccess").write_text("production rules")
    (destination / "obsolete.txt").write_text("remove me")

    changes = mirror_tree(source, destination, exclude=("wp-config.php", ".htaccess"))

    assert changes > 0
    assert (destination / "index.php").read_text() == "new index"
    assert (destination / "wp-config.php").read_text() == "production config"
    assert (destination / "wp-content" / ".htaccess").read_text() == "production rules"
    assert (destination / "wp-content" / "plugins" / "cache.php").read_text() == "plugin"
    assert os.readlink(destination / "alias.php") == "index.php"
    assert not (destination / "obsolete.txt").exists()

    assert mirror_tree(source, destination, exclude=("wp-config.php", ".htaccess")) == 0


def test_remove_path_handles_each_kind(tmp_path: Path) -> None:
    """Files, symlinks and trees are removed; absent paths report False."""
    tree = tmp_path / "tree"
    (tree / "nested").mkdir(parents=True)
    link = tmp_path / "link"
    os.symlink(tree, link)

    assert remove_path(link) is True
    assert tree.is_dir()
    assert remove_path(tree) is True
    assert remove_path(tree) is False


def test_chown_tree_rejects_unknown_account(tmp_path: Path) -> None:
    """Unknown service accounts surface as filesystem errors."""
    with pytest.raises(FilesystemError):
        chown_tree(tmp_path, "no-such-user-ironstack", "no-such-group-ironstack")


def test_transient_file_is_private_and_removed(tmp_path: Path) -> None:
    """Scratch dumps are 0600 and always deleted, even on error."""
    with pytest.raises(RuntimeError):
        with transient_file(tmp_path / "run", prefix="dump-") as path:
            assert oct(path.stat().st_mode & 0o777) == "0o600"
            assert path.name.startswith("dump-")
            assert path.suffix == ".sql"
            raise RuntimeError("boom")

    assert not path.exists()


def test_set_maintenance_is_idempotent(tmp_path: Path) -> None:
    """Toggling maintenance reports whether anything changed."""
    assert set_maintenance(tmp_path, True) is True
    assert "$upgrading" in (tmp_path / ".maintenance").read_text()
    assert set_maintenance(tmp_path, True) is False
    assert set_maintenance(tmp_path, False) is True
    assert set_maintenance(tmp_path, False) is False


def test_replace_and_read_define() -> None:
    """Defines are read and rewritten regardless of quoting style."""
    assert read_define(WP_CONFIG, "DB_USER") == "alpha_example_user"
    updated = replace_define(WP_CONFIG, "DB_USER", "beta_example_user")

    assert read_define(updated, "DB_USER") == "beta_example_user"
    assert read_define(updated, "DB_NAME") == "alpha_example_db"
    assert read_define(WP_CONFIG, "WP_DEBUG") is None
    with pytest.raises(ContentRuntimeError):
        replace_define(WP_CONFIG, "WP_DEBUG", "true")


def test_rewrite_credentials_updates_config(tmp_path: Path) -> None:
    """Credentials in wp-config.php are replaced in place."""
    path = tmp_path / "wp-config.php"
    path.write_text(WP_CONFIG)

    rewrite_credentials(
        path, DatabaseCredentials(name="beta_example_db", user="beta_example_user", password="n3w!Pass")
    )

    assert read_credentials(path) == {
        "DB_NAME": "beta_example_db",
        "DB_USER": "beta_example_user",
        "DB_PASSWORD": "n3w!Pass",
        "DB_HOST": "localhost",
    }
    assert oct(path.stat().st_mode & 0o777) == "0o640"


def test_insert_optimizations_before_marker_once(tmp_path: Path) -> None:
    """The optimisation block lands above the stop-editing marker exactly once."""
    path = tmp_path / "wp-config.php"
    path.write_text(WP_CONFIG)
    block = f"{OPTIMIZATIONS_MARKER}\ndefine('WP_CACHE', true);"

    assert insert_optimizations(path, block) is True
    assert insert_optimizations(path, block) is False

    content = path.read_text()
    assert content.count(OPTIMIZATIONS_MARKER) == 1
    assert content.index(OPTIMIZATIONS_MARKER) < content.index("/* That's all, stop editing!")


def test_insert_optimizations_appends_without_marker(tmp_path: Path) -> None:
    """Configs lacking the marker get the block appended."""
    path = tmp_path / "wp-config.php"
    path.write_text("<?php\ndefine( 'DB_NAME', 'x' );")

    insert_optimizations(path, f"{OPTIMIZATIONS_MARKER}\n")

    assert path.read_text().endswith(f"\n\n{OPTIMIZATIONS_MARKER}\n")
