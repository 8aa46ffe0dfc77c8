"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import grp
import os
import pwd
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from ironstack.backups import BackupArchiver, BackupsRegistry
from ironstack.config import AppConfig, load_config
from ironstack.errors import ContentRuntimeError, ProvisioningError
from ironstack.locking import LockManager
from ironstack.logging import StructuredLogger
from ironstack.providers import CaddyConfigGenerator, CaddyController
from ironstack.sites.models import DatabaseCredentials
from ironstack.sites.orchestrator import SiteLifecycleOrchestrator
from ironstack.sites.wpconfig import read_credentials
from ironstack.state import StateRegistry
from ironstack.templates import TemplateEngine


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


WP_CONFIG_TEMPLATE = """<?php
define( 'DB_NAME', '{name}' );
define( 'DB_USER', '{user}' );
define( 'DB_PASSWORD', '{password}' );
define( 'DB_HOST', '{host}' );

$table_prefix = 'wp_';

/* That's all, stop editing! Happy publishing. */
require_once ABSPATH . 'wp-settings.php';
"""


@dataclass
class FakeWorld:
    """In-memory database server shared by fake providers.

    Each database holds a single text blob standing in for its tables.
    ``fail_on`` names provider methods that should raise on their next call.
    """

    databases: dict[str, str] = field(default_factory=dict)
    users: dict[str, str] = field(default_factory=dict)
    calls: list[tuple[str, str]] = field(default_factory=list)
    fail_on: set[str] = field(default_factory=set)

    def check(self, method: str, error_cls: type[Exception]) -> None:
        if method in self.fail_on:
            raise error_cls(f"{method} failed")


@dataclass
class FakeDatabase:
    """Stand-in for :class:`~ironstack.providers.MariaDBProvisioner`."""

    world: FakeWorld

    def create_database(self, name: str, user: str, password: str) -> DatabaseCredentials:
        self.world.calls.append(("database", f"create:{name}"))
        self.world.check("create_database", ProvisioningError)
        if name in self.world.databases:
            raise ProvisioningError(f"Can't create database '{name}'; database exists")
        if user in self.world.users:
            raise ProvisioningError(f"Operation CREATE USER failed for '{user}'")
        self.world.databases[name] = ""
        self.world.users[user] = password
        return DatabaseCredentials(name=name, user=user, password=password)

    def drop_database(self, name: str, user: str) -> None:
        self.world.calls.append(("database", f"drop:{name}"))
        self.world.check("drop_database", ProvisioningError)
        self.world.databases.pop(name, None)
        self.world.users.pop(user, None)

    def database_exists(self, name: str) -> bool:
        return name in self.world.databases

    def user_exists(self, user: str) -> bool:
        return user in self.world.users


@dataclass
class FakeRuntime:
    """Stand-in for :class:`~ironstack.providers.WordPressCLI`."""

    site_root: Path
    world: FakeWorld

    @property
    def wp_config(self) -> Path:
        return self.site_root / "public" / "wp-config.php"

    def _record(self, method: str) -> None:
        self.world.calls.append((self.site_root.name, method))
        self.world.check(method, ContentRuntimeError)

    def _database(self) -> str:
        name = read_credentials(self.wp_config)["DB_NAME"]
        assert name is not None
        return name

    def download_core(self) -> None:
        self._record("download_core")
        public = self.site_root / "public"
        (public / "wp-content" / "themes").mkdir(parents=True, exist_ok=True)
        (public / "index.php").write_text("<?php require 'wp-blog-header.php';\n")

    def create_config(self, credentials: DatabaseCredentials) -> None:
        self._record("create_config")
        self.wp_config.write_text(
            WP_CONFIG_TEMPLATE.format(
                name=credentials.name,
                user=credentials.user,
                password=credentials.password,
                host=credentials.host,
            )
        )
        self.world.databases[credentials.name] = f"siteurl=https://{self.site_root.name}\n"

    def export_db(self, destination: Path) -> None:
        self._record("export_db")
        destination.write_text(self.world.databases[self._database()])

    def import_db(self, source: Path) -> None:
        self._record("import_db")
        self.world.databases[self._database()] = source.read_text()

    def search_replace(self, old: str, new: str) -> None:
        self._record("search_replace")
        name = self._database()
        self.world.databases[name] = self.world.databases[name].replace(old, new)

    def flush_cache(self) -> None:
        self._record("flush_cache")


@dataclass
class Stack:
    """A fully wired orchestrator over temporary directories and fakes."""

    config: AppConfig
    world: FakeWorld
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    proxy: CaddyController
    archiver: BackupArchiver
    orchestrator: SiteLifecycleOrchestrator

    @property
    def web_root(self) -> Path:
        return self.config.web_root

    def runtime(self, domain: str) -> FakeRuntime:
        return FakeRuntime(self.web_root / domain, self.world)

    def database_of(self, domain: str) -> str:
        return self.world.databases[self.runtime(domain)._database()]


StackFactory = Callable[..., Stack]


@pytest.fixture
def stack_factory(tmp_path: Path) -> StackFactory:
    """Return a builder for :class:`Stack` instances rooted in ``tmp_path``."""

    def build(
        *,
        reload_command: tuple[str, ...] = ("true",),
        lock_timeout: float = 2.0,
    ) -> Stack:
        config = load_config(
            config_file=tmp_path / "ironstack.yml",
            env={},
            overrides={
                "web_root": str(tmp_path / "www"),
                "state_dir": str(tmp_path / "state"),
                "logs_dir": str(tmp_path / "logs"),
                "runtime_dir": str(tmp_path / "run"),
                "templates_dir": str(tmp_path / "templates"),
                "lock_timeout": lock_timeout,
                "command_timeout": 30,
                "service_user": pwd.getpwuid(os.getuid()).pw_name,
                "service_group": grp.getgrgid(os.getgid()).gr_name,
                "caddy": {
                    "sites_dir": str(tmp_path / "caddy" / "sites"),
                    "log_dir": str(tmp_path / "caddy" / "logs"),
                    "reload_command": list(reload_command),
                },
                "backups": {"root": str(tmp_path / "backups")},
            },
        )
        config.web_root.mkdir(parents=True, exist_ok=True)
        world = FakeWorld()
        registry = StateRegistry(config.registry_dir)
        locks = LockManager(config.runtime_dir, default_timeout=config.lock_timeout)
        logger = StructuredLogger(config.logs_dir)
        templates = TemplateEngine.with_overrides(config.templates_dir)

        def runtime_factory(site_root: Path) -> FakeRuntime:
            return FakeRuntime(site_root, world)

        proxy = CaddyController(
            sites_dir=config.caddy.sites_dir,
            reload_command=config.caddy.reload_command,
            command_timeout=10.0,
        )
        archiver = BackupArchiver(
            registry=BackupsRegistry(config.backups.root, config.backups.index),
            runtime_factory=runtime_factory,
            command_timeout=60.0,
        )
        orchestrator = SiteLifecycleOrchestrator(
            web_root=config.web_root,
            runtime_dir=config.runtime_dir,
            registry=registry,
            locks=locks,
            logger=logger,
            database=FakeDatabase(world),
            runtime_factory=runtime_factory,
            config_generator=CaddyConfigGenerator(
                templates=templates,
                web_root=config.web_root,
                cache_backend=config.backends.cache,
                direct_backend=config.backends.direct,
                log_dir=config.caddy.log_dir,
            ),
            proxy=proxy,
            backups=archiver,
            templates=templates,
            service_user=config.service_user,
            service_group=config.service_group,
            lock_timeout=config.lock_timeout,
        )
        return Stack(
            config=config,
            world=world,
            registry=registry,
            locks=locks,
            logger=logger,
            templates=templates,
            proxy=proxy,
            archiver=archiver,
            orchestrator=orchestrator,
        )

    return build


@pytest.fixture
def stack(stack_factory: StackFactory) -> Stack:
    """Return a default :class:`Stack`."""
    return stack_factory()
