"""Site lifecycle workflows.

Each workflow validates its input before touching anything, holds the locks
of every domain it touches for its whole duration, records its steps in the
operation log and runs as a :class:`~ironstack.sites.saga.Saga` so that a
failure part-way through undoes the steps already taken.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from ..backups import BackupArtifact
from ..errors import IronstackError, NotFoundError, PartialFailureError, ValidationError
from ..locking import LockManager
from ..logging import OperationScope, StructuredLogger
from ..state import StateRegistry
from ..templates import TemplateEngine
from .aliases import DomainAliasRegistry
from .filesystem import (
    chown_tree,
    copy_tree,
    create_layout,
    mirror_tree,
    remove_path,
    set_maintenance,
    transient_file,
)
from .interfaces import (
    BackupArchiver,
    ConfigGenerator,
    ContentRuntime,
    ContentRuntimeFactory,
    DatabaseProvisioner,
    ReverseProxyController,
)
from .models import AliasEntry, DatabaseCredentials, DomainEntry, Site, SiteEntry, StagingLink, utc_now_iso
from .naming import derive_db_name, derive_db_user, generate_password, staging_domain, validate_domain
from .saga import Saga
from .wpconfig import insert_optimizations, rewrite_credentials

_log = logging.getLogger("ironstack.sites")

SYNC_EXCLUDES = ("wp-config.php", ".htaccess")
OPTIMIZATIONS_TEMPLATE = "wordpress/optimizations.php.j2"


@dataclass(frozen=True)
class PromotionResult:
    """Outcome of promoting a staging site."""

    production: str
    staging: str
    backup: BackupArtifact


@dataclass(slots=True)
class SiteLifecycleOrchestrator:
    """Create, clone, stage, promote and delete sites."""

    web_root: Path
    runtime_dir: Path
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    database: DatabaseProvisioner
    runtime_factory: ContentRuntimeFactory
    config_generator: ConfigGenerator
    proxy: ReverseProxyController
    backups: BackupArchiver
    templates: TemplateEngine
    service_user: str = "www-data"
    service_group: str = "www-data"
    lock_timeout: float | None = None
    redis_host: str = "127.0.0.1"
    redis_port: int = 6379
    redis_database: int = 0
    aliases: DomainAliasRegistry = field(init=False)

    def __post_init__(self) -> None:
        """Wire the alias registry so that removing a site domain deletes the site."""
        self.aliases = DomainAliasRegistry(
            web_root=self.web_root,
            registry=self.registry,
            locks=self.locks,
            logger=self.logger,
            config_generator=self.config_generator,
            proxy=self.proxy,
            site_remover=self._delete_site_entry,
            lock_timeout=self.lock_timeout,
        )

    # Queries -------------------------------------------------------------
    def get_site(self, domain: str) -> Site | None:
        """Return the registered site for *domain*."""
        record = self.registry.get_site(validate_domain(domain))
        return Site.from_record(record, web_root=self.web_root) if record else None

    def list_sites(self) -> list[Site]:
        """Return every registered site."""
        return [Site.from_record(record, web_root=self.web_root) for record in self.registry.list_sites()]

    # Create --------------------------------------------------------------
    def create(self, domain: str, *, cache_enabled: bool = False) -> Site:
        """Provision a new site for *domain*."""
        domain = validate_domain(domain)
        db_name = derive_db_name(domain)
        db_user = derive_db_user(domain)

        with self.logger.operation(
            "site create",
            args={"domain": domain, "cache_enabled": cache_enabled},
            target={"kind": "site", "name": domain},
        ) as op:
            with self.locks.mutate_sites([domain], timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                self._ensure_absent(domain, db_name)
                password = generate_password()
                site = Site(
                    domain=domain,
                    path=self.web_root / domain,
                    db_name=db_name,
                    db_user=db_user,
                    cache_enabled=cache_enabled,
                    db_password=password,
                )

                with Saga(op) as saga:
                    saga.step(
                        "filesystem.layout",
                        lambda: create_layout(site.path),
                        compensation=lambda: remove_path(site.path),
                        compensate_partial=True,
                    )
                    credentials = saga.step(
                        "database.provision",
                        lambda: self.database.create_database(db_name, db_user, password),
                        compensation=lambda: self.database.drop_database(db_name, db_user),
                    )
                    saga.step("runtime.install", lambda: self._install_runtime(site, credentials))
                    self._write_proxy_step(saga, domain, cache_enabled)
                    saga.best_effort("proxy.reload", self.proxy.try_reload)
                    saga.step("filesystem.ownership", lambda: self._chown(site.path))
                    saga.step(
                        "registry.record",
                        lambda: self.registry.upsert_site(site.to_record()),
                        compensation=lambda: self.registry.remove_site(domain),
                    )

            op.success(
                f"Site {domain} created.",
                changed=1,
                warnings=saga.warnings,
                context={"path": site.path, "db_name": db_name, "cache_enabled": cache_enabled},
            )
        return site

    # Clone / staging -------------------------------------------------------
    def clone(self, source: str, target: str, *, cache_enabled: bool = True) -> Site:
        """Copy the site at *source* to a new site at *target*."""
        source = validate_domain(source)
        target = validate_domain(target)
        if source == target:
            raise ValidationError("Clone source and target must differ.")
        with self.logger.operation(
            "site clone",
            args={"source": source, "target": target, "cache_enabled": cache_enabled},
            target={"kind": "site", "name": target},
        ) as op:
            with self.locks.mutate_sites([source, target], timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                site, warnings = self._clone_locked(source, target, cache_enabled, op)
            op.success(
                f"Site {source} cloned to {target}.",
                changed=1,
                warnings=warnings,
                context={"source": source, "target": target},
            )
        return site

    def create_staging(self, domain: str) -> Site:
        """Clone *domain* to ``staging.<domain>`` and record the link."""
        domain = validate_domain(domain)
        staging = validate_domain(staging_domain(domain))
        with self.logger.operation(
            "staging create",
            args={"domain": domain},
            target={"kind": "site", "name": staging},
        ) as op:
            with self.locks.mutate_sites([domain, staging], timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                existing = self.registry.get_staging_link(domain)
                if existing is not None:
                    raise ValidationError(
                        f"{domain} already has staging site {existing.get('staging_domain')}."
                    )
                site, warnings = self._clone_locked(domain, staging, True, op, link_production=domain)
            op.success(
                f"Staging site {staging} created for {domain}.",
                changed=1,
                warnings=warnings,
                context={"production": domain, "staging": staging},
            )
        return site

    def staging_link(self, domain: str) -> StagingLink | None:
        """Return the staging link recorded for production *domain*."""
        record = self.registry.get_staging_link(validate_domain(domain))
        return StagingLink.from_record(record) if record else None

    def _clone_locked(
        self,
        source: str,
        target: str,
        cache_enabled: bool,
        op: OperationScope,
        *,
        link_production: str | None = None,
    ) -> tuple[Site, list[str]]:
        source_entry = self.aliases.require_site(source)
        db_name = derive_db_name(target)
        db_user = derive_db_user(target)
        self._ensure_absent(target, db_name)
        password = generate_password()
        site = Site(
            domain=target,
            path=self.web_root / target,
            db_name=db_name,
            db_user=db_user,
            cache_enabled=cache_enabled,
            db_password=password,
        )
        source_runtime = self.runtime_factory(source_entry.path)
        target_runtime = self.runtime_factory(site.path)

        with Saga(op) as saga:
            saga.step(
                "filesystem.copy",
                lambda: copy_tree(source_entry.path, site.path),
                compensation=lambda: remove_path(site.path),
                compensate_partial=True,
            )
            credentials = saga.step(
                "database.provision",
                lambda: self.database.create_database(db_name, db_user, password),
                compensation=lambda: self.database.drop_database(db_name, db_user),
            )
            # Must precede the import: the copied config still names the source database.
            saga.step("runtime.configure", lambda: rewrite_credentials(site.wp_config, credentials))
            saga.step(
                "database.copy",
                lambda: self._copy_database(source_runtime, target_runtime, prefix=f"clone-{target}-"),
            )
            saga.step(
                "runtime.search_replace",
                lambda: self._rewrite_urls(target_runtime, source, target),
            )
            self._write_proxy_step(saga, target, cache_enabled)
            saga.step("filesystem.ownership", lambda: self._chown(site.path))
            saga.best_effort("proxy.reload", self.proxy.try_reload)
            saga.step(
                "registry.record",
                lambda: self.registry.upsert_site(site.to_record()),
                compensation=lambda: self.registry.remove_site(target),
            )
            if link_production is not None:
                saga.step(
                    "registry.link",
                    lambda: self.registry.record_staging_link(
                        target, link_production, created_at=utc_now_iso()
                    ),
                    compensation=lambda: self.registry.remove_staging_links(target),
                )
        return site, saga.warnings

    # Promote -------------------------------------------------------------
    def promote(self, domain: str, *, auto_rollback: bool = True) -> PromotionResult:
        """Replace production *domain* with its linked staging copy."""
        domain = validate_domain(domain)
        with self.logger.operation(
            "staging push",
            args={"domain": domain, "auto_rollback": auto_rollback},
            target={"kind": "site", "name": domain},
        ) as op:
            link = self.staging_link(domain)
            if link is None:
                raise NotFoundError(f"No staging site is linked to {domain}.")
            staging = link.staging_domain
            with self.locks.mutate_sites([domain, staging], timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                production_entry = self.aliases.require_site(domain)
                staging_entry = self.aliases.require_site(staging)
                production_runtime = self.runtime_factory(production_entry.path)
                staging_runtime = self.runtime_factory(staging_entry.path)
                production_public = production_entry.path / "public"

                with Saga(op, rollback=auto_rollback) as saga:
                    artifact = saga.step(
                        "backup.create",
                        lambda: self.backups.create_full(
                            domain, production_entry.path, label="pre-promote"
                        ),
                    )
                    with transient_file(self.runtime_dir, prefix=f"promote-{domain}-") as dump:
                        saga.step("database.export", lambda: staging_runtime.export_db(dump))
                        saga.step(
                            "filesystem.sync",
                            lambda: mirror_tree(
                                staging_entry.path / "public",
                                production_public,
                                exclude=SYNC_EXCLUDES,
                            ),
                            compensation=lambda: self.backups.restore(artifact, production_entry.path),
                            compensate_partial=True,
                        )
                        saga.step("database.import", lambda: production_runtime.import_db(dump))
                    saga.step(
                        "runtime.search_replace",
                        lambda: self._rewrite_urls(production_runtime, staging, domain),
                    )
                    saga.step("runtime.flush_cache", production_runtime.flush_cache)
                    saga.step("filesystem.ownership", lambda: self._chown(production_public))

            op.success(
                f"Staging {staging} promoted to {domain}.",
                changed=1,
                backups=[artifact.id],
                context={"staging": staging, "backup": artifact.path},
            )
        return PromotionResult(production=domain, staging=staging, backup=artifact)

    # Delete --------------------------------------------------------------
    def delete(self, domain: str) -> DomainEntry:
        """Delete the site (or alias) at *domain*."""
        domain = validate_domain(domain)
        with self.logger.operation(
            "site delete",
            args={"domain": domain},
            target={"kind": "site", "name": domain},
        ) as op:
            touched = [domain, *self.aliases.aliases_of(domain)]
            with self.locks.mutate_sites(touched, timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                entry = self.aliases.resolve(domain)
                if entry is None:
                    if self.registry.get_alias(domain) is not None:
                        entry = AliasEntry(domain=domain, path=self.web_root / domain, target="")
                    elif self.registry.get_site(domain) is not None or self._has_leftovers(domain):
                        entry = SiteEntry(domain=domain, path=self.web_root / domain)
                    else:
                        raise NotFoundError(f"Domain {domain} does not exist.")
                if isinstance(entry, AliasEntry):
                    self.aliases.remove_alias_entry(entry, op)
                    op.success(f"Alias {domain} removed.", changed=1)
                else:
                    self._delete_site_entry(entry, op)
                    op.success(f"Site {domain} deleted.", changed=1)
        return entry

    def _delete_site_entry(self, entry: SiteEntry, op: OperationScope) -> None:
        domain = entry.domain
        record = self.registry.get_site(domain) or {}
        db_name = str(record.get("db_name") or derive_db_name(domain))
        db_user = str(record.get("db_user") or derive_db_user(domain))
        failures: list[tuple[str, str]] = []

        def attempt(name: str, action: Callable[[], object]) -> None:
            try:
                action()
            except (IronstackError, OSError) as exc:
                failures.append((name, str(exc)))
                op.add_step(name, status="error", detail=str(exc))
                _log.error("Delete step %s for %s failed: %s", name, domain, exc)
            else:
                op.add_step(name, detail=domain)

        for alias in self.aliases.aliases_of(domain):
            alias_entry = AliasEntry(domain=alias, path=self.web_root / alias, target=domain)
            attempt(f"alias.remove[{alias}]", lambda e=alias_entry: self._remove_alias_quietly(e))
        attempt("proxy.remove_config", lambda: self.proxy.remove_config(domain))
        attempt("database.drop", lambda: self.database.drop_database(db_name, db_user))
        attempt("filesystem.remove", lambda: remove_path(entry.path))
        attempt("registry.remove", lambda: self._forget_site(domain))

        error = self.proxy.try_reload()
        op.add_step("proxy.reload", status="warning" if error else "success", detail=error)
        if failures:
            raise PartialFailureError(f"Delete of {domain} did not complete", failures)

    def _remove_alias_quietly(self, entry: AliasEntry) -> None:
        if entry.path.is_symlink():
            entry.path.unlink()
        self.proxy.remove_config(entry.domain)
        self.registry.remove_alias(entry.domain)

    def _forget_site(self, domain: str) -> None:
        self.registry.remove_site(domain)
        self.registry.remove_staging_links(domain)

    # Aliases -------------------------------------------------------------
    def add_alias(self, site: str, alias: str) -> AliasEntry:
        """Serve *alias* from the directory of *site*."""
        return self.aliases.add_alias(site, alias)

    def remove_domain(self, domain: str) -> DomainEntry:
        """Remove an alias, or delete the site when *domain* is one."""
        return self.aliases.remove_domain(domain)

    # Maintenance & backups -------------------------------------------------
    def set_maintenance(self, domain: str, enabled: bool) -> bool:
        """Switch maintenance mode for *domain*; return ``True`` when it changed."""
        domain = validate_domain(domain)
        with self.logger.operation(
            "site maintenance",
            args={"domain": domain, "enabled": enabled},
            target={"kind": "site", "name": domain},
        ) as op:
            with self.locks.mutate_sites([domain], timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                entry = self.aliases.require_site(domain)
                changed = set_maintenance(entry.path / "public", enabled)
            state = "enabled" if enabled else "disabled"
            op.success(f"Maintenance mode {state} for {domain}.", changed=int(changed))
        return changed

    def backup(self, domain: str, *, kind: str = "full", label: str | None = None) -> BackupArtifact:
        """Back up *domain*; *kind* is ``full``, ``database`` or ``files``."""
        domain = validate_domain(domain)
        with self.logger.operation(
            "backup create",
            args={"domain": domain, "kind": kind, "label": label},
            target={"kind": "site", "name": domain},
        ) as op:
            with self.locks.mutate_sites([domain], timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                entry = self.aliases.require_site(domain)
                artifact = self.backups.create(domain, entry.path, kind=kind, label=label)
                op.add_step("backup.create", detail=artifact.id)
            op.success(
                f"Backup {artifact.id} created.",
                changed=1,
                backups=[artifact.id],
                context={"path": artifact.path},
            )
        return artifact

    def restore(self, domain: str, artifact: BackupArtifact) -> None:
        """Restore *domain* from *artifact*."""
        domain = validate_domain(domain)
        if artifact.domain and artifact.domain != domain:
            raise ValidationError(f"Backup {artifact.id} belongs to {artifact.domain}, not {domain}.")
        with self.logger.operation(
            "backup restore",
            args={"domain": domain, "backup": artifact.id},
            target={"kind": "site", "name": domain},
        ) as op:
            with self.locks.mutate_sites([domain], timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                entry = self.aliases.resolve(domain)
                if isinstance(entry, AliasEntry):
                    raise ValidationError(f"{domain} is an alias; restore its site instead.")
                site_root = entry.path if entry is not None else self.web_root / domain
                self.backups.restore(artifact, site_root)
                op.add_step("backup.restore", detail=artifact.id)
                self._chown(site_root)
                op.add_step("filesystem.ownership", detail=str(site_root))
            op.success(f"Backup {artifact.id} restored into {domain}.", changed=1, backups=[artifact.id])

    def delete_backup(self, backup_id: str) -> BackupArtifact:
        """Remove a recorded backup and its archive."""
        with self.logger.operation(
            "backup delete",
            args={"backup": backup_id},
            target={"kind": "backup", "name": backup_id},
        ) as op:
            artifact = self.backups.get(backup_id)
            with self.locks.mutate_sites([artifact.domain], timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                self.backups.delete(artifact.id)
                op.add_step("backup.delete", detail=str(artifact.path))
            op.success(f"Backup {artifact.id} deleted.", changed=1, backups=[artifact.id])
        return artifact

    # Helpers -------------------------------------------------------------
    def _ensure_absent(self, domain: str, db_name: str) -> None:
        path = self.web_root / domain
        if path.exists() or path.is_symlink():
            raise ValidationError(f"Domain {domain} already exists at {path}.")
        if self.registry.get_site(domain) or self.registry.get_alias(domain):
            raise ValidationError(f"Domain {domain} is already registered.")
        if self.proxy.config_path(domain).exists():
            raise ValidationError(
                f"Proxy configuration {self.proxy.config_path(domain)} already exists."
            )
        if self.database.database_exists(db_name):
            raise ValidationError(f"Database {db_name} already exists.")
        if self.database.user_exists(derive_db_user(domain)):
            raise ValidationError(f"Database user {derive_db_user(domain)} already exists.")

    def _has_leftovers(self, domain: str) -> bool:
        # Pieces a failed rollback can leave behind without a directory or record.
        return (
            self.proxy.config_path(domain).exists()
            or self.database.database_exists(derive_db_name(domain))
            or self.database.user_exists(derive_db_user(domain))
        )

    def _install_runtime(self, site: Site, credentials: DatabaseCredentials) -> None:
        runtime = self.runtime_factory(site.path)
        runtime.download_core()
        runtime.create_config(credentials)
        block = self.templates.render_to_string(
            OPTIMIZATIONS_TEMPLATE,
            {
                "redis_host": self.redis_host,
                "redis_port": self.redis_port,
                "redis_database": self.redis_database,
            },
        )
        insert_optimizations(site.wp_config, block)

    def _write_proxy_step(self, saga: Saga, domain: str, cache_enabled: bool) -> None:
        def _remove() -> None:
            self.proxy.remove_config(domain)
            self.proxy.try_reload()

        saga.step(
            "proxy.write_config",
            lambda: self.proxy.write_config(domain, self.config_generator.render(domain, cache_enabled)),
            compensation=_remove,
            compensate_partial=True,
        )

    def _copy_database(self, source: ContentRuntime, target: ContentRuntime, *, prefix: str) -> None:
        with transient_file(self.runtime_dir, prefix=prefix) as dump:
            source.export_db(dump)
            target.import_db(dump)

    @staticmethod
    def _rewrite_urls(runtime: ContentRuntime, old: str, new: str) -> None:
        runtime.search_replace(f"https://{old}", f"https://{new}")
        runtime.search_replace(f"http://{old}", f"https://{new}")

    def _chown(self, path: Path) -> None:
        chown_tree(path, self.service_user, self.service_group)


__all__ = ["PromotionResult", "SiteLifecycleOrchestrator", "SYNC_EXCLUDES"]
