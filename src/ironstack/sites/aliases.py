"""Domain aliases: extra domains served from an existing site's directory.

An alias is a symlink ``web_root/<alias> -> web_root/<site>`` plus its own
proxy configuration file. Entries under the web root are classified once, with
``lstat``, into :class:`SiteEntry` or :class:`AliasEntry`; the resulting
value is passed along instead of re-inspecting the path later.
"""
from __future__ import annotations

import os
import stat
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from ..errors import FilesystemError, NotFoundError, ValidationError
from ..locking import LockManager
from ..logging import OperationScope, StructuredLogger
from ..state import StateRegistry
from .interfaces import ConfigGenerator, ReverseProxyController
from .models import AliasEntry, DomainEntry, SiteEntry, utc_now_iso
from .naming import validate_domain
from .saga import Saga

SiteRemover = Callable[[SiteEntry, OperationScope], None]


@dataclass(slots=True)
class DomainAliasRegistry:
    """Create, resolve and remove domain aliases."""

    web_root: Path
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    config_generator: ConfigGenerator
    proxy: ReverseProxyController
    site_remover: SiteRemover | None = None
    lock_timeout: float | None = None

    # Resolution ----------------------------------------------------------
    def resolve(self, domain: str) -> DomainEntry | None:
        """Classify ``web_root/<domain>``; return ``None`` when nothing is there."""
        path = self.web_root / domain
        try:
            info = os.lstat(path)
        except FileNotFoundError:
            return None
        if stat.S_ISLNK(info.st_mode):
            return AliasEntry(domain=domain, path=path, target=self._link_target(path))
        if stat.S_ISDIR(info.st_mode):
            return SiteEntry(domain=domain, path=path)
        raise FilesystemError(f"{path} is neither a site directory nor an alias.")

    def require_site(self, domain: str) -> SiteEntry:
        """Return the :class:`SiteEntry` for *domain* or raise :class:`NotFoundError`."""
        entry = self.resolve(domain)
        if not isinstance(entry, SiteEntry):
            kind = "an alias" if isinstance(entry, AliasEntry) else "not a site"
            raise NotFoundError(f"{domain} is {kind}; a site is required.")
        return entry

    def aliases_of(self, site: str) -> list[str]:
        """Return every alias pointing at *site*, recorded or found on disk."""
        found = set(self.registry.aliases_for(site))
        if self.web_root.is_dir():
            for child in self.web_root.iterdir():
                if child.is_symlink() and self._link_target(child) == site:
                    found.add(child.name)
        return sorted(found)

    # Mutations -----------------------------------------------------------
    def add_alias(self, site: str, alias: str) -> AliasEntry:
        """Serve *alias* from the directory of *site*."""
        site_domain = validate_domain(site)
        alias_domain = validate_domain(alias)
        if site_domain == alias_domain:
            raise ValidationError("An alias must differ from its target site.")

        with self.logger.operation(
            "domain add",
            args={"site": site_domain, "alias": alias_domain},
            target={"kind": "alias", "name": alias_domain},
        ) as op:
            with self.locks.mutate_sites([site_domain, alias_domain], timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                site_entry = self.require_site(site_domain)
                if self.resolve(alias_domain) is not None or self.registry.get_alias(alias_domain):
                    raise ValidationError(f"Domain {alias_domain} already exists.")

                record = self.registry.get_site(site_domain) or {}
                cache_enabled = bool(record.get("cache_enabled", False))
                link = self.web_root / alias_domain

                with Saga(op) as saga:
                    saga.step(
                        "filesystem.symlink",
                        lambda: os.symlink(site_entry.path, link),
                        compensation=lambda: link.unlink(missing_ok=True),
                    )
                    saga.step(
                        "proxy.write_config",
                        lambda: self.proxy.write_config(
                            alias_domain, self.config_generator.render(alias_domain, cache_enabled)
                        ),
                        compensation=lambda: self.proxy.remove_config(alias_domain),
                        compensate_partial=True,
                    )
                    saga.step(
                        "registry.record",
                        lambda: self.registry.add_alias(
                            alias_domain, site_domain, created_at=utc_now_iso()
                        ),
                        compensation=lambda: self.registry.remove_alias(alias_domain),
                    )
                    saga.best_effort("proxy.reload", self.proxy.try_reload)

            entry = AliasEntry(domain=alias_domain, path=link, target=site_domain)
            op.success(
                f"Alias {alias_domain} now serves {site_domain}.",
                changed=1,
                warnings=saga.warnings,
                context={"alias": alias_domain, "target": site_domain},
            )
            return entry

    def remove_domain(self, domain: str) -> DomainEntry:
        """Remove *domain*: an alias is unlinked, a site is deleted."""
        normalized = validate_domain(domain)
        with self.logger.operation(
            "domain remove",
            args={"domain": normalized},
            target={"kind": "domain", "name": normalized},
        ) as op:
            touched = [normalized, *self.aliases_of(normalized)]
            with self.locks.mutate_sites(touched, timeout=self.lock_timeout) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                entry = self.resolve(normalized)
                if entry is None:
                    if self.registry.get_alias(normalized) is None:
                        raise NotFoundError(f"Domain {normalized} does not exist.")
                    entry = AliasEntry(domain=normalized, path=self.web_root / normalized, target="")
                if isinstance(entry, AliasEntry):
                    self.remove_alias_entry(entry, op)
                    op.success(f"Alias {normalized} removed.", changed=1)
                else:
                    if self.site_remover is None:
                        raise ValidationError(f"{normalized} is a site; use site delete.")
                    self.site_remover(entry, op)
                    op.success(f"Site {normalized} deleted.", changed=1)
            return entry

    def remove_alias_entry(self, entry: AliasEntry, op: OperationScope | None = None) -> None:
        """Unlink an alias and drop its proxy config and record.

        Never touches the target's content; the caller holds the locks.
        """
        def _unlink() -> None:
            if entry.path.is_symlink():
                entry.path.unlink()

        steps = [
            ("filesystem.unlink", _unlink),
            ("proxy.remove_config", lambda: self.proxy.remove_config(entry.domain)),
            ("registry.remove", lambda: self.registry.remove_alias(entry.domain)),
        ]
        for name, action in steps:
            action()
            if op is not None:
                op.add_step(name, detail=entry.domain)
        error = self.proxy.try_reload()
        if op is not None:
            op.add_step("proxy.reload", status="warning" if error else "success", detail=error)

    # ------------------------------------------------------------------
    def _link_target(self, path: Path) -> str:
        """Return the site a link points at, or ``""`` when it leaves the web root."""
        target = Path(os.readlink(path))
        if not target.is_absolute():
            target = path.parent / target
        target = Path(os.path.normpath(target.absolute()))
        if target.parent != Path(os.path.normpath(self.web_root.absolute())):
            return ""
        return target.name


__all__ = ["DomainAliasRegistry"]
