"""Caddy provider for per-domain site blocks."""
from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from ..errors import IronstackError, ProxyError
from ..process import run_command
from ..templates import TemplateEngine, write_if_changed

_log = logging.getLogger("ironstack.caddy")


@dataclass(slots=True)
class CaddyConfigGenerator:
    """Render a Caddy site block for a domain.

    Rendering is pure: the same ``(domain, cache_enabled)`` always yields the
    same text.
    """

    templates: TemplateEngine
    web_root: Path
    cache_backend: str = "127.0.0.1:6081"
    direct_backend: str = "127.0.0.1:9000"
    log_dir: Path = Path("/var/log/caddy")
    template_name: str = "caddy/site.conf.j2"

    def backend_for(self, cache_enabled: bool) -> str:
        """Return the upstream address used for the given cache mode."""
        return self.cache_backend if cache_enabled else self.direct_backend

    def render(self, domain: str, cache_enabled: bool, *, document_root: Path | None = None) -> str:
        """Return the site block text for *domain*."""
        root = document_root if document_root is not None else self.web_root / domain / "public"
        context = {
            "domain": domain,
            "document_root": str(root),
            "cache_enabled": cache_enabled,
            "backend": self.backend_for(cache_enabled),
            "access_log": str(self.log_dir / f"{domain}.log"),
        }
        return self.templates.render_to_string(self.template_name, context)


@dataclass(slots=True)
class CaddyController:
    """Write, remove and apply Caddy site configuration files."""

    sites_dir: Path = Path("/etc/caddy/sites")
    reload_command: tuple[str, ...] = ("systemctl", "reload", "caddy")
    status_command: tuple[str, ...] = ("systemctl", "is-active", "caddy")
    command_timeout: float = 60.0

    def config_path(self, domain: str) -> Path:
        """Return the configuration file path for *domain*."""
        safe = domain.replace("/", "-")
        return self.sites_dir / f"{safe}.conf"

    def config_exists(self, domain: str) -> bool:
        """Return True when *domain* has a configuration file."""
        return self.config_path(domain).exists()

    def write_config(self, domain: str, content: str) -> bool:
        """Write *content* for *domain*; return ``True`` when the file changed."""
        try:
            return write_if_changed(self.config_path(domain), content, mode=0o644)
        except OSError as exc:
            raise ProxyError(f"Failed to write proxy config for {domain}: {exc}") from exc

    def remove_config(self, domain: str) -> bool:
        """Remove the configuration of *domain*; return ``False`` when already absent."""
        path = self.config_path(domain)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise ProxyError(f"Failed to remove proxy config for {domain}: {exc}") from exc
        return True

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Ask Caddy to re-read its configuration."""
        return run_command(
            self.reload_command,
            timeout=self.command_timeout,
            error_cls=ProxyError,
            step="proxy.reload",
        )

    def try_reload(self) -> str | None:
        """Reload Caddy, returning the error text instead of raising."""
        try:
            self.reload()
        except IronstackError as exc:
            _log.warning("Caddy reload failed: %s", exc)
            return str(exc)
        return None

    def status(self) -> str:
        """Return the service state reported by the status command."""
        try:
            result = run_command(
                self.status_command,
                timeout=self.command_timeout,
                error_cls=ProxyError,
                step="proxy.status",
            )
        except ProxyError as exc:
            _log.debug("Caddy status probe failed: %s", exc)
            return "inactive"
        return result.stdout.strip() or "unknown"


__all__ = ["CaddyConfigGenerator", "CaddyController"]
