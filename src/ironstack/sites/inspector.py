"""Diagnostic listing of the domains under the web root."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..state import StateRegistry
from ..tls import CertificateStatus, TLSProbe
from .aliases import DomainAliasRegistry
from .models import AliasEntry, DomainInfo
from .naming import STAGING_PREFIX


@dataclass(slots=True)
class DomainInspector:
    """Classify entries under the web root from observable state.

    The result is diagnostic: it reflects what is on disk (and optionally on
    the network), with the registry consulted only to recognise staging copies.
    """

    web_root: Path
    registry: StateRegistry
    aliases: DomainAliasRegistry
    probe: TLSProbe | None = None

    def list_domains(self, *, check_tls: bool = False) -> list[DomainInfo]:
        """Return one :class:`DomainInfo` per directory or alias under the web root."""
        if not self.web_root.is_dir():
            return []
        staging = self.registry.staging_domains()
        tracked = {record["domain"] for record in self.registry.list_sites() if "domain" in record}
        results: list[DomainInfo] = []
        for child in sorted(self.web_root.iterdir()):
            if not (child.is_dir() or child.is_symlink()):
                continue
            entry = self.aliases.resolve(child.name)
            if entry is None:
                continue
            is_alias = isinstance(entry, AliasEntry)
            if child.name in staging:
                is_staging = True
            elif child.name in tracked:
                is_staging = False
            else:
                is_staging = child.name.startswith(STAGING_PREFIX)

            tls_status: str | None = None
            has_valid_tls: bool | None = None
            if check_tls and self.probe is not None:
                result = self.probe.probe(child.name)
                tls_status = result.status.value
                has_valid_tls = result.status is CertificateStatus.VALID

            results.append(
                DomainInfo(
                    domain=child.name,
                    has_application=(child / "public" / "wp-config.php").is_file(),
                    has_valid_tls=has_valid_tls,
                    is_staging=is_staging,
                    is_alias=is_alias,
                    alias_target=(entry.target or None) if isinstance(entry, AliasEntry) else None,
                    tls_status=tls_status,
                )
            )
        return results


__all__ = ["DomainInspector"]
