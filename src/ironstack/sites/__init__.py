"""Site lifecycle: models, naming rules and workflows."""
from __future__ import annotations

from .models import AliasEntry, DomainEntry, DomainInfo, Site, SiteEntry, StagingLink
from .naming import derive_db_name, derive_db_user, sanitize_name, validate_domain

__all__ = [
    "AliasEntry",
    "DomainEntry",
    "DomainInfo",
    "Site",
    "SiteEntry",
    "StagingLink",
    "derive_db_name",
    "derive_db_user",
    "sanitize_name",
    "validate_domain",
]
