"""Provider implementations for the external systems ironstack drives."""
from __future__ import annotations

from .caddy import CaddyConfigGenerator, CaddyController
from .mariadb import MariaDBProvisioner
from .wpcli import WordPressCLI, WordPressCLIFactory

__all__ = [
    "CaddyConfigGenerator",
    "CaddyController",
    "MariaDBProvisioner",
    "WordPressCLI",
    "WordPressCLIFactory",
]
