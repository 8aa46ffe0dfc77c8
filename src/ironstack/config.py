"""Configuration loader for ironstack.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/ironstack/config.yml`` (or an override path).
3. Environment variables prefixed with ``IRONSTACK_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export IRONSTACK_WEB_ROOT=/srv/www
    export IRONSTACK_BACKENDS__CACHE=127.0.0.1:6081

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load ironstack configuration. Install with "
        "`pip install ironstack` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import IronstackError
from .exit_codes import ExitCode

ENV_PREFIX = "IRONSTACK_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(IronstackError):
    """Raised when configuration parsing fails."""

    exit_code = ExitCode.VALIDATION


@dataclass(frozen=True)
class CaddyConfig:
    """Caddy site directory and service control commands."""

    sites_dir: Path = Path("/etc/caddy/sites")
    log_dir: Path = Path("/var/log/caddy")
    reload_command: tuple[str, ...] = ("systemctl", "reload", "caddy")
    status_command: tuple[str, ...] = ("systemctl", "is-active", "caddy")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "sites_dir": str(self.sites_dir),
            "log_dir": str(self.log_dir),
            "reload_command": list(self.reload_command),
            "status_command": list(self.status_command),
        }


@dataclass(frozen=True)
class BackendsConfig:
    """Upstream addresses a site can be routed to."""

    cache: str = "127.0.0.1:6081"
    direct: str = "127.0.0.1:9000"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"cache": self.cache, "direct": self.direct}


@dataclass(frozen=True)
class DatabaseConfig:
    """MariaDB client settings."""

    client_bin: str = "mysql"
    host: str = "localhost"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"client_bin": self.client_bin, "host": self.host}


@dataclass(frozen=True)
class WordPressConfig:
    """WP-CLI invocation settings."""

    cli_bin: str = "wp"
    allow_root: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"cli_bin": self.cli_bin, "allow_root": self.allow_root}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage defaults."""

    root: Path
    index: Path

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "index": str(self.index)}


@dataclass(frozen=True)
class TLSConfig:
    """Certificate probe settings."""

    port: int = 443
    probe_timeout: float = 5.0
    warn_expiry_days: int = 14

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "port": self.port,
            "probe_timeout": self.probe_timeout,
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ironstack."""

    config_file: Path
    web_root: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    command_timeout: float
    service_user: str
    service_group: str
    caddy: CaddyConfig
    backends: BackendsConfig
    database: DatabaseConfig
    wordpress: WordPressConfig
    backups: BackupConfig
    tls: TLSConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "web_root": str(self.web_root),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "command_timeout": self.command_timeout,
            "service_user": self.service_user,
            "service_group": self.service_group,
            "caddy": self.caddy.to_dict(),
            "backends": self.backends.to_dict(),
            "database": self.database.to_dict(),
            "wordpress": self.wordpress.to_dict(),
            "backups": self.backups.to_dict(),
            "tls": self.tls.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/ironstack/config.yml",
    "web_root": "/var/www",
    "state_dir": "/var/lib/ironstack",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/ironstack",
    "runtime_dir": "/run/ironstack",
    "templates_dir": "/etc/ironstack/templates",
    "lock_timeout": 30.0,
    "command_timeout": 600.0,
    "service_user": "www-data",
    "service_group": None,  # defaults to service_user
    "caddy": {
        "sites_dir": "/etc/caddy/sites",
        "log_dir": "/var/log/caddy",
        "reload_command": ["systemctl", "reload", "caddy"],
        "status_command": ["systemctl", "is-active", "caddy"],
    },
    "backends": {
        "cache": "127.0.0.1:6081",
        "direct": "127.0.0.1:9000",
    },
    "database": {
        "client_bin": "mysql",
        "host": "localhost",
    },
    "wordpress": {
        "cli_bin": "wp",
        "allow_root": True,
    },
    "backups": {
        "root": "/backups",
        "index": None,
    },
    "tls": {
        "port": 443,
        "probe_timeout": 5.0,
        "warn_expiry_days": 14,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "caddy": {"sites_dir", "log_dir", "reload_command", "status_command"},
    "backends": {"cache", "direct"},
    "database": {"client_bin", "host"},
    "wordpress": {"cli_bin", "allow_root"},
    "backups": {"root", "index"},
    "tls": {"port", "probe_timeout", "warn_expiry_days"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for label in ("lock_timeout", "command_timeout"):
        value = raw.get(label)
        if value is not None:
            _expect_positive_float(value, label, default=1.0)

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backends = _as_dict(raw.get("backends"), "backends")
    for key in ("cache", "direct"):
        address = backends.get(key)
        if address is not None:
            _validate_backend_address(address, f"backends.{key}")

    tls = _as_dict(raw.get("tls"), "tls")
    port = tls.get("port")
    if port is not None:
        parsed_port = _expect_int(port, "tls.port", default=443)
        if not 0 < parsed_port < 65536:
            raise ConfigError("tls.port must be between 1 and 65535.")
    warn_days = tls.get("warn_expiry_days")
    if warn_days is not None and _expect_int(warn_days, "tls.warn_expiry_days", default=14) < 0:
        raise ConfigError("tls.warn_expiry_days must be non-negative.")

    caddy = _as_dict(raw.get("caddy"), "caddy")
    for key in ("reload_command", "status_command"):
        command = caddy.get(key)
        if command is not None:
            _as_command(command, f"caddy.{key}")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    web_root = _to_path(raw.get("web_root"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    command_timeout = _expect_positive_float(
        raw.get("command_timeout"), "command_timeout", default=600.0
    )

    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    service_user = str(raw.get("service_user") or "www-data").strip()
    if not service_user:
        raise ConfigError("service_user must be a non-empty string.")
    service_group_raw = raw.get("service_group")
    service_group = str(service_group_raw).strip() if service_group_raw else service_user

    caddy_mapping = _as_dict(raw.get("caddy"), "caddy")
    caddy = CaddyConfig(
        sites_dir=_to_path(caddy_mapping.get("sites_dir", "/etc/caddy/sites")),
        log_dir=_to_path(caddy_mapping.get("log_dir", "/var/log/caddy")),
        reload_command=_as_command(
            caddy_mapping.get("reload_command", CaddyConfig.reload_command),
            "caddy.reload_command",
        ),
        status_command=_as_command(
            caddy_mapping.get("status_command", CaddyConfig.status_command),
            "caddy.status_command",
        ),
    )

    backends_mapping = _as_dict(raw.get("backends"), "backends")
    backends = BackendsConfig(
        cache=str(backends_mapping.get("cache", BackendsConfig.cache)),
        direct=str(backends_mapping.get("direct", BackendsConfig.direct)),
    )

    database_mapping = _as_dict(raw.get("database"), "database")
    database = DatabaseConfig(
        client_bin=str(database_mapping.get("client_bin", "mysql")),
        host=str(database_mapping.get("host", "localhost")),
    )

    wordpress_mapping = _as_dict(raw.get("wordpress"), "wordpress")
    wordpress = WordPressConfig(
        cli_bin=str(wordpress_mapping.get("cli_bin", "wp")),
        allow_root=bool(wordpress_mapping.get("allow_root", True)),
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_mapping.get("root", "/backups"))
    backups_index_value = backups_mapping.get("index")
    backups_index = (
        _to_path(backups_index_value) if backups_index_value else backups_root / "backups.json"
    )
    backups = BackupConfig(root=backups_root, index=backups_index)

    tls_mapping = _as_dict(raw.get("tls"), "tls")
    tls = TLSConfig(
        port=_expect_int(tls_mapping.get("port"), "tls.port", default=443),
        probe_timeout=_expect_positive_float(
            tls_mapping.get("probe_timeout"), "tls.probe_timeout", default=5.0
        ),
        warn_expiry_days=_expect_int(
            tls_mapping.get("warn_expiry_days"), "tls.warn_expiry_days", default=14
        ),
    )

    return AppConfig(
        config_file=config_file,
        web_root=web_root,
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        lock_timeout=lock_timeout,
        command_timeout=command_timeout,
        service_user=service_user,
        service_group=service_group,
        caddy=caddy,
        backends=backends,
        database=database,
        wordpress=wordpress,
        backups=backups,
        tls=tls,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_command(value: object, label: str) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = value.split()
    elif isinstance(value, Sequence):
        parts = [str(part) for part in value]
    else:
        raise ConfigError(f"Expected {label} to be a command list. Got {type(value).__name__}.")
    if not parts:
        raise ConfigError(f"{label} must not be empty.")
    return tuple(parts)


def _validate_backend_address(value: object, label: str) -> None:
    text = str(value).strip()
    host, sep, port = text.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ConfigError(f"{label} must look like HOST:PORT. Got {value!r}.")


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackendsConfig",
    "BackupConfig",
    "CaddyConfig",
    "ConfigError",
    "DatabaseConfig",
    "TLSConfig",
    "WordPressConfig",
    "load_config",
]
