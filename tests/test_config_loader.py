"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from ironstack.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.web_root == Path("/var/www")
    assert config.registry_dir == Path("/var/lib/ironstack/registry")
    assert config.runtime_dir == Path("/run/ironstack")
    assert config.templates_dir == Path("/etc/ironstack/templates")
    assert config.service_user == "www-data"
    assert config.service_group == "www-data"
    assert config.caddy.reload_command == ("systemctl", "reload", "caddy")
    assert config.backends.cache == "127.0.0.1:6081"
    assert config.backends.direct == "127.0.0.1:9000"
    assert config.backups.root == Path("/backups")
    assert config.backups.index == Path("/backups/backups.json")
    assert config.tls.warn_expiry_days == 14


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "ironstack.yml"
    cfg.write_text(
        "web_root: {root}/www\n"
        "service_user: web\n"
        "caddy:\n"
        "  reload_command: caddy reload --config /etc/caddy/Caddyfile\n"
        "backends:\n"
        "  cache: 10.0.0.5:6081\n"
        "backups:\n"
        "  root: {root}/backups\n"
        "tls:\n"
        "  warn_expiry_days: 30\n".format(root=tmp_path)
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.web_root == tmp_path / "www"
    assert config.service_user == "web"
    assert config.service_group == "web"
    assert config.caddy.reload_command == (
        "caddy",
        "reload",
        "--config",
        "/etc/caddy/Caddyfile",
    )
    assert config.backends.cache == "10.0.0.5:6081"
    assert config.backups.index == tmp_path / "backups" / "backups.json"
    assert config.tls.warn_expiry_days == 30


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "ironstack.yml"
    cfg.write_text("lock_timeout: 10\nwordpress:\n  allow_root: true\n")
    state_dir = tmp_path / "state"
    env = {
        "IRONSTACK_CONFIG_FILE": str(cfg),
        "IRONSTACK_STATE_DIR": str(state_dir),
        "IRONSTACK_LOCK_TIMEOUT": "45",
        "IRONSTACK_WORDPRESS__ALLOW_ROOT": "false",
        "IRONSTACK_TLS__PORT": "8443",
        "UNRELATED": "ignored",
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.state_dir == state_dir
    assert config.registry_dir == state_dir / "registry"
    assert config.lock_timeout == 45.0
    assert config.wordpress.allow_root is False
    assert config.tls.port == 8443


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides (CLI flags) beat environment variables."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"IRONSTACK_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 2.5},
    )

    assert config.lock_timeout == 2.5


@pytest.mark.parametrize(
    "content, fragment",
    [
        ("bogus: 1\n", "Unknown configuration keys: bogus"),
        ("caddy:\n  nope: 1\n", "Unknown caddy configuration keys: nope"),
        ("backends:\n  cache: localhost\n", "backends.cache must look like HOST:PORT"),
        ("tls:\n  port: 70000\n", "tls.port must be between 1 and 65535"),
        ("lock_timeout: 0\n", "lock_timeout must be greater than zero"),
        ("caddy:\n  reload_command: []\n", "caddy.reload_command must not be empty"),
        ("- a\n- b\n", "must contain a mapping"),
    ],
)
def test_invalid_config_raises(tmp_path: Path, content: str, fragment: str) -> None:
    """Invalid configuration surfaces a ConfigError naming the problem."""
    cfg = tmp_path / "ironstack.yml"
    cfg.write_text(content)

    with pytest.raises(ConfigError) as excinfo:
        load_config(config_file=cfg, env={})

    assert fragment in str(excinfo.value)


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The config renders to plain JSON-compatible values."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["web_root"] == "/var/www"
    assert data["caddy"]["reload_command"] == ["systemctl", "reload", "caddy"]
    assert data["backups"]["index"] == "/backups/backups.json"
