"""Tests for the template rendering engine and the Caddy config generator."""
from __future__ import annotations

from pathlib import Path

import pytest
from jinja2 import UndefinedError

from ironstack.providers import CaddyConfigGenerator
from ironstack.templates import TemplateEngine, write_if_changed


def _generator(tmp_path: Path, engine: TemplateEngine | None = None) -> CaddyConfigGenerator:
    return CaddyConfigGenerator(
        templates=engine or TemplateEngine.with_overrides(None),
        web_root=tmp_path / "www",
        cache_backend="127.0.0.1:6081",
        direct_backend="unix//run/php/php-fpm.sock",
        log_dir=Path("/var/log/caddy"),
    )


def test_caddy_render_direct_backend(tmp_path: Path) -> None:
    """Sites without cache are served by PHP directly."""
    output = _generator(tmp_path).render("alpha.example", False)

    assert output.startswith("# Managed by ironstack.")
    assert "alpha.example {" in output
    assert f"root * {tmp_path / 'www' / 'alpha.example' / 'public'}" in output
    assert "php_fastcgi unix//run/php/php-fpm.sock" in output
    assert "reverse_proxy" not in output
    assert "output file /var/log/caddy/alpha.example.log" in output


def test_caddy_render_cache_backend_is_deterministic(tmp_path: Path) -> None:
    """Cache-enabled sites proxy to the cache; rendering is pure."""
    generator = _generator(tmp_path)

    first = generator.render("alpha.example", True)

    assert "reverse_proxy 127.0.0.1:6081" in first
    assert "php_fastcgi" not in first
    assert generator.render("alpha.example", True) == first
    assert generator.backend_for(False) == "unix//run/php/php-fpm.sock"


def test_caddy_render_custom_document_root(tmp_path: Path) -> None:
    """A document root can be supplied explicitly."""
    output = _generator(tmp_path).render("alias.example", False, document_root=Path("/srv/site/public"))

    assert "root * /srv/site/public" in output


def test_override_directory_shadows_builtin(tmp_path: Path) -> None:
    """Operator templates take precedence over packaged ones."""
    overrides = tmp_path / "templates" / "caddy"
    overrides.mkdir(parents=True)
    (overrides / "site.conf.j2").write_text("{{ domain }} -> {{ backend }}\n")
    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    assert _generator(tmp_path, engine).render("alpha.example", True) == "alpha.example -> 127.0.0.1:6081\n"


def test_strict_undefined_variables(tmp_path: Path) -> None:
    """Missing variables fail loudly."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(UndefinedError):
        engine.render_to_string("caddy/site.conf.j2", {"domain": "alpha.example"})


def test_optimizations_template_renders_redis_settings() -> None:
    """The wp-config optimisation block carries the object cache settings."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "wordpress/optimizations.php.j2",
        {"redis_host": "127.0.0.1", "redis_port": 6379, "redis_database": 2},
    )

    assert output.startswith("// ironstack performance optimizations")
    assert "define('WP_REDIS_DATABASE', 2);" in output


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "sites" / "alpha.example.conf"
    context = {
        "domain": "alpha.example",
        "document_root": "/var/www/alpha.example/public",
        "cache_enabled": False,
        "backend": "127.0.0.1:9000",
        "access_log": "/var/log/caddy/alpha.example.log",
    }

    assert engine.render_to_path("caddy/site.conf.j2", destination, context, mode=0o600) is True
    assert oct(destination.stat().st_mode & 0o777) == "0o600"
    assert engine.render_to_path("caddy/site.conf.j2", destination, context, mode=0o600) is False


def test_write_if_changed_fixes_mode_without_rewrite(tmp_path: Path) -> None:
    """Unchanged content keeps the file but corrects its permissions."""
    destination = tmp_path / "file.txt"
    destination.write_text("same")
    destination.chmod(0o600)

    assert write_if_changed(destination, "same", mode=0o644) is False
    assert oct(destination.stat().st_mode & 0o777) == "0o644"
