"""Tests for the MariaDB, WP-CLI and Caddy providers."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from ironstack.errors import (
    CommandTimeoutError,
    ContentRuntimeError,
    ProvisioningError,
    ProxyError,
    ValidationError,
)
from ironstack.exit_codes import ExitCode
from ironstack.process import run_command
from ironstack.providers import CaddyController, MariaDBProvisioner, WordPressCLIFactory
from ironstack.sites.models import DatabaseCredentials


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


class Recorder:
    """Capture ``subprocess.run`` invocations and replay canned results."""

    def __init__(self, *results: DummyResult) -> None:
        """Queue *results*; the last one repeats."""
        self.results = list(results) or [DummyResult()]
        self.calls: list[dict[str, Any]] = []

    def __call__(self, command: Sequence[str], **kwargs: Any) -> DummyResult:
        self.calls.append({"command": list(command), **kwargs})
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


@pytest.fixture
def recorder(monkeypatch: pytest.MonkeyPatch) -> Recorder:
    """Patch ``subprocess.run`` with a recorder returning success."""
    rec = Recorder()
    monkeypatch.setattr(subprocess, "run", rec)
    return rec


# run_command -----------------------------------------------------------
def test_run_command_maps_non_zero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    """Non-zero exits raise the requested error class with stderr."""
    monkeypatch.setattr(subprocess, "run", Recorder(DummyResult(returncode=1, stderr="access denied")))

    with pytest.raises(ProvisioningError) as excinfo:
        run_command(["mysql", "-h", "localhost"], timeout=5, error_cls=ProvisioningError, step="database.provision")

    assert excinfo.value.step == "database.provision"
    assert "exit 1" in str(excinfo.value)
    assert "access denied" in str(excinfo.value)


def test_run_command_distinguishes_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    """A hung command raises CommandTimeoutError rather than a failure."""
    def hang(command: Sequence[str], **kwargs: Any) -> DummyResult:
        raise subprocess.TimeoutExpired(cmd=list(command), timeout=kwargs["timeout"])

    monkeypatch.setattr(subprocess, "run", hang)

    with pytest.raises(CommandTimeoutError) as excinfo:
        run_command(["wp", "db", "export"], timeout=3, error_cls=ContentRuntimeError)

    assert excinfo.value.exit_code == ExitCode.TIMEOUT
    assert excinfo.value.timeout == 3
    assert excinfo.value.command == ["wp", "db", "export"]


def test_run_command_missing_executable() -> None:
    """Missing executables are reported through the error class."""
    with pytest.raises(ProxyError) as excinfo:
        run_command(["ironstack-definitely-missing-binary"], timeout=5, error_cls=ProxyError)

    assert "Executable not found" in str(excinfo.value)


def test_run_command_real_process() -> None:
    """Real commands run and return their output."""
    result = run_command(["sh", "-c", "cat"], timeout=10, input="hello")

    assert result.stdout == "hello"


# MariaDB ---------------------------------------------------------------
def test_create_database_sends_sql_over_stdin(recorder: Recorder) -> None:
    """Provisioning pipes SQL to the client; the password never hits argv."""
    provisioner = MariaDBProvisioner(client_bin="mysql", host="localhost", command_timeout=30)

    credentials = provisioner.create_database("alpha_example_db", "alpha_example_user", "S3cret!pw")

    assert credentials == DatabaseCredentials(
        name="alpha_example_db", user="alpha_example_user", password="S3cret!pw"
    )
    assert len(recorder.calls) == 3
    for call in recorder.calls:
        assert call["command"] == ["mysql", "-h", "localhost"]
        assert call["timeout"] == 30
    assert all("S3cret!pw" not in " ".join(call["command"]) for call in recorder.calls)
    sql = "\n".join(call["input"] for call in recorder.calls)
    assert "IF NOT EXISTS" not in sql
    assert "CREATE DATABASE `alpha_example_db`" in sql
    assert "CREATE USER 'alpha_example_user'@'localhost' IDENTIFIED BY 'S3cret!pw'" in sql
    assert "GRANT ALL PRIVILEGES ON `alpha_example_db`.* TO 'alpha_example_user'@'localhost'" in sql


def test_create_database_collision_is_not_undone(monkeypatch: pytest.MonkeyPatch) -> None:
    """An existing database fails provisioning and nothing is dropped."""
    recorder = Recorder(DummyResult(returncode=1, stderr="ERROR 1007: database exists"))
    monkeypatch.setattr(subprocess, "run", recorder)

    with pytest.raises(ProvisioningError, match="database exists"):
        MariaDBProvisioner().create_database("alpha_example_db", "alpha_example_user", "pw")

    assert len(recorder.calls) == 1
    assert "DROP" not in recorder.calls[0]["input"]


def test_create_database_user_collision_drops_new_database(monkeypatch: pytest.MonkeyPatch) -> None:
    """A colliding user keeps its account; only the database just created is dropped."""
    recorder = Recorder(
        DummyResult(),
        DummyResult(returncode=1, stderr="ERROR 1396: Operation CREATE USER failed"),
        DummyResult(),
    )
    monkeypatch.setattr(subprocess, "run", recorder)

    with pytest.raises(ProvisioningError) as excinfo:
        MariaDBProvisioner().create_database("alpha_example_db", "alpha_example_user", "pw")

    assert excinfo.value.compensation_failures == []
    cleanup = recorder.calls[2]["input"]
    assert cleanup == "DROP DATABASE IF EXISTS `alpha_example_db`;"


def test_create_database_grant_failure_drops_user_then_database(monkeypatch: pytest.MonkeyPatch) -> None:
    """Cleanup after a failed grant reverses both creations."""
    recorder = Recorder(
        DummyResult(),
        DummyResult(),
        DummyResult(returncode=1, stderr="ERROR 1044: access denied"),
        DummyResult(returncode=1, stderr="ERROR 2013: lost connection"),
    )
    monkeypatch.setattr(subprocess, "run", recorder)

    with pytest.raises(ProvisioningError, match="access denied") as excinfo:
        MariaDBProvisioner().create_database("alpha_example_db", "alpha_example_user", "pw")

    cleanup = recorder.calls[3]["input"].splitlines()
    assert cleanup == [
        "DROP USER IF EXISTS 'alpha_example_user'@'localhost';",
        "DROP DATABASE IF EXISTS `alpha_example_db`;",
    ]
    ((step, detail),) = excinfo.value.compensation_failures
    assert step == "database.provision"
    assert "lost connection" in detail


def test_user_exists_queries_account_table(monkeypatch: pytest.MonkeyPatch) -> None:
    """Account checks match the configured host."""
    recorder = Recorder(DummyResult(stdout="alpha_example_user\n"))
    monkeypatch.setattr(subprocess, "run", recorder)

    assert MariaDBProvisioner(host="db.internal").user_exists("alpha_example_user") is True
    assert "Host = 'db.internal'" in recorder.calls[0]["input"]


def test_drop_database_is_tolerant(recorder: Recorder) -> None:
    """Drops use IF EXISTS so repeated deletes succeed."""
    MariaDBProvisioner().drop_database("alpha_example_db", "alpha_example_user")

    sql = recorder.calls[0]["input"]
    assert "DROP DATABASE IF EXISTS `alpha_example_db`;" in sql
    assert "DROP USER IF EXISTS 'alpha_example_user'@'localhost';" in sql


def test_database_exists_parses_output(monkeypatch: pytest.MonkeyPatch) -> None:
    """Existence checks read the batch output of SHOW DATABASES."""
    recorder = Recorder(DummyResult(stdout="alpha_example_db\n"), DummyResult(stdout=""))
    monkeypatch.setattr(subprocess, "run", recorder)
    provisioner = MariaDBProvisioner()

    assert provisioner.database_exists("alpha_example_db") is True
    assert provisioner.database_exists("alpha_example_db") is False
    assert recorder.calls[0]["command"] == ["mysql", "-h", "localhost", "-N", "-B"]


def test_unsafe_identifiers_rejected(recorder: Recorder) -> None:
    """Identifiers outside ``[a-z0-9_]`` never reach the client."""
    with pytest.raises(ValidationError):
        MariaDBProvisioner().create_database("bad`name", "user", "pw")

    assert recorder.calls == []


def test_provisioning_failure_maps_to_provider_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """Client failures surface as ProvisioningError."""
    monkeypatch.setattr(subprocess, "run", Recorder(DummyResult(returncode=1, stderr="ERROR 2002")))

    with pytest.raises(ProvisioningError) as excinfo:
        MariaDBProvisioner().create_database("alpha_example_db", "alpha_example_user", "pw")

    assert excinfo.value.exit_code == ExitCode.PROVIDER
    assert excinfo.value.step == "database.provision"


# WP-CLI ----------------------------------------------------------------
def test_wpcli_commands_target_document_root(recorder: Recorder, tmp_path: Path) -> None:
    """Every WP-CLI call is scoped to the site's public directory."""
    runtime = WordPressCLIFactory(cli_bin="wp", allow_root=True, command_timeout=60)(tmp_path / "alpha.example")
    prefix = ["wp", f"--path={tmp_path / 'alpha.example' / 'public'}", "--allow-root"]

    runtime.download_core()
    runtime.export_db(tmp_path / "dump.sql")
    runtime.search_replace("https://alpha.example", "https://beta.example")
    runtime.set_config("WP_DEBUG", "false", raw=True)
    runtime.flush_cache()

    commands = [call["command"] for call in recorder.calls]
    assert commands == [
        [*prefix, "core", "download"],
        [*prefix, "db", "export", str(tmp_path / "dump.sql")],
        [*prefix, "search-replace", "https://alpha.example", "https://beta.example", "--all-tables"],
        [*prefix, "config", "set", "WP_DEBUG", "false", "--raw"],
        [*prefix, "cache", "flush"],
    ]


def test_wpcli_config_create_prompts_for_password(recorder: Recorder, tmp_path: Path) -> None:
    """The database password is passed over stdin, not on the command line."""
    runtime = WordPressCLIFactory(allow_root=False)(tmp_path)

    runtime.create_config(DatabaseCredentials(name="a_db", user="a_user", password="pw!23"))

    (call,) = recorder.calls
    assert "--allow-root" not in call["command"]
    assert "--prompt=dbpass" in call["command"]
    assert all("pw!23" not in part for part in call["command"])
    assert call["input"] == "pw!23\n"


def test_wpcli_failure_maps_to_content_runtime_error(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """Non-zero WP-CLI exits raise ContentRuntimeError with the step name."""
    monkeypatch.setattr(subprocess, "run", Recorder(DummyResult(returncode=1, stderr="Error: no db")))

    with pytest.raises(ContentRuntimeError) as excinfo:
        WordPressCLIFactory()(tmp_path).import_db(tmp_path / "dump.sql")

    assert excinfo.value.step == "database.import"


# Caddy -----------------------------------------------------------------
def test_caddy_controller_writes_and_removes(tmp_path: Path) -> None:
    """Config files are written atomically and removal is idempotent."""
    controller = CaddyController(sites_dir=tmp_path / "sites")

    assert controller.write_config("alpha.example", "alpha.example {}\n") is True
    assert controller.write_config("alpha.example", "alpha.example {}\n") is False
    assert controller.config_exists("alpha.example")
    assert controller.config_path("alpha.example") == tmp_path / "sites" / "alpha.example.conf"
    assert controller.remove_config("alpha.example") is True
    assert controller.remove_config("alpha.example") is False


def test_caddy_try_reload_reports_failures(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Reload failures are returned as text instead of raised."""
    recorder = Recorder(DummyResult(returncode=1, stderr="caddy not running"), DummyResult())
    monkeypatch.setattr(subprocess, "run", recorder)
    controller = CaddyController(sites_dir=tmp_path, reload_command=("systemctl", "reload", "caddy"))

    error = controller.try_reload()

    assert error is not None
    assert "caddy not running" in error
    assert controller.try_reload() is None
    assert recorder.calls[0]["command"] == ["systemctl", "reload", "caddy"]


def test_caddy_status(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Status reports the service state, or inactive when the probe fails."""
    monkeypatch.setattr(
        subprocess,
        "run",
        Recorder(DummyResult(stdout="active\n"), DummyResult(returncode=3, stdout="inactive")),
    )
    controller = CaddyController(sites_dir=tmp_path)

    assert controller.status() == "active"
    assert controller.status() == "inactive"
