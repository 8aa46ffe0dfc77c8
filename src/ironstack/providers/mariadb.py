"""MariaDB provider: per-site database and user provisioning."""
from __future__ import annotations

import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import IronstackError, ProvisioningError, ValidationError
from ..process import run_command
from ..sites.models import DatabaseCredentials

_IDENTIFIER = re.compile(r"^[a-z0-9_]{1,80}$")


def _check_identifier(value: str, label: str) -> str:
    if not _IDENTIFIER.match(value):
        raise ValidationError(f"Unsafe {label} identifier: {value!r}.")
    return value


def _quote_literal(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


@dataclass(slots=True)
class MariaDBProvisioner:
    """Create and drop site databases through the ``mysql`` client."""

    client_bin: str = "mysql"
    host: str = "localhost"
    command_timeout: float = 600.0

    def create_database(self, name: str, user: str, password: str) -> DatabaseCredentials:
        """Create database *name* and a user with full privileges on it.

        An existing database or user is a collision and raises
        :class:`ProvisioningError`. Objects this call created are dropped again
        before the error propagates; objects that already existed are left alone.
        """
        db = _check_identifier(name, "database")
        account = _check_identifier(user, "user")
        host = _quote_literal(self.host)
        stages = [
            (
                f"CREATE DATABASE `{db}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci;",
                f"DROP DATABASE IF EXISTS `{db}`;",
            ),
            (
                f"CREATE USER '{account}'@{host} IDENTIFIED BY {_quote_literal(password)};",
                f"DROP USER IF EXISTS '{account}'@{host};",
            ),
            (f"GRANT ALL PRIVILEGES ON `{db}`.* TO '{account}'@{host};\nFLUSH PRIVILEGES;", None),
        ]
        undo: list[str] = []
        for statement, reverse in stages:
            try:
                self._execute(statement, step="database.provision")
            except IronstackError as exc:
                if undo:
                    try:
                        self._execute("\n".join(reversed(undo)), step="database.provision")
                    except IronstackError as cleanup:
                        exc.compensation_failures.append(("database.provision", cleanup.message))
                raise
            if reverse is not None:
                undo.append(reverse)
        return DatabaseCredentials(name=db, user=account, password=password, host=self.host)

    def drop_database(self, name: str, user: str) -> None:
        """Drop database *name* and *user*; missing objects are not an error."""
        db = _check_identifier(name, "database")
        account = _check_identifier(user, "user")
        sql = "\n".join(
            [
                f"DROP DATABASE IF EXISTS `{db}`;",
                f"DROP USER IF EXISTS '{account}'@{_quote_literal(self.host)};",
                "FLUSH PRIVILEGES;",
            ]
        )
        self._execute(sql, step="database.drop")

    def database_exists(self, name: str) -> bool:
        """Return True when database *name* exists."""
        db = _check_identifier(name, "database")
        result = self._execute(
            f"SHOW DATABASES LIKE {_quote_literal(db)};",
            step="database.exists",
            extra_args=("-N", "-B"),
        )
        return any(line.strip() == db for line in result.stdout.splitlines())

    def user_exists(self, user: str) -> bool:
        """Return True when account *user* exists for the configured host."""
        account = _check_identifier(user, "user")
        result = self._execute(
            f"SELECT User FROM mysql.user WHERE User = {_quote_literal(account)} "
            f"AND Host = {_quote_literal(self.host)};",
            step="database.exists",
            extra_args=("-N", "-B"),
        )
        return any(line.strip() == account for line in result.stdout.splitlines())

    def _execute(
        self,
        sql: str,
        *,
        step: str,
        extra_args: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        # Statements go over stdin; argv stays free of credentials.
        command = [self.client_bin, "-h", self.host, *extra_args]
        return run_command(
            command,
            timeout=self.command_timeout,
            error_cls=ProvisioningError,
            step=step,
            input=sql,
        )


__all__ = ["MariaDBProvisioner"]
