"""MariaDB/MySQL client capability for FireflyInstaller."""

import os
import re
import tempfile
from contextlib import contextmanager
from typing import Iterator, List, Optional

from fireflyinstaller.errors import InstallerError

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9_]{1,64}$")
_ESCAPES = {
    "\\": "\\\\",
    "'": "\\'",
    '"': '\\"',
    "\0": "\\0",
    "\n": "\\n",
    "\r": "\\r",
    "\x1a": "\\Z",
}


def escape_value(value: str) -> str:
    return "".join(_ESCAPES.get(char, char) for char in value)


def quote_identifier(name: str) -> str:
    if not IDENTIFIER_PATTERN.match(name):
        raise InstallerError(f"Invalid database identifier: {name!r}")
    return f"`{name}`"


class DatabaseService:
    """Runs SQL through the ``mysql`` client as root over the unix socket."""

    def __init__(self, run_cmd, logger, root_password: Optional[str] = None, client: str = "mysql"):
        self.run_cmd = run_cmd
        self.logger = logger
        self.root_password = root_password
        self.client = client

    @contextmanager
    def _defaults_file(self, user: str = "root", password: Optional[str] = None, host: Optional[str] = None) -> Iterator[str]:
        lines = ["[client]", f"user={user}"]
        if password:
            lines.append(f'password="{escape_value(password)}"')
        if host:
            lines.append(f"host={host}")
        else:
            lines.append("protocol=socket")

        fd, path = tempfile.mkstemp(prefix="fireflyinstaller-my-", suffix=".cnf")
        try:
            os.fchmod(fd, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write("\n".join(lines) + "\n")
            yield path
        finally:
            try:
                os.remove(path)
            except OSError:
                pass

    def execute(self, sql: str, database: Optional[str] = None, check: bool = True):
        with self._defaults_file(password=self.root_password) as defaults:
            cmd = [self.client, f"--defaults-file={defaults}", "--batch", "--skip-column-names"]
            if database:
                cmd.extend(["--database", database])
            cmd.extend(["--execute", sql])
            return self.run_cmd(cmd, check=check, capture_output=True)

    def query_rows(self, sql: str, database: Optional[str] = None) -> List[str]:
        result = self.execute(sql, database=database)
        return [line for line in (result.stdout or "").splitlines() if line.strip()]

    def database_exists(self, name: str) -> bool:
        return self.execute(f"USE {quote_identifier(name)}", check=False).returncode == 0

    def create_database(self, name: str):
        self.execute(
            f"CREATE DATABASE IF NOT EXISTS {quote_identifier(name)} "
            "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )

    def user_exists(self, user: str) -> bool:
        quote_identifier(user)
        rows = self.query_rows(f"SELECT 1 FROM mysql.user WHERE user = '{escape_value(user)}' AND host = 'localhost'")
        return bool(rows)

    def create_user(self, user: str, password: str):
        quote_identifier(user)
        self.execute(f"CREATE USER '{escape_value(user)}'@'localhost' IDENTIFIED BY '{escape_value(password)}'")

    def user_has_grant(self, user: str, database: str) -> bool:
        quote_identifier(user)
        result = self.execute(f"SHOW GRANTS FOR '{escape_value(user)}'@'localhost'", check=False)
        if result.returncode != 0:
            return False
        needle = f"ON `{database}`.*"
        return any("ALL PRIVILEGES" in line and needle in line for line in (result.stdout or "").splitlines())

    def grant_all(self, user: str, database: str):
        self.execute(
            f"GRANT ALL PRIVILEGES ON {quote_identifier(database)}.* TO '{escape_value(user)}'@'localhost'; "
            "FLUSH PRIVILEGES"
        )

    def table_exists(self, database: str, table: str) -> bool:
        quote_identifier(database)
        quote_identifier(table)
        rows = self.query_rows(
            "SELECT 1 FROM information_schema.tables "
            f"WHERE table_schema = '{escape_value(database)}' AND table_name = '{escape_value(table)}'"
        )
        return bool(rows)

    def can_connect(self, user: str, password: str, database: str, host: str = "127.0.0.1") -> bool:
        with self._defaults_file(user=user, password=password, host=host) as defaults:
            cmd = [
                self.client,
                f"--defaults-file={defaults}",
                "--batch",
                "--skip-column-names",
                "--database",
                database,
                "--execute",
                "SELECT 1",
            ]
            result = self.run_cmd(cmd, check=False, capture_output=True)
        return result.returncode == 0
