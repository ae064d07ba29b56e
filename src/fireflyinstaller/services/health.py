"""Installation health check deciding between fresh install and update."""

import os
from dataclasses import dataclass, field
from typing import List

from fireflyinstaller.constants import APP_KEY_PLACEHOLDER
from fireflyinstaller.models import InstallationTarget
from fireflyinstaller.services.env_file import EnvFile

CRITICAL_FILES = (".env", "artisan", os.path.join("config", "app.php"))
CRITICAL_DIRS = ("public", "storage", "vendor")


@dataclass
class HealthReport:
    failures: List[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.failures


class HealthCheckService:
    """Runs the checks in order and reports every failing one."""

    def __init__(self, database, web_server, logger):
        self.database = database
        self.web_server = web_server
        self.logger = logger

    def check(self, target: InstallationTarget, uses_database: bool) -> HealthReport:
        report = HealthReport()
        install_dir = target.install_dir

        if not os.path.isdir(install_dir):
            report.failures.append(f"{install_dir} does not exist")
            return report

        for name in CRITICAL_DIRS:
            if not os.path.isdir(os.path.join(install_dir, name)):
                report.failures.append(f"missing directory {name}")
        for name in CRITICAL_FILES:
            if not os.path.isfile(os.path.join(install_dir, name)):
                report.failures.append(f"missing file {name}")

        env = EnvFile.load(os.path.join(install_dir, ".env"))
        for key in target.required_keys:
            value = env.get(key)
            if not value:
                report.failures.append(f"{key} is not set")
            elif value == APP_KEY_PLACEHOLDER:
                report.failures.append(f"{key} is still the placeholder value")

        if uses_database and not report.failures:
            self._check_database(env, install_dir, report)

        if not self.web_server.is_active():
            report.failures.append("web server is not running")

        for failure in report.failures:
            self.logger.info("Health check %s: %s", install_dir, failure)
        return report

    def _check_database(self, env: EnvFile, install_dir: str, report: HealthReport):
        connection = env.get("DB_CONNECTION")
        if connection == "sqlite":
            database_file = env.get("DB_DATABASE") or os.path.join(install_dir, "storage", "database", "database.sqlite")
            if not os.path.isfile(database_file):
                report.failures.append("sqlite database file is missing")
            return

        if not self.database.can_connect(
            user=env.get("DB_USERNAME") or "",
            password=env.get("DB_PASSWORD") or "",
            database=env.get("DB_DATABASE") or "",
            host=env.get("DB_HOST") or "127.0.0.1",
        ):
            report.failures.append("database is not reachable with the configured credentials")
