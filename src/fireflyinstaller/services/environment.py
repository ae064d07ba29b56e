"""Reconciles the ``.env`` configuration of both applications."""

import os
import shutil
from typing import Optional

from fireflyinstaller.constants import (
    APP_KEY_PLACEHOLDER,
    ENV_FILE_MODE,
    IMPORTER_PORT,
    WEB_GROUP,
    WEB_USER,
)
from fireflyinstaller.errors import InstallerError
from fireflyinstaller.models import Credentials, RunConfig
from fireflyinstaller.services.application import is_valid_app_key
from fireflyinstaller.services.credentials import generate_name, generate_password, generate_token
from fireflyinstaller.services.env_file import EnvFile

EXAMPLE_DB_VALUES = {
    "DB_DATABASE": ("firefly", "homestead", "database"),
    "DB_USERNAME": ("firefly", "homestead", "root"),
    "DB_PASSWORD": ("secret_firefly_password", "secret", "password"),
}
SQLITE_REMOVED_KEYS = ("DB_HOST", "DB_PORT", "DB_DATABASE", "DB_USERNAME", "DB_PASSWORD")
CARRIED_STORAGE_DIRS = ("storage/upload", "storage/database")


def primary_url(config: RunConfig) -> str:
    if config.has_domain and config.domain_name:
        return f"https://{config.domain_name}"
    return f"http://{config.server_host}"


def importer_url(config: RunConfig) -> str:
    importer_domain = config.resolved_importer_domain()
    if importer_domain:
        return f"https://{importer_domain}"
    return f"http://{config.server_host}:{IMPORTER_PORT}"


class EnvironmentConfigurator:
    """Seeds ``.env`` from ``.env.example`` and reconciles the keys the installer owns."""

    def __init__(self, reconciler, application, filesystem_service, prompter, validation_service, audit, logger, console):
        self.reconciler = reconciler
        self.application = application
        self.filesystem_service = filesystem_service
        self.prompter = prompter
        self.validation_service = validation_service
        self.audit = audit
        self.logger = logger
        self.console = console

    @staticmethod
    def env_path(install_dir: str) -> str:
        return os.path.join(install_dir, ".env")

    def prepare(self, install_dir: str) -> EnvFile:
        env_path = self.env_path(install_dir)
        if not os.path.exists(env_path):
            example = os.path.join(install_dir, ".env.example")
            if not os.path.exists(example):
                raise InstallerError(f"Neither .env nor .env.example exists in {install_dir}.")
            shutil.copy2(example, env_path)
            self.logger.info("Created %s from .env.example", env_path)
        return EnvFile.load(env_path)

    def save(self, env: EnvFile) -> bool:
        existed = os.path.exists(env.path)
        if not env.save(mode=ENV_FILE_MODE):
            return False
        self.filesystem_service.chown(env.path, WEB_USER, WEB_GROUP)
        self.audit.record_mutation("environment", env.path, "updated" if existed else "created")
        return True

    def carry_over(self, old_dir: str, new_dir: str):
        """Copy the live ``.env`` and user data directories into a freshly extracted release."""
        old_env = self.env_path(old_dir)
        if os.path.exists(old_env):
            shutil.copy2(old_env, self.env_path(new_dir))
            self.logger.info("Carried over %s", old_env)
        for relative in CARRIED_STORAGE_DIRS:
            source = os.path.join(old_dir, relative)
            if not os.path.isdir(source):
                continue
            destination = os.path.join(new_dir, relative)
            if os.path.exists(destination):
                shutil.rmtree(destination)
            shutil.copytree(source, destination, symlinks=True)
            self.logger.info("Carried over %s", source)

    def _existing(self, env: EnvFile, key: str) -> Optional[str]:
        value = env.get(key)
        if not value or value in EXAMPLE_DB_VALUES.get(key, ()):
            return None
        return value

    def resolve_credentials(self, config: RunConfig, env: EnvFile) -> Credentials:
        db_type = config.db_type
        current_connection = env.get("DB_CONNECTION")
        if env.get("APP_KEY") not in (None, "", APP_KEY_PLACEHOLDER) and current_connection in ("mysql", "sqlite"):
            db_type = current_connection
        elif self.prompter.interactive:
            choice = self.prompter.choose(
                "Select the database type",
                {"1": "MySQL / MariaDB (recommended)", "2": "SQLite"},
                default="1" if db_type == "mysql" else "2",
            )
            db_type = "mysql" if choice == "1" else "sqlite"

        credentials = Credentials(db_type=db_type)
        if db_type == "sqlite":
            return credentials

        validator = self.validation_service.is_valid_db_identifier
        credentials.db_name = config.db_name or self._existing(env, "DB_DATABASE") or self.prompter.ask(
            "Database name", default=generate_name("firefly"), validator=validator
        )
        credentials.db_user = config.db_user or self._existing(env, "DB_USERNAME") or self.prompter.ask(
            "Database user", default=generate_name("user"), validator=validator
        )
        credentials.db_password = (
            config.db_pass
            or self._existing(env, "DB_PASSWORD")
            or self.prompter.ask_secret(
                "Database password (leave empty to generate one)",
                validator=self.validation_service.is_valid_password,
                error_message="Use at least 8 characters without spaces, quotes, backslashes or `$`.",
            )
            or generate_password()
        )
        return credentials

    def configure_primary(self, install_dir: str, config: RunConfig) -> Credentials:
        env = self.prepare(install_dir)
        credentials = self.resolve_credentials(config, env)

        if credentials.db_type == "mysql":
            self.reconciler.ensure_database(credentials.db_name)
            self.reconciler.ensure_database_user(credentials.db_user, credentials.db_password, credentials.db_name)
            env.ensure("DB_CONNECTION", "mysql")
            env.ensure("DB_HOST", "127.0.0.1")
            env.ensure("DB_PORT", "3306")
            env.ensure("DB_DATABASE", credentials.db_name)
            env.ensure("DB_USERNAME", credentials.db_user)
            env.ensure("DB_PASSWORD", credentials.db_password)
        else:
            env.ensure("DB_CONNECTION", "sqlite")
            for key in SQLITE_REMOVED_KEYS:
                env.remove(key)
            self._ensure_sqlite_file(install_dir)

        env.ensure("APP_URL", primary_url(config))
        env.ensure("APP_ENV", "production")
        env.ensure("APP_DEBUG", False)
        env.ensure("TZ", config.timezone)
        env.ensure("LOG_CHANNEL", "stack")
        env.ensure("DEFAULT_LOCALE", "en_US")
        env.ensure_default("STATIC_CRON_TOKEN", generate_token(), placeholders=("PLEASE_REPLACE_WITH_32_CHAR_CODE",))
        self.save(env)

        credentials.static_cron_token = env.get("STATIC_CRON_TOKEN") or ""
        return credentials

    def configure_importer(self, install_dir: str, config: RunConfig):
        env = self.prepare(install_dir)
        env.ensure("FIREFLY_III_URL", primary_url(config))
        env.ensure("APP_URL", importer_url(config))
        env.ensure("TRUSTED_PROXIES", "*")
        env.ensure("TZ", config.timezone)
        env.ensure("LOG_CHANNEL", "stack")
        env.ensure("LOG_LEVEL", "info")
        env.ensure("CACHE_DRIVER", "file")
        env.ensure("QUEUE_CONNECTION", "sync")
        self.save(env)

    def ensure_app_key(self, install_dir: str) -> str:
        env = EnvFile.load(self.env_path(install_dir))
        current = env.get("APP_KEY")
        if is_valid_app_key(current):
            return current
        key = self.application.generate_app_key(install_dir)
        env.set("APP_KEY", key)
        self.save(env)
        return key

    def read_credentials(self, install_dir: str) -> Credentials:
        env = EnvFile.load(self.env_path(install_dir))
        db_type = env.get("DB_CONNECTION") or "mysql"
        return Credentials(
            db_name=env.get("DB_DATABASE") or "",
            db_user=env.get("DB_USERNAME") or "",
            db_password=env.get("DB_PASSWORD") or "",
            app_key=env.get("APP_KEY") or "",
            static_cron_token=env.get("STATIC_CRON_TOKEN") or "",
            db_type="sqlite" if db_type == "sqlite" else "mysql",
        )

    def _ensure_sqlite_file(self, install_dir: str):
        database_dir = os.path.join(install_dir, "storage", "database")
        database_file = os.path.join(database_dir, "database.sqlite")
        if os.path.exists(database_file):
            return
        os.makedirs(database_dir, exist_ok=True)
        open(database_file, "a", encoding="utf-8").close()
        self.filesystem_service.chown_tree(database_dir, WEB_USER, WEB_GROUP)
        self.audit.record_mutation("sqlite database", database_file, "created")
