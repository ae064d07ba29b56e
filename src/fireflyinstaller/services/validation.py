"""Input validation helpers for FireflyInstaller."""

import re
from typing import Optional

from fireflyinstaller.errors import ConfigurationError
from fireflyinstaller.errors_catalog import actionable_error
from fireflyinstaller.models import RunConfig

_DOMAIN = re.compile(r"^(?=.{1,253}$)(?!-)[A-Za-z0-9-]{1,63}(?<!-)(\.(?!-)[A-Za-z0-9-]{1,63}(?<!-))+$")
_EMAIL = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
_DB_IDENTIFIER = re.compile(r"^[A-Za-z0-9_]{1,64}$")
_RUNTIME = re.compile(r"^\d+\.\d+$")
_RELEASE_TAG = re.compile(r"^v?\d+\.\d+\.\d+$")


class ValidationService:
    """Validates operator supplied values before anything is changed on the host."""

    def is_valid_domain(self, value: Optional[str]) -> bool:
        return bool(value) and bool(_DOMAIN.match(value))

    def is_valid_email(self, value: Optional[str]) -> bool:
        return bool(value) and bool(_EMAIL.match(value))

    def is_valid_db_identifier(self, value: Optional[str]) -> bool:
        return bool(value) and bool(_DB_IDENTIFIER.match(value))

    def is_valid_cron_hour(self, value) -> bool:
        try:
            hour = int(value)
        except (TypeError, ValueError):
            return False
        return 0 <= hour <= 23

    def is_valid_runtime(self, value: Optional[str]) -> bool:
        return bool(value) and bool(_RUNTIME.match(value))

    def is_valid_release_tag(self, value: Optional[str]) -> bool:
        return bool(value) and bool(_RELEASE_TAG.match(value))

    def is_valid_password(self, value: Optional[str]) -> bool:
        return bool(value) and len(value) >= 8 and not re.search(r"[\s'\"\\`$]", value)

    def validate_run_config(self, config: RunConfig):
        if config.has_domain:
            if not config.domain_name:
                raise ConfigurationError(
                    actionable_error("missing_required_variable", variable="DOMAIN_NAME", condition="HAS_DOMAIN=true")
                )
            if not config.email_address:
                raise ConfigurationError(
                    actionable_error("missing_required_variable", variable="EMAIL_ADDRESS", condition="HAS_DOMAIN=true")
                )
            self._check("DOMAIN_NAME", config.domain_name, self.is_valid_domain, "Use a fully qualified domain name.")
            self._check("EMAIL_ADDRESS", config.email_address, self.is_valid_email, "Use a valid e-mail address.")
            importer_domain = config.resolved_importer_domain()
            self._check("IMPORTER_DOMAIN", importer_domain, self.is_valid_domain, "Use a fully qualified domain name.")

        if config.db_type not in ("mysql", "sqlite"):
            raise ConfigurationError(
                actionable_error("invalid_variable", variable="DB_TYPE", value=config.db_type, hint="Use `mysql` or `sqlite`.")
            )
        for variable, value in (("DB_NAME", config.db_name), ("DB_USER", config.db_user)):
            if value is not None:
                self._check(variable, value, self.is_valid_db_identifier, "Use letters, digits and underscores only.")
        if config.db_pass is not None:
            self._check(
                "DB_PASS",
                config.db_pass,
                self.is_valid_password,
                "Use at least 8 characters without spaces, quotes, backslashes or `$`.",
                display="******",
            )

        self._check("CRON_HOUR", config.cron_hour, self.is_valid_cron_hour, "Use an hour between 0 and 23.")
        if config.php_version is not None:
            self._check("PHP_VERSION", config.php_version, self.is_valid_runtime, "Use the form major.minor, e.g. 8.3.")
        for variable, value in (("FIREFLY_VERSION", config.firefly_version), ("IMPORTER_VERSION", config.importer_version)):
            if value is not None:
                self._check(variable, value, self.is_valid_release_tag, "Use a release tag such as v6.1.0.")
        if config.backup_retention < 0:
            self._check("BACKUP_RETENTION", config.backup_retention, lambda _: False, "Use 0 or a positive number.")

    @staticmethod
    def _check(variable, value, predicate, hint, display=None):
        if not predicate(value):
            raise ConfigurationError(
                actionable_error("invalid_variable", variable=variable, value=display or value, hint=hint)
            )
