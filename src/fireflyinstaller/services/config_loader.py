"""Configuration loader for the Firefly III installer."""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from fireflyinstaller.errors import ConfigurationError


class ConfigLoader:
    """Loads YAML configuration files for CLI defaults."""

    SUPPORTED_KEYS = {
        "non_interactive",
        "has_domain",
        "domain_name",
        "email_address",
        "importer_domain",
        "db_type",
        "db_name",
        "db_user",
        "db_pass",
        "cron_hour",
        "github_token",
        "php_version",
        "firefly_version",
        "importer_version",
        "firefly_install_dir",
        "importer_install_dir",
        "timezone",
        "log_dir",
        "credentials_file",
        "backup_retention",
        "verbose",
        "mode_timeout",
    }

    def load(self, config_path: Optional[str]) -> Dict[str, Any]:
        if not config_path:
            return {}

        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")

        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (yaml.YAMLError, OSError) as exc:
            raise ConfigurationError(f"Invalid config file '{config_path}': {exc}") from exc

        if parsed is None:
            return {}
        if not isinstance(parsed, dict):
            raise ConfigurationError("Config file must contain a YAML mapping at the root.")

        unknown = sorted(set(parsed.keys()) - self.SUPPORTED_KEYS)
        if unknown:
            unknown_list = ", ".join(unknown)
            raise ConfigurationError(f"Unknown configuration keys: {unknown_list}")

        return parsed
