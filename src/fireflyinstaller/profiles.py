"""Static description of the two applications the installer manages."""

from dataclasses import dataclass
from typing import Tuple

from .constants import FIREFLY_REPO, FIREFLY_SITE_NAME, IMPORTER_REPO, IMPORTER_SITE_NAME
from .models import AppKind, InstallationTarget, RunConfig


@dataclass(frozen=True)
class AppProfile:
    kind: AppKind
    display_name: str
    repo: str
    asset_pattern: str
    site_name: str
    log_prefix: str
    required_keys: Tuple[str, ...]
    version_command: Tuple[str, ...]
    maintenance_commands: Tuple[Tuple[str, ...], ...]
    uses_database: bool

    def target(self, config: RunConfig, installed_version=None) -> InstallationTarget:
        if self.kind is AppKind.PRIMARY:
            install_dir, temp_dir, desired = (
                config.firefly_install_dir,
                config.firefly_temp_dir,
                config.firefly_version,
            )
        else:
            install_dir, temp_dir, desired = (
                config.importer_install_dir,
                config.importer_temp_dir,
                config.importer_version,
            )
        return InstallationTarget(
            kind=self.kind,
            install_dir=install_dir,
            temp_dir=temp_dir,
            required_keys=self.required_keys,
            installed_version=installed_version,
            desired_version=desired,
        )


PRIMARY_PROFILE = AppProfile(
    kind=AppKind.PRIMARY,
    display_name="Firefly III",
    repo=FIREFLY_REPO,
    asset_pattern=r"^FireflyIII-v?[\d.]+\.zip$",
    site_name=FIREFLY_SITE_NAME,
    log_prefix="firefly",
    required_keys=("APP_KEY", "DB_CONNECTION"),
    version_command=("firefly-iii:output-version",),
    maintenance_commands=(
        ("config:cache",),
        ("firefly-iii:upgrade-database",),
        ("firefly-iii:correct-database",),
        ("firefly-iii:report-integrity",),
    ),
    uses_database=True,
)

IMPORTER_PROFILE = AppProfile(
    kind=AppKind.IMPORTER,
    display_name="Firefly III Data Importer",
    repo=IMPORTER_REPO,
    asset_pattern=r"^DataImporter-v?[\d.]+\.zip$",
    site_name=IMPORTER_SITE_NAME,
    log_prefix="firefly-importer",
    required_keys=("APP_KEY", "FIREFLY_III_URL"),
    version_command=("config:show", "importer.version"),
    maintenance_commands=(("config:cache",),),
    uses_database=False,
)

PROFILES = (PRIMARY_PROFILE, IMPORTER_PROFILE)
