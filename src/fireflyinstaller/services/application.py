"""Laravel application capability: artisan commands and Composer."""

import base64
import hashlib
import os
import re
import shutil
import tempfile
from typing import List, Optional, Sequence

from fireflyinstaller.constants import APP_KEY_PLACEHOLDER, MIGRATION_RETRIES, WEB_USER
from fireflyinstaller.errors import (
    DependencyInstallError,
    InstallerError,
    IntegrityMismatch,
    MigrationError,
)
from fireflyinstaller.errors_catalog import actionable_error

COMPOSER_INSTALLER_URL = "https://getcomposer.org/installer"
COMPOSER_SIGNATURE_URL = "https://composer.github.io/installer.sig"
_VERSION_PATTERN = re.compile(r"v?(\d+\.\d+\.\d+)")


def is_valid_app_key(value: Optional[str]) -> bool:
    if not value or value == APP_KEY_PLACEHOLDER:
        return False
    if not value.startswith("base64:"):
        return len(value) == 32
    try:
        return len(base64.b64decode(value[len("base64:"):], validate=True)) == 32
    except ValueError:
        return False


class ApplicationService:
    """Runs ``php artisan`` and ``composer`` as the web server user."""

    def __init__(
        self,
        run_cmd,
        logger,
        console,
        requests_module=None,
        web_user: str = WEB_USER,
        php_binary: str = "php",
        composer_binary: str = "/usr/local/bin/composer",
        migration_retries: int = MIGRATION_RETRIES,
        retry_backoff_seconds: float = 5.0,
    ):
        self.run_cmd = run_cmd
        self.logger = logger
        self.console = console
        self.requests = requests_module
        self.web_user = web_user
        self.php_binary = php_binary
        self.composer_binary = composer_binary
        self.migration_retries = migration_retries
        self.retry_backoff_seconds = retry_backoff_seconds

    def _as_web_user(self, cmd: List[str]) -> List[str]:
        return ["sudo", "-u", self.web_user, "-H"] + cmd

    def artisan(self, install_dir: str, args: Sequence[str], check: bool = True, **kwargs):
        cmd = self._as_web_user([self.php_binary, os.path.join(install_dir, "artisan")] + list(args))
        return self.run_cmd(cmd, check=check, capture_output=True, cwd=install_dir, **kwargs)

    def generate_app_key(self, install_dir: str) -> str:
        try:
            result = self.artisan(install_dir, ["key:generate", "--show", "--no-interaction"])
        except InstallerError as exc:
            raise InstallerError(actionable_error("app_key_failed", path=install_dir)) from exc

        key = (result.stdout or "").strip().splitlines()[-1:] or [""]
        if not is_valid_app_key(key[0]):
            raise InstallerError(actionable_error("app_key_failed", path=install_dir))
        return key[0]

    def installed_version(self, install_dir: str, version_command: Sequence[str]) -> Optional[str]:
        if not os.path.exists(os.path.join(install_dir, "artisan")):
            return None
        result = self.artisan(install_dir, version_command, check=False)
        if result.returncode != 0:
            return None
        match = _VERSION_PATTERN.search(result.stdout or "")
        return match.group(1) if match else None

    def migrate(self, install_dir: str):
        self.console.print("[blue]Running database migrations...[/blue]")
        try:
            self.artisan(
                install_dir,
                ["migrate", "--seed", "--force", "--no-interaction"],
                retry_count=self.migration_retries - 1,
                retry_backoff_seconds=self.retry_backoff_seconds,
            )
        except InstallerError as exc:
            raise MigrationError(actionable_error("migration_failed", path=install_dir)) from exc

    def run_maintenance(self, install_dir: str, commands: Sequence[Sequence[str]]):
        for command in commands:
            self.logger.info("Running artisan %s", " ".join(command))
            self.artisan(install_dir, list(command) + ["--no-interaction"])

    def install_passport(self, install_dir: str):
        self.artisan(install_dir, ["passport:install", "--force", "--no-interaction"])

    def has_composer(self) -> bool:
        """Whether Composer is available; adopts a Composer found on PATH elsewhere."""
        if os.path.exists(self.composer_binary):
            return True
        found = shutil.which("composer")
        if found is None:
            return False
        self.logger.debug("Using Composer at %s", found)
        self.composer_binary = found
        return True

    def ensure_composer(self) -> bool:
        """Install Composer after verifying the installer signature; returns whether it was installed."""
        if self.has_composer():
            return False
        if self.requests is None:
            raise DependencyInstallError("Composer is missing and no HTTP client is configured.")

        self.console.print("[blue]Installing Composer...[/blue]")
        try:
            signature = self.requests.get(COMPOSER_SIGNATURE_URL, timeout=30)
            signature.raise_for_status()
            installer = self.requests.get(COMPOSER_INSTALLER_URL, timeout=30)
            installer.raise_for_status()
        except self.requests.RequestException as exc:
            raise DependencyInstallError(f"Could not download the Composer installer: {exc}") from exc

        expected = signature.text.strip()
        actual = hashlib.sha384(installer.content).hexdigest()
        if actual != expected:
            raise IntegrityMismatch(actionable_error("composer_signature"))

        fd, setup_path = tempfile.mkstemp(prefix="composer-setup-", suffix=".php")
        try:
            with os.fdopen(fd, "wb") as file_obj:
                file_obj.write(installer.content)
            self.run_cmd(
                [
                    self.php_binary,
                    setup_path,
                    f"--install-dir={os.path.dirname(self.composer_binary)}",
                    f"--filename={os.path.basename(self.composer_binary)}",
                ],
                capture_output=True,
            )
        except InstallerError as exc:
            raise DependencyInstallError(f"Composer installation failed: {exc}") from exc
        finally:
            try:
                os.remove(setup_path)
            except OSError:
                pass
        return True

    def composer_install(self, install_dir: str):
        self.console.print(f"[blue]Installing PHP dependencies in {install_dir}...[/blue]")
        if not self.has_composer():
            raise DependencyInstallError(actionable_error("composer_install_failed", path=install_dir))
        try:
            self.run_cmd(
                self._as_web_user(
                    [
                        self.composer_binary,
                        "install",
                        "--no-dev",
                        "--no-interaction",
                        "--prefer-dist",
                        "--optimize-autoloader",
                    ]
                ),
                cwd=install_dir,
                capture_output=True,
                env={"COMPOSER_HOME": "/var/www/.cache/composer"},
                retry_count=1,
                retry_backoff_seconds=self.retry_backoff_seconds,
            )
        except InstallerError as exc:
            raise DependencyInstallError(actionable_error("composer_install_failed", path=install_dir)) from exc
