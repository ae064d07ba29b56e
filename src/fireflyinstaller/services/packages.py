"""apt based package manager capability."""

import glob
import os
import re
from typing import Iterable, List, Optional

from fireflyinstaller.errors import DependencyInstallError, InstallerError
from fireflyinstaller.errors_catalog import actionable_error

SYSTEM_PACKAGES = [
    "apache2",
    "mariadb-server",
    "curl",
    "unzip",
    "gnupg",
    "cron",
    "certbot",
    "python3-certbot-apache",
    "software-properties-common",
]
PHP_EXTENSIONS = ["bcmath", "curl", "gd", "intl", "mbstring", "xml", "zip", "opcache", "mysql", "sqlite3"]
PHP_PPA = "ppa:ondrej/php"
_PHP_PACKAGE = re.compile(r"^php(\d+\.\d+)\s")


class PackageManagerService:
    """Queries and installs Debian packages through apt."""

    def __init__(self, run_cmd, logger, console, sources_dir: str = "/etc/apt/sources.list.d"):
        self.run_cmd = run_cmd
        self.logger = logger
        self.console = console
        self.sources_dir = sources_dir
        self._updated = False

    def update(self, force: bool = False):
        if self._updated and not force:
            return
        self.run_cmd(["apt-get", "update"], retry_count=2, retry_backoff_seconds=5.0)
        self._updated = True

    def is_installed(self, package: str) -> bool:
        result = self.run_cmd(
            ["dpkg-query", "-W", "-f=${Status}", package],
            check=False,
            capture_output=True,
        )
        return result.returncode == 0 and "install ok installed" in (result.stdout or "")

    def install(self, packages: Iterable[str]) -> List[str]:
        """Install the missing packages; returns the names actually installed."""
        missing = [package for package in packages if not self.is_installed(package)]
        if not missing:
            return []

        self.update()
        self.console.print(f"[blue]Installing packages: {', '.join(missing)}[/blue]")
        try:
            self.run_cmd(
                ["apt-get", "install", "-y", "--no-install-recommends"] + missing,
                env={"DEBIAN_FRONTEND": "noninteractive"},
                retry_count=1,
                retry_backoff_seconds=10.0,
            )
        except InstallerError as exc:
            raise DependencyInstallError(
                actionable_error("package_install_failed", packages=" ".join(missing))
            ) from exc
        return missing

    def install_optional(self, packages: Iterable[str]) -> List[str]:
        """Install packages one by one, warning instead of failing."""
        installed = []
        for package in packages:
            try:
                installed.extend(self.install([package]))
            except DependencyInstallError as exc:
                self.console.print(f"[yellow]Could not install optional package {package}.[/yellow]")
                self.logger.warning(str(exc))
        return installed

    def has_php_repository(self) -> bool:
        for path in glob.glob(os.path.join(self.sources_dir, "*")):
            try:
                with open(path, "r", encoding="utf-8") as file_obj:
                    if "ondrej/php" in file_obj.read():
                        return True
            except OSError:
                continue
        return False

    def add_php_repository(self) -> bool:
        if self.has_php_repository():
            return False
        try:
            self.install(["software-properties-common"])
            self.run_cmd(["add-apt-repository", "-y", PHP_PPA], retry_count=1, retry_backoff_seconds=5.0)
            self.update(force=True)
        except InstallerError as exc:
            self.console.print("[yellow]Failed to add the PHP repository; continuing with default repositories.[/yellow]")
            self.logger.warning("Could not add %s: %s", PHP_PPA, exc)
            return False
        return True

    def available_php_versions(self) -> List[str]:
        result = self.run_cmd(
            ["apt-cache", "search", "--names-only", r"^php[0-9]+\.[0-9]+$"],
            check=False,
            capture_output=True,
        )
        versions = []
        for line in (result.stdout or "").splitlines():
            match = _PHP_PACKAGE.match(line.strip() + " ")
            if match and match.group(1) not in versions:
                versions.append(match.group(1))
        return versions

    def installed_php_version(self) -> Optional[str]:
        result = self.run_cmd(
            ["php", "-r", "echo PHP_MAJOR_VERSION.'.'.PHP_MINOR_VERSION.'.'.PHP_RELEASE_VERSION;"],
            check=False,
            capture_output=True,
        )
        output = (result.stdout or "").strip()
        if result.returncode != 0 or not re.match(r"^\d+\.\d+\.\d+$", output):
            return None
        return output

    def install_php(self, version: str) -> List[str]:
        core = [f"php{version}", f"php{version}-cli", f"php{version}-common", f"libapache2-mod-php{version}"]
        installed = self.install(core)
        installed.extend(self.install_optional(f"php{version}-{extension}" for extension in PHP_EXTENSIONS))
        self.run_cmd(["update-alternatives", "--set", "php", f"/usr/bin/php{version}"], check=False)
        return installed

    def allow_firewall_port(self, port: int) -> bool:
        try:
            self.run_cmd(["ufw", "allow", f"{port}/tcp"], capture_output=True)
        except InstallerError as exc:
            self.console.print(
                f"[yellow]Could not open port {port} in the firewall. Run `ufw allow {port}/tcp` manually.[/yellow]"
            )
            self.logger.warning("Firewall rule for port %s failed: %s", port, exc)
            return False
        return True
