"""PHP runtime selection and installation."""

from typing import Optional

from fireflyinstaller.errors import DependencyInstallError
from fireflyinstaller.errors_catalog import actionable_error
from fireflyinstaller.services.versioning import RuntimeVersion, compare_versions, latest_stable


class RuntimeManager:
    """Picks a PHP version that satisfies a release and installs it with Apache's module."""

    def __init__(self, packages, web_server, resolver, prompter, audit, logger, console):
        self.packages = packages
        self.web_server = web_server
        self.resolver = resolver
        self.prompter = prompter
        self.audit = audit
        self.logger = logger
        self.console = console

    def current_version(self) -> Optional[str]:
        return self.packages.installed_php_version()

    def select_version(self, min_required: Optional[str], pinned: Optional[str], installed: Optional[str]) -> Optional[str]:
        """Version to install, or None when the installed runtime is kept."""
        self.packages.add_php_repository()
        available = self.packages.available_php_versions()

        if pinned:
            if installed and RuntimeVersion.parse(installed).major_minor == pinned:
                return None
            if available and pinned not in available:
                raise DependencyInstallError(
                    actionable_error("package_install_failed", packages=f"php{pinned}")
                )
            return pinned

        latest = latest_stable(available)
        if installed and (min_required is None or compare_versions(installed, ">=", min_required)):
            current = RuntimeVersion.parse(installed).major_minor
            if latest and compare_versions(latest, ">", current) and self.prompter.confirm(
                f"PHP {current} is installed and PHP {latest} is available. Upgrade?",
                default=False,
                non_interactive_answer=False,
            ):
                return latest
            return None

        if min_required:
            candidate = self.resolver.find_compatible_runtime(min_required, available)
            if candidate is None:
                raise DependencyInstallError(actionable_error("no_compatible_runtime", required=min_required))
            return candidate

        if latest is None:
            raise DependencyInstallError(actionable_error("runtime_missing"))
        return latest

    def ensure(self, min_required: Optional[str], pinned: Optional[str] = None) -> str:
        installed = self.current_version()
        target = self.select_version(min_required, pinned, installed)
        if target is None:
            self.console.print(f"[blue]Using installed PHP {installed}.[/blue]")
            return RuntimeVersion.parse(installed).major_minor

        self.console.print(f"[blue]Installing PHP {target}...[/blue]")
        installed_packages = self.packages.install_php(target)
        if installed_packages:
            self.audit.record_mutation("runtime", f"php{target}", "created", " ".join(installed_packages))

        for module in self.web_server.enabled_php_modules():
            if module != f"php{target}":
                self.web_server.disable_module(module)
        if self.web_server.enable_module(f"php{target}"):
            self.audit.record_mutation("apache module", f"php{target}", "created")
        return target
