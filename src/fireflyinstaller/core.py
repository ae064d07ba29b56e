import logging
import os
import uuid
from typing import Dict, Optional

from rich.console import Console
from rich.table import Table

from .context import ServiceBundle, build_services
from .errors import InstallerError, ReleaseNotFound
from .errors_catalog import actionable_error
from .models import AppKind, AppOutcome, AppState, Credentials, RunConfig, RunResult
from .orchestrators import InstallOrchestrator, UpdateOrchestrator, is_up_to_date
from .profiles import PROFILES, AppProfile
from .services.environment import importer_url, primary_url
from .services.lock import RunLock

console = Console()
logger = logging.getLogger("fireflyinstaller")


class FireflyInstaller:
    """Decides install or update for each application and drives the run end to end."""

    def __init__(
        self,
        config: RunConfig,
        services: Optional[ServiceBundle] = None,
        check_privileges: bool = True,
        log_file: Optional[str] = None,
        report_file: Optional[str] = None,
    ):
        self.config = config
        self.check_privileges = check_privileges
        self.log_file = log_file
        self.report_file = report_file
        self.services = services or build_services(config, logger, console, report_file=report_file)
        self.installer = InstallOrchestrator(config, self.services, logger, console)
        self.updater = UpdateOrchestrator(config, self.services, logger, console)
        self.run_id = uuid.uuid4().hex[:10]
        self.result: Optional[RunResult] = None

    def _build_report_metadata(self) -> Dict[str, object]:
        return {
            "non_interactive": self.config.non_interactive,
            "has_domain": self.config.has_domain,
            "domain_name": self.config.domain_name,
            "db_type": self.config.db_type,
            "firefly_install_dir": self.config.firefly_install_dir,
            "importer_install_dir": self.config.importer_install_dir,
            "log_file": self.log_file,
        }

    def ensure_root(self):
        if self.check_privileges and os.geteuid() != 0:
            raise InstallerError(actionable_error("not_root"))

    def latest_release(self, profile: AppProfile, pinned: Optional[str]) -> Optional[str]:
        try:
            return self.services.release.get_release(profile.repo, pinned)["tag_name"]
        except ReleaseNotFound:
            if pinned:
                raise
            message = f"No published release found for {profile.display_name}; keeping the installed version."
        except InstallerError as exc:
            message = f"Could not check for {profile.display_name} updates: {exc}"
        console.print(f"[yellow]{message}[/yellow]")
        logger.warning(message)
        return None

    def process_application(self, profile: AppProfile) -> AppOutcome:
        outcome = AppOutcome(kind=profile.kind, state=AppState.NOT_INSTALLED)
        target = profile.target(self.config)
        console.print(f"[bold blue]Checking {profile.display_name} in {target.install_dir}...[/bold blue]")

        try:
            health = self.services.health.check(target, uses_database=profile.uses_database)
            if not health.healthy:
                for failure in health.failures:
                    logger.info("%s health check: %s", profile.display_name, failure)
                return self.installer.install(profile, target, outcome)

            installed = self.services.application.installed_version(target.install_dir, profile.version_command)
            outcome.installed_version = installed
            outcome.previous_version = installed
            self.installer.advance(outcome, AppState.CONFIGURED)
            console.print(f"[blue]{profile.display_name} {installed or '(unknown version)'} is installed.[/blue]")

            latest = self.latest_release(profile, target.desired_version)
            if latest is None or is_up_to_date(installed, latest):
                self.installer.advance(outcome, AppState.UP_TO_DATE)
                console.print(f"[green]{profile.display_name} is up to date.[/green]")
                return outcome

            self.installer.advance(outcome, AppState.UPDATE_AVAILABLE)
            console.print(f"[yellow]{profile.display_name} {latest} is available.[/yellow]")
            target = profile.target(self.config, installed_version=installed)
            return self.updater.update(profile, target, outcome, latest)
        except InstallerError as exc:
            if self.config.interactive:
                console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error("%s: %s", profile.display_name, exc)
            outcome.state = AppState.FAILED
            outcome.message = str(exc)
            return outcome

    def store_credentials(self, outcomes: Dict[AppKind, AppOutcome]):
        environment = self.services.environment
        vault = self.services.vault
        primary_dir = self.config.firefly_install_dir
        if not os.path.exists(environment.env_path(primary_dir)):
            return None, None

        credentials = environment.read_credentials(primary_dir)
        importer_env = environment.env_path(self.config.importer_install_dir)
        if os.path.exists(importer_env):
            credentials.importer_app_key = environment.read_credentials(self.config.importer_install_dir).app_key

        changed = any(
            outcome.state in (AppState.INSTALLED, AppState.UPDATED) for outcome in outcomes.values()
        )
        if vault.has_encrypted_copy() and not changed:
            return credentials, f"{vault.credentials_file}.gpg"

        passphrase = None
        if self.config.interactive and self.services.prompter.confirm(
            "Encrypt the credentials file with a passphrase?",
            default=False,
        ):
            passphrase = self.services.prompter.ask_secret("Passphrase", confirm=True) or None

        urls = {"Firefly III": primary_url(self.config), "Data importer": importer_url(self.config)}
        written = vault.save(credentials, urls=urls, passphrase=passphrase)
        return credentials, written or vault.credentials_file

    def execute(self) -> RunResult:
        services = self.services
        result = RunResult(log_file=self.log_file)
        self.result = result

        services.validation.validate_run_config(self.config)
        with RunLock(self.config.lock_file, logger):
            services.audit.start_run(run_id=self.run_id, metadata=self._build_report_metadata())

            for profile in PROFILES:
                primary = result.outcomes.get(AppKind.PRIMARY)
                if profile.kind is AppKind.IMPORTER and primary is not None and primary.state is AppState.FAILED:
                    outcome = AppOutcome(
                        kind=profile.kind,
                        state=AppState.FAILED,
                        message="Skipped because Firefly III failed.",
                    )
                else:
                    outcome = self.process_application(profile)
                result.outcomes[profile.kind] = outcome
                services.audit.set_outcome(profile.kind.value, outcome.state.value, outcome.installed_version)

            credentials, credentials_file = self.store_credentials(result.outcomes)
            result.credentials = credentials
            result.credentials_file = credentials_file

        result.mutations = list(services.audit.mutations)
        return result

    def print_summary(self, result: RunResult):
        table = Table(title="Firefly III installer summary")
        table.add_column("Application")
        table.add_column("State")
        table.add_column("Version")
        table.add_column("Notes")
        for kind, outcome in result.outcomes.items():
            style = "green" if outcome.succeeded else "red"
            table.add_row(
                kind.value,
                f"[{style}]{outcome.state.value}[/{style}]",
                outcome.installed_version or "-",
                outcome.message,
            )
        console.print(table)
        if result.credentials_file:
            console.print(f"[blue]Credentials: {result.credentials_file}[/blue]")
        console.print(f"[blue]Firefly III: {primary_url(self.config)}[/blue]")
        console.print(f"[blue]Data importer: {importer_url(self.config)}[/blue]")

    def run(self) -> int:
        exit_code = 1
        report_status = "failed"
        report_error: Optional[str] = None

        try:
            logger.info("Starting Firefly III installer (run %s)...", self.run_id)
            self.ensure_root()
            result = self.execute()
            self.print_summary(result)
            exit_code = result.exit_code
            report_status = "success" if exit_code == 0 else "failed"
            if exit_code != 0:
                failed = [kind.value for kind, outcome in result.outcomes.items() if not outcome.succeeded]
                report_error = f"Unsuccessful applications: {', '.join(failed)}"
            return exit_code

        except KeyboardInterrupt:
            console.print("[bold red]Operation cancelled by user.[/bold red]")
            logger.info("Operation cancelled by user")
            report_status = "aborted"
            report_error = "Operation cancelled by user."
            return exit_code
        except InstallerError as exc:
            if self.config.interactive:
                console.print(f"[bold red]Error:[/bold red] {exc}")
            logger.error(str(exc))
            report_error = str(exc)
            if self.result is not None:
                self.result.error = report_error
            return exit_code
        except Exception as exc:
            if self.config.interactive:
                console.print(f"[bold red]Unexpected error:[/bold red] {exc}")
            logger.exception("Unexpected error")
            report_error = str(exc)
            if self.result is not None:
                self.result.error = report_error
            return exit_code
        finally:
            self.services.audit.finalize(report_status, error=report_error)
