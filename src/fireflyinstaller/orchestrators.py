"""Fresh-install and update state machines for a single application."""

import os

from .constants import (
    CRON_FILE,
    DIR_MODE,
    IMPORTER_PORT,
    PHP_CONF_DIR,
    STORAGE_MODE,
    WEB_GROUP,
    WEB_USER,
)
from .errors import InstallerError, InvalidVersion
from .errors_catalog import actionable_error
from .models import AppKind, AppOutcome, AppState, InstallationTarget, can_transition
from .profiles import AppProfile
from .services.backup import unique_path
from .services.packages import SYSTEM_PACKAGES
from .services.php_ini import PHP_SAPIS, php_settings
from .services.reconciler import ReconcileAction
from .services.versioning import compare_versions, strip_tag_prefix
from .services.web_server import render_site_config

OAUTH_MARKER_TABLE = "oauth_auth_codes"
CERTBOT_RENEWAL_SCHEDULE = "0 */12 * * *"
CERTBOT_RENEWAL_COMMAND = "certbot renew --quiet --deploy-hook 'systemctl reload apache2'"


def is_up_to_date(installed, latest) -> bool:
    if not installed or not latest:
        return False
    try:
        return compare_versions(installed, ">=", strip_tag_prefix(latest))
    except InvalidVersion:
        return strip_tag_prefix(installed) == strip_tag_prefix(latest)


class AppOrchestrator:
    """Steps shared by the install and update paths."""

    def __init__(self, config, services, logger, console):
        self.config = config
        self.services = services
        self.logger = logger
        self.console = console

    def advance(self, outcome: AppOutcome, state: AppState):
        if not can_transition(outcome.state, state):
            raise InstallerError(f"Invalid state transition for {outcome.kind.value}: {outcome.state.value} -> {state.value}")
        self.logger.debug("%s: %s -> %s", outcome.kind.value, outcome.state.value, state.value)
        outcome.state = state

    def _run_step(self, name: str, callback, *args, **kwargs):
        audit = self.services.audit
        audit.step_started(name)
        try:
            result = callback(*args, **kwargs)
        except Exception as exc:
            audit.step_finished(name, "failed", error=str(exc))
            raise
        audit.step_finished(name, "success")
        return result

    def domain_for(self, profile: AppProfile):
        if not self.config.has_domain:
            return None
        if profile.kind is AppKind.PRIMARY:
            return self.config.domain_name
        return self.config.resolved_importer_domain()

    def resolve_release_tag(self, profile: AppProfile, target: InstallationTarget) -> str:
        if target.desired_version:
            return self.services.release.get_release(profile.repo, target.desired_version)["tag_name"]
        return self.services.release.get_release(profile.repo)["tag_name"]

    def fetch_release(self, profile: AppProfile, target: InstallationTarget, tag: str) -> str:
        """Download and extract ``tag`` into the staging directory and return that directory."""
        filesystem = self.services.filesystem
        staging = os.path.join(target.temp_dir, "release")
        filesystem.safe_remove_directory(staging)
        os.makedirs(target.temp_dir, exist_ok=True)

        archive_path = self._run_step(
            f"acquire_{profile.kind.value}",
            self.services.release.acquire,
            profile.repo,
            target.temp_dir,
            profile.asset_pattern,
            tag=tag,
        )
        self._run_step(f"extract_{profile.kind.value}", self.services.archive.extract, archive_path, staging)
        self._discard(archive_path)
        return staging

    @staticmethod
    def _discard(path: str):
        try:
            os.remove(path)
        except OSError:
            pass

    def set_permissions(self, install_dir: str):
        filesystem = self.services.filesystem
        filesystem.chown_tree(install_dir, WEB_USER, WEB_GROUP)
        for relative in ("storage", os.path.join("bootstrap", "cache")):
            path = os.path.join(install_dir, relative)
            if os.path.isdir(path):
                filesystem.set_tree_permissions(path, STORAGE_MODE, STORAGE_MODE & ~0o111)

    def configure_environment(self, profile: AppProfile, install_dir: str):
        environment = self.services.environment
        if profile.kind is AppKind.PRIMARY:
            return self._run_step("configure_environment", environment.configure_primary, install_dir, self.config)
        return self._run_step("configure_importer_environment", environment.configure_importer, install_dir, self.config)

    def finish_application(self, profile: AppProfile, install_dir: str, credentials=None):
        """Application key, migrations, maintenance commands and scheduled jobs."""
        application = self.services.application
        self._run_step(f"app_key_{profile.kind.value}", self.services.environment.ensure_app_key, install_dir)

        if profile.kind is AppKind.PRIMARY:
            self._run_step("migrate", application.migrate, install_dir)
            self._run_step("maintenance", application.run_maintenance, install_dir, profile.maintenance_commands)
            self._run_step("oauth", self.ensure_oauth, install_dir, credentials)
            self._run_step("cron", self.ensure_cron, install_dir)
        else:
            self._run_step("importer_maintenance", application.run_maintenance, install_dir, profile.maintenance_commands)

    def ensure_oauth(self, install_dir: str, credentials=None):
        credentials = credentials or self.services.environment.read_credentials(install_dir)

        def install_passport():
            self.services.application.install_passport(install_dir)

        if credentials.db_type == "mysql":
            return self.services.reconciler.ensure_marker_table(credentials.db_name, OAUTH_MARKER_TABLE, install_passport)
        key_file = os.path.join(install_dir, "storage", "oauth-private.key")
        return self.services.reconciler.ensure("oauth keys", key_file, lambda: os.path.exists(key_file), install_passport)

    def ensure_cron(self, install_dir: str):
        command = (
            f"/usr/bin/flock -n /tmp/firefly_cron.lock /usr/bin/php {os.path.join(install_dir, 'artisan')} firefly-iii:cron"
        )
        return self.services.reconciler.ensure_cron_entry(
            CRON_FILE,
            f"0 {int(self.config.cron_hour)} * * *",
            WEB_USER,
            command,
        )

    def ensure_certificate(self, profile: AppProfile):
        domain = self.domain_for(profile)
        if not domain:
            return None
        action = self.services.reconciler.ensure_tls_certificate(domain, self.config.email_address)
        if not self.services.tls.has_renewal_timer():
            self.services.reconciler.ensure_cron_entry(CRON_FILE, CERTBOT_RENEWAL_SCHEDULE, "root", CERTBOT_RENEWAL_COMMAND)
        return action

    def configure_php(self, php_version: str):
        """Reconcile the php.ini of every installed SAPI and reload what uses it."""
        settings = php_settings(self.config.timezone)
        updated = []
        for sapi in PHP_SAPIS:
            path = os.path.join(PHP_CONF_DIR, php_version, sapi, "php.ini")
            if not os.path.isdir(os.path.dirname(path)):
                continue
            if self.services.reconciler.ensure_php_ini(path, settings) is ReconcileAction.UPDATED:
                updated.append(sapi)

        if "apache2" in updated:
            self.services.web_server.restart()
        if "fpm" in updated:
            service = f"php{php_version}-fpm"
            if self.services.run_cmd(["systemctl", "is-active", "--quiet", service], check=False).returncode == 0:
                self.services.run_cmd(["systemctl", "restart", service])
        return updated

    def serve(self, profile: AppProfile, install_dir: str):
        """Reconcile the Apache site of ``profile``."""
        reconciler = self.services.reconciler
        domain = self.domain_for(profile)

        if domain:
            content = render_site_config(install_dir, profile.log_prefix, server_name=domain, tls=True)
            return reconciler.ensure_site_config(profile.site_name, content, modules=("rewrite", "ssl"))

        if profile.kind is AppKind.PRIMARY:
            content = render_site_config(install_dir, profile.log_prefix, port=80)
            return reconciler.ensure_site_config(profile.site_name, content, modules=("rewrite",))

        if reconciler.ensure_listen_port(IMPORTER_PORT).value == "created":
            self.services.packages.allow_firewall_port(IMPORTER_PORT)
        content = render_site_config(install_dir, profile.log_prefix, port=IMPORTER_PORT)
        return reconciler.ensure_site_config(profile.site_name, content, modules=("rewrite",), disable_sites=())

    def installed_version(self, profile: AppProfile, install_dir: str, fallback=None):
        version = self.services.application.installed_version(install_dir, profile.version_command)
        return version or (strip_tag_prefix(fallback) if fallback else None)


class InstallOrchestrator(AppOrchestrator):
    """Fresh installation of one application."""

    def install(self, profile: AppProfile, target: InstallationTarget, outcome: AppOutcome) -> AppOutcome:
        services = self.services
        self.advance(outcome, AppState.INSTALLING)
        self.console.print(f"[bold blue]Installing {profile.display_name}...[/bold blue]")

        installed = self._run_step("system_packages", services.packages.install, SYSTEM_PACKAGES)
        if installed:
            services.audit.record_mutation("packages", "system", "created", " ".join(installed))

        tag = self.resolve_release_tag(profile, target)
        min_runtime = services.resolver.required_runtime(profile.repo, tag)
        php_version = self._run_step("runtime", services.runtime.ensure, min_runtime, self.config.php_version)
        self._run_step("php_settings", self.configure_php, php_version)
        self._run_step(f"tls_{profile.kind.value}", self.ensure_certificate, profile)
        if self._run_step("composer", services.application.ensure_composer):
            services.audit.record_mutation("composer", services.application.composer_binary, "created")

        staging = self.fetch_release(profile, target, tag)
        self._run_step(f"place_{profile.kind.value}", self._place, staging, target, outcome)
        services.audit.record_mutation("release", target.install_dir, "created", tag)

        self.set_permissions(target.install_dir)
        self._run_step(f"composer_install_{profile.kind.value}", services.application.composer_install, target.install_dir)
        credentials = self.configure_environment(profile, target.install_dir)
        self.set_permissions(target.install_dir)
        self.finish_application(profile, target.install_dir, credentials)
        self._run_step(f"site_{profile.kind.value}", self.serve, profile, target.install_dir)

        services.filesystem.cleanup_dir(target.temp_dir)
        outcome.installed_version = self.installed_version(profile, target.install_dir, fallback=tag)
        self.advance(outcome, AppState.INSTALLED)
        self.console.print(f"[green]{profile.display_name} {outcome.installed_version or ''} installed.[/green]")
        return outcome

    def _place(self, staging: str, target: InstallationTarget, outcome: AppOutcome):
        filesystem = self.services.filesystem
        if os.path.isdir(target.install_dir) and os.listdir(target.install_dir):
            outcome.backup = self.services.backups.snapshot(target.install_dir)
            filesystem.safe_remove_directory(target.install_dir)
        elif os.path.isdir(target.install_dir):
            os.rmdir(target.install_dir)
        os.makedirs(os.path.dirname(target.install_dir) or ".", exist_ok=True)
        filesystem.move(staging, target.install_dir)
        filesystem.set_permissions(target.install_dir, DIR_MODE)


class UpdateOrchestrator(AppOrchestrator):
    """In-place update of a healthy installation with rollback on failure."""

    def resolve_target_release(self, profile: AppProfile, target: InstallationTarget, runtime: str) -> str:
        release = self.services.release
        resolver = self.services.resolver

        tag = self.resolve_release_tag(profile, target)
        if resolver.is_release_compatible(profile.repo, tag, runtime):
            return tag
        if target.desired_version:
            raise InstallerError(actionable_error("no_compatible_release", app=profile.display_name, runtime=runtime))

        candidates = release.list_release_tags(profile.repo, limit=resolver.max_releases)
        compatible = resolver.find_compatible_release(profile.repo, runtime, candidates)
        if compatible is None:
            raise InstallerError(actionable_error("no_compatible_release", app=profile.display_name, runtime=runtime))

        message = f"{tag} needs a newer PHP than {runtime}; using {compatible} instead."
        self.console.print(f"[yellow]{message}[/yellow]")
        self.logger.warning(message)
        return compatible

    def update(self, profile: AppProfile, target: InstallationTarget, outcome: AppOutcome, latest: str) -> AppOutcome:
        services = self.services
        if not services.prompter.confirm(
            f"Update {profile.display_name} from {target.installed_version or 'unknown'} to {latest}?",
            default=False,
            non_interactive_answer=True,
        ):
            outcome.message = "Update declined by operator."
            self.console.print(f"[yellow]{outcome.message}[/yellow]")
            return outcome

        self.advance(outcome, AppState.UPDATING)
        runtime = services.runtime.current_version()
        if runtime is None:
            raise InstallerError(actionable_error("runtime_missing"))

        tag = self.resolve_target_release(profile, target, runtime)
        if is_up_to_date(target.installed_version, tag):
            outcome.message = f"No newer compatible release than {target.installed_version}."
            self.advance(outcome, AppState.UP_TO_DATE)
            return outcome

        snapshot = self._run_step(
            f"backup_{profile.kind.value}", services.backups.snapshot, target.install_dir, verify=True
        )
        services.audit.record_mutation("backup", snapshot.destination, "created", target.install_dir)
        outcome.backup = snapshot

        aside = None
        try:
            staging = self.fetch_release(profile, target, tag)
            services.environment.carry_over(target.install_dir, staging)
            if not os.path.exists(os.path.join(staging, ".env")):
                self.configure_environment(profile, staging)
            self.set_permissions(staging)
            self._run_step(f"composer_install_{profile.kind.value}", services.application.composer_install, staging)

            aside = unique_path(f"{target.install_dir}-old")
            services.filesystem.move(target.install_dir, aside)
            services.filesystem.move(staging, target.install_dir)
            services.audit.record_mutation("release", target.install_dir, "updated", tag)

            self.set_permissions(target.install_dir)
            self.finish_application(profile, target.install_dir)
            self._run_step(f"site_{profile.kind.value}", self.serve, profile, target.install_dir)
        except Exception as exc:
            return self._roll_back(profile, target, outcome, snapshot, aside, exc)

        services.filesystem.cleanup_dir(aside)
        services.filesystem.cleanup_dir(target.temp_dir)
        pruned = services.backups.prune(target.install_dir, self.config.backup_retention)
        for path in pruned:
            services.audit.record_mutation("backup", path, "removed")

        outcome.installed_version = self.installed_version(profile, target.install_dir, fallback=tag)
        self.advance(outcome, AppState.UPDATED)
        self.console.print(
            f"[green]{profile.display_name} updated from {outcome.previous_version} to {outcome.installed_version}.[/green]"
        )
        return outcome

    def _roll_back(self, profile, target, outcome, snapshot, aside, exc: Exception) -> AppOutcome:
        services = self.services
        if self.config.interactive:
            self.console.print(f"[bold red]Error:[/bold red] {exc}")
        self.logger.error("Update of %s failed: %s", profile.display_name, exc)

        if not services.prompter.confirm(
            f"Restore {target.install_dir} from {snapshot.destination}?",
            default=True,
            non_interactive_answer=True,
        ):
            outcome.message = f"Update failed and was not rolled back: {exc}"
            self.advance(outcome, AppState.FAILED)
            return outcome

        services.backups.restore(snapshot, target.install_dir)
        if aside and os.path.exists(aside):
            services.filesystem.safe_remove_directory(aside)
        services.filesystem.cleanup_dir(target.temp_dir)
        services.audit.record_mutation("release", target.install_dir, "restored", snapshot.destination)
        try:
            services.web_server.restart()
        except InstallerError as restart_error:
            self.logger.warning("Apache restart after rollback failed: %s", restart_error)

        outcome.message = actionable_error("update_rolled_back", app=profile.display_name, backup=snapshot.destination)
        outcome.installed_version = target.installed_version
        self.advance(outcome, AppState.ROLLED_BACK)
        self.console.print(f"[yellow]{outcome.message}[/yellow]")
        return outcome
