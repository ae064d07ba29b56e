"""Idempotent "ensure this resource exists" operations for every host side effect."""

import os
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from fireflyinstaller.constants import CRON_PATH_LINE, FILE_MODE
from fireflyinstaller.errors import CreationFailed, InstallerError
from fireflyinstaller.errors_catalog import actionable_error
from fireflyinstaller.services.php_ini import PhpIniFile


class ReconcileAction(Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class ResourceReconciler:
    """Checks existence before mutating and records every mutation it makes."""

    def __init__(self, database, web_server, tls, audit, run_cmd, logger, console):
        self.database = database
        self.web_server = web_server
        self.tls = tls
        self.audit = audit
        self.run_cmd = run_cmd
        self.logger = logger
        self.console = console

    def _unchanged(self, kind: str, identity: str) -> ReconcileAction:
        self.logger.info("%s %s already in desired state.", kind, identity)
        self.console.print(f"[blue]{kind} {identity} already in place.[/blue]")
        return ReconcileAction.UNCHANGED

    def _changed(self, kind: str, identity: str, action: ReconcileAction, detail: str = "") -> ReconcileAction:
        self.audit.record_mutation(kind, identity, action.value, detail)
        self.console.print(f"[green]{kind} {identity} {action.value}.[/green]")
        return action

    def ensure(
        self,
        kind: str,
        identity: str,
        exists: Callable[[], bool],
        create: Callable[[], None],
        error_message: Optional[str] = None,
    ) -> ReconcileAction:
        if exists():
            return self._unchanged(kind, identity)
        try:
            create()
        except CreationFailed:
            raise
        except InstallerError as exc:
            raise CreationFailed(error_message or f"Could not create {kind} {identity}: {exc}") from exc
        return self._changed(kind, identity, ReconcileAction.CREATED)

    def ensure_database(self, name: str) -> ReconcileAction:
        return self.ensure(
            "database",
            name,
            lambda: self.database.database_exists(name),
            lambda: self.database.create_database(name),
            actionable_error("database_create_failed", database=name),
        )

    def ensure_database_user(self, user: str, password: str, database: str) -> ReconcileAction:
        error_message = actionable_error("database_user_failed", user=user)
        if not self.database.user_exists(user):
            try:
                self.database.create_user(user, password)
                self.database.grant_all(user, database)
            except InstallerError as exc:
                raise CreationFailed(error_message) from exc
            return self._changed("database user", user, ReconcileAction.CREATED, f"grant on {database}")

        if self.database.user_has_grant(user, database):
            return self._unchanged("database user", user)

        try:
            self.database.grant_all(user, database)
        except InstallerError as exc:
            raise CreationFailed(error_message) from exc
        return self._changed("database user", user, ReconcileAction.UPDATED, f"grant on {database}")

    def ensure_marker_table(self, database: str, table: str, create: Callable[[], None]) -> ReconcileAction:
        return self.ensure(
            "oauth tables",
            f"{database}.{table}",
            lambda: self.database.table_exists(database, table),
            create,
        )

    def ensure_cron_entry(self, cron_file: str, schedule: str, user: str, command: str) -> ReconcileAction:
        entry = f"{schedule} {user} {command}"
        lines = self._read_lines(cron_file)

        action = None
        matches = [index for index, line in enumerate(lines) if not line.startswith("#") and line.endswith(f" {user} {command}")]
        if not matches:
            lines.append(entry)
            action = ReconcileAction.CREATED
        elif lines[matches[0]] != entry or len(matches) > 1:
            lines[matches[0]] = entry
            for index in reversed(matches[1:]):
                del lines[index]
            action = ReconcileAction.UPDATED

        if not any(line.startswith("PATH=") for line in lines):
            lines.insert(0, CRON_PATH_LINE)
            action = action or ReconcileAction.UPDATED

        if action is None:
            return self._unchanged("cron entry", command)

        try:
            os.makedirs(os.path.dirname(cron_file) or ".", exist_ok=True)
            with open(cron_file, "w", encoding="utf-8") as file_obj:
                file_obj.write("\n".join(lines) + "\n")
            os.chmod(cron_file, FILE_MODE)
        except OSError as exc:
            raise CreationFailed(actionable_error("cron_write_failed", path=cron_file)) from exc

        result = self.run_cmd(["systemctl", "restart", "cron"], check=False)
        if result.returncode != 0:
            self.console.print("[yellow]Could not restart cron; the new entry is picked up on its next scan.[/yellow]")
            self.logger.warning("systemctl restart cron returned %s", result.returncode)
        return self._changed("cron entry", command, action, schedule)

    @staticmethod
    def _read_lines(path: str) -> List[str]:
        if not os.path.exists(path):
            return []
        with open(path, "r", encoding="utf-8") as file_obj:
            return [line.rstrip("\n") for line in file_obj if line.strip()]

    def ensure_site_config(
        self,
        site: str,
        content: str,
        modules: Iterable[str] = ("rewrite",),
        disable_modules: Iterable[str] = (),
        disable_sites: Iterable[str] = ("000-default",),
    ) -> ReconcileAction:
        previous = self.web_server.read_site(site)
        if previous == content and self.web_server.is_site_enabled(site):
            return self._unchanged("site config", site)

        for module in modules:
            self.web_server.enable_module(module)
        for module in disable_modules:
            self.web_server.disable_module(module)

        self.web_server.write_site(site, content)
        self.web_server.enable_site(site)
        for other in disable_sites:
            self.web_server.disable_site(other)

        try:
            self.web_server.test_config()
        except InstallerError as exc:
            if previous is None:
                self.web_server.remove_site(site)
            else:
                self.web_server.write_site(site, previous)
            raise CreationFailed(
                actionable_error("apache_config_invalid", site=site, path=self.web_server.site_path(site))
            ) from exc

        self.web_server.restart()
        action = ReconcileAction.CREATED if previous is None else ReconcileAction.UPDATED
        return self._changed("site config", site, action)

    def ensure_php_ini(self, path: str, settings: Dict[str, str]) -> Optional[ReconcileAction]:
        """Bring the directives of one ``php.ini`` to ``settings``; None when the file is absent."""
        if not os.path.isfile(path):
            self.logger.warning("PHP configuration file not found at %s", path)
            return None

        ini = PhpIniFile.load(path)
        changed = [key for key, value in settings.items() if ini.ensure(key, value)]
        if not changed:
            return self._unchanged("php.ini", path)
        ini.save()
        return self._changed("php.ini", path, ReconcileAction.UPDATED, ", ".join(changed))

    def ensure_listen_port(self, port: int) -> ReconcileAction:
        return self.ensure(
            "listen port",
            str(port),
            lambda: self.web_server.has_listen_port(port),
            lambda: self.web_server.add_listen_port(port),
        )

    def ensure_tls_certificate(self, domain: str, email: str) -> ReconcileAction:
        if self.tls.has_certificate(domain):
            if not self.tls.expires_soon(domain):
                return self._unchanged("tls certificate", domain)
            self.console.print(f"[yellow]Certificate for {domain} expires soon; renewing.[/yellow]")
            if not self.tls.renew(domain):
                self.tls.issue(domain, email)
            return self._changed("tls certificate", domain, ReconcileAction.UPDATED, "renewed")

        self.tls.issue(domain, email)
        return self._changed("tls certificate", domain, ReconcileAction.CREATED)
