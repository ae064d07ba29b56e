import atexit
import logging
import os
import socket
import sys

import click
from rich.logging import RichHandler

from .constants import (
    DEFAULT_BACKUP_RETENTION,
    DEFAULT_CONFIG_FILE,
    DEFAULT_CREDENTIALS_FILE,
    DEFAULT_CRON_HOUR,
    DEFAULT_FIREFLY_INSTALL_DIR,
    DEFAULT_IMPORTER_INSTALL_DIR,
    DEFAULT_LOCK_FILE,
    DEFAULT_LOG_DIR,
    FIREFLY_TEMP_DIR,
    IMPORTER_TEMP_DIR,
    MODE_COUNTDOWN_SECONDS,
)
from .core import FireflyInstaller, console
from .errors import InstallerError
from .models import RunConfig
from .services.command_runner import CommandRunner
from .services.config_loader import ConfigLoader
from .services.mode_menu import ModeSelector, RunMode
from .services.prompts import Prompter
from .services.run_log import RunLogService
from .services.validation import ValidationService


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def detect_server_host(run_cmd) -> str:
    """First address reported by ``hostname -I``, falling back to the resolver."""
    try:
        result = run_cmd(["hostname", "-I"], check=False, capture_output=True)
        addresses = (result.stdout or "").split()
        if result.returncode == 0 and addresses:
            return addresses[0]
    except InstallerError:
        pass
    try:
        return socket.gethostbyname(socket.gethostname())
    except OSError:
        return "localhost"


def detect_timezone(path: str = "/etc/timezone") -> str:
    try:
        with open(path, "r", encoding="utf-8") as file_obj:
            value = file_obj.read().strip()
    except OSError:
        return "UTC"
    return value or "UTC"


def prompt_run_settings(settings: dict, prompter: Prompter, validation: ValidationService) -> dict:
    """Ask for the domain, e-mail and cron hour the operator did not provide."""
    if settings["has_domain"] is None:
        settings["has_domain"] = prompter.confirm("Do you have a domain name pointing to this server?", default=False)
    if settings["has_domain"]:
        if not settings["domain_name"]:
            settings["domain_name"] = prompter.ask(
                "Domain name",
                validator=validation.is_valid_domain,
                error_message="Enter a fully qualified domain name such as finance.example.com.",
            )
        if not settings["email_address"]:
            settings["email_address"] = prompter.ask(
                "E-mail address for certificate notices",
                validator=validation.is_valid_email,
                error_message="Enter a valid e-mail address.",
            )
    if settings["cron_hour"] is None:
        settings["cron_hour"] = prompter.ask(
            "Hour of the day (0-23) for the daily cron job",
            default=str(DEFAULT_CRON_HOUR),
            validator=validation.is_valid_cron_hour,
            error_message="Enter an hour between 0 and 23.",
        )
    return settings


def configure_logging(verbose: bool, interactive: bool):
    logger = logging.getLogger("fireflyinstaller")
    logger.setLevel(logging.DEBUG)
    console_level = logging.DEBUG if verbose else logging.INFO
    if not interactive and not verbose:
        console_level = logging.WARNING
    for handler in logging.getLogger().handlers:
        if isinstance(handler, RichHandler):
            handler.setLevel(console_level)
    return logger


def _print_exit_hint(log_file):
    if not log_file:
        return
    console.print(f"[blue]Log file: {log_file}[/blue]")
    console.print(f"[blue]If anything went wrong, review it with: less {log_file}[/blue]")


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


@click.command()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help=f"Path to a YAML configuration file. Defaults to {DEFAULT_CONFIG_FILE} if present.",
)
@click.option(
    "--non-interactive/--interactive",
    "non_interactive",
    default=None,
    envvar="NON_INTERACTIVE",
    help="Run without prompts, using defaults and generated values.",
)
@click.option(
    "--has-domain/--no-domain",
    "has_domain",
    default=None,
    envvar="HAS_DOMAIN",
    help="Serve Firefly III on a domain with a Let's Encrypt certificate.",
)
@click.option("--domain-name", envvar="DOMAIN_NAME", help="Domain name for Firefly III.")
@click.option("--email-address", envvar="EMAIL_ADDRESS", help="E-mail address for certificate registration.")
@click.option(
    "--importer-domain",
    envvar="IMPORTER_DOMAIN",
    help="Domain name for the data importer (default: importer.<domain>).",
)
@click.option("--db-type", envvar="DB_TYPE", type=click.Choice(["mysql", "sqlite"]), help="Database engine.")
@click.option("--db-name", envvar="DB_NAME", help="Database name (generated when omitted).")
@click.option("--db-user", envvar="DB_USER", help="Database user (generated when omitted).")
@click.option("--db-pass", envvar="DB_PASS", help="Database password (generated when omitted).")
@click.option("--cron-hour", envvar="CRON_HOUR", type=int, default=None, help="Hour (0-23) of the daily cron job.")
@click.option("--github-token", envvar="GITHUB_TOKEN", help="GitHub token used for release API requests.")
@click.option("--php-version", envvar="PHP_VERSION", help="Pin the PHP runtime, e.g. 8.3.")
@click.option("--firefly-version", envvar="FIREFLY_VERSION", help="Install this Firefly III release tag.")
@click.option("--importer-version", envvar="IMPORTER_VERSION", help="Install this data importer release tag.")
@click.option("--firefly-install-dir", envvar="FIREFLY_INSTALL_DIR", type=click.Path(), help="Firefly III directory.")
@click.option("--importer-install-dir", envvar="IMPORTER_INSTALL_DIR", type=click.Path(), help="Data importer directory.")
@click.option("--timezone", envvar="TIMEZONE", help="Timezone written to TZ (default: host timezone).")
@click.option("--log-dir", envvar="LOG_DIR", type=click.Path(), help=f"Directory for run logs (default: {DEFAULT_LOG_DIR}).")
@click.option(
    "--credentials-file",
    envvar="CREDENTIALS_FILE",
    type=click.Path(),
    help=f"Where to write generated credentials (default: {DEFAULT_CREDENTIALS_FILE}).",
)
@click.option(
    "--backup-retention",
    envvar="BACKUP_RETENTION",
    type=int,
    default=None,
    help=f"Backups kept per application after a successful update; 0 keeps all (default: {DEFAULT_BACKUP_RETENTION}).",
)
@click.option(
    "--mode-timeout",
    type=int,
    default=None,
    help=f"Seconds before the start-up menu continues non-interactively (default: {MODE_COUNTDOWN_SECONDS}).",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
def main(
    config,
    non_interactive,
    has_domain,
    domain_name,
    email_address,
    importer_domain,
    db_type,
    db_name,
    db_user,
    db_pass,
    cron_hour,
    github_token,
    php_version,
    firefly_version,
    importer_version,
    firefly_install_dir,
    importer_install_dir,
    timezone,
    log_dir,
    credentials_file,
    backup_retention,
    mode_timeout,
    verbose,
):
    """Install or update Firefly III and its data importer on Ubuntu."""
    try:
        config_loader = ConfigLoader()
        resolved_config = config
        if resolved_config is None and os.path.exists(DEFAULT_CONFIG_FILE):
            resolved_config = DEFAULT_CONFIG_FILE
        config_values = config_loader.load(resolved_config)
    except InstallerError as exc:
        raise click.ClickException(str(exc)) from exc

    non_interactive = _resolve_option(non_interactive, config_values, "non_interactive")
    verbose = bool(_resolve_option(verbose, config_values, "verbose", default=False))
    mode_timeout = int(_resolve_option(mode_timeout, config_values, "mode_timeout", default=MODE_COUNTDOWN_SECONDS))

    if non_interactive is None:
        if sys.stdin.isatty():
            mode = ModeSelector(console, countdown_seconds=mode_timeout).select()
            if mode is RunMode.CANCEL:
                console.print("[yellow]Installation cancelled.[/yellow]")
                raise SystemExit(0)
            non_interactive = mode is RunMode.NON_INTERACTIVE
        else:
            non_interactive = True
    non_interactive = bool(non_interactive)

    logger = configure_logging(verbose, interactive=not non_interactive)
    log_dir = _resolve_option(log_dir, config_values, "log_dir", default=DEFAULT_LOG_DIR)
    log_file = None
    try:
        log_file = RunLogService(log_dir).attach(logger)
    except OSError as exc:
        console.print(f"[yellow]Could not create a log file in {log_dir}: {exc}[/yellow]")
    atexit.register(_print_exit_hint, log_file)

    settings = {
        "has_domain": _resolve_option(has_domain, config_values, "has_domain"),
        "domain_name": _resolve_option(domain_name, config_values, "domain_name"),
        "email_address": _resolve_option(email_address, config_values, "email_address"),
        "cron_hour": _resolve_option(cron_hour, config_values, "cron_hour"),
    }
    validation = ValidationService()
    prompter = Prompter(interactive=not non_interactive, console=console)
    settings = prompt_run_settings(settings, prompter, validation)

    run_cmd = CommandRunner(logger=logger).run
    try:
        run_config = RunConfig(
            non_interactive=non_interactive,
            has_domain=bool(settings["has_domain"]),
            domain_name=settings["domain_name"],
            email_address=settings["email_address"],
            importer_domain=_resolve_option(importer_domain, config_values, "importer_domain"),
            db_type=_resolve_option(db_type, config_values, "db_type", default="mysql"),
            db_name=_resolve_option(db_name, config_values, "db_name"),
            db_user=_resolve_option(db_user, config_values, "db_user"),
            db_pass=_resolve_option(db_pass, config_values, "db_pass"),
            cron_hour=int(settings["cron_hour"] if settings["cron_hour"] is not None else DEFAULT_CRON_HOUR),
            github_token=_resolve_option(github_token, config_values, "github_token"),
            php_version=_resolve_option(php_version, config_values, "php_version"),
            firefly_version=_resolve_option(firefly_version, config_values, "firefly_version"),
            importer_version=_resolve_option(importer_version, config_values, "importer_version"),
            firefly_install_dir=_resolve_option(
                firefly_install_dir, config_values, "firefly_install_dir", default=DEFAULT_FIREFLY_INSTALL_DIR
            ),
            importer_install_dir=_resolve_option(
                importer_install_dir, config_values, "importer_install_dir", default=DEFAULT_IMPORTER_INSTALL_DIR
            ),
            firefly_temp_dir=FIREFLY_TEMP_DIR,
            importer_temp_dir=IMPORTER_TEMP_DIR,
            server_host=detect_server_host(run_cmd),
            timezone=_resolve_option(timezone, config_values, "timezone") or detect_timezone(),
            log_dir=log_dir,
            credentials_file=_resolve_option(
                credentials_file, config_values, "credentials_file", default=DEFAULT_CREDENTIALS_FILE
            ),
            lock_file=DEFAULT_LOCK_FILE,
            backup_retention=int(
                _resolve_option(backup_retention, config_values, "backup_retention", default=DEFAULT_BACKUP_RETENTION)
            ),
            verbose=verbose,
        )
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid configuration value: {exc}") from exc

    report_file = os.path.join(log_dir, "firefly_install_report.json") if log_file else None
    try:
        installer = FireflyInstaller(config=run_config, log_file=log_file, report_file=report_file)
    except InstallerError as exc:
        raise click.ClickException(str(exc)) from exc

    raise SystemExit(installer.run())


if __name__ == "__main__":
    main()
