"""Wiring of the concrete services used by a run."""

from dataclasses import dataclass
from typing import Any

import requests

from .models import RunConfig
from .services.application import ApplicationService
from .services.archive import ArchiveService
from .services.audit import AuditTrail
from .services.backup import BackupManager
from .services.command_runner import CommandRunner
from .services.credentials import CredentialVault
from .services.database import DatabaseService
from .services.environment import EnvironmentConfigurator
from .services.filesystem import FileSystemService
from .services.health import HealthCheckService
from .services.packages import PackageManagerService
from .services.prompts import Prompter
from .services.reconciler import ResourceReconciler
from .services.release import ReleaseService
from .services.runtime import RuntimeManager
from .services.tls import CertbotService
from .services.validation import ValidationService
from .services.versioning import CompatibilityResolver
from .services.web_server import ApacheService


@dataclass
class ServiceBundle:
    run_cmd: Any
    filesystem: Any
    archive: Any
    backups: Any
    packages: Any
    database: Any
    web_server: Any
    tls: Any
    release: Any
    application: Any
    resolver: Any
    runtime: Any
    reconciler: Any
    environment: Any
    health: Any
    vault: Any
    audit: Any
    prompter: Any
    validation: Any


def build_services(config: RunConfig, logger, console, report_file=None, prompter=None) -> ServiceBundle:
    run_cmd = CommandRunner(logger=logger).run
    prompter = prompter or Prompter(interactive=config.interactive, console=console)
    audit = AuditTrail(report_file=report_file, logger=logger)
    validation = ValidationService()

    filesystem = FileSystemService(logger=logger, console=console)
    archive = ArchiveService()
    backups = BackupManager(filesystem_service=filesystem, logger=logger, console=console)
    packages = PackageManagerService(run_cmd=run_cmd, logger=logger, console=console)
    database = DatabaseService(run_cmd=run_cmd, logger=logger)
    web_server = ApacheService(run_cmd=run_cmd, logger=logger)
    tls = CertbotService(run_cmd=run_cmd, web_server=web_server, logger=logger, console=console)
    release = ReleaseService(
        logger=logger,
        console=console,
        requests_module=requests,
        run_cmd=run_cmd,
        github_token=config.github_token,
    )
    application = ApplicationService(run_cmd=run_cmd, logger=logger, console=console, requests_module=requests)
    resolver = CompatibilityResolver(release_service=release, logger=logger, console=console)
    runtime = RuntimeManager(
        packages=packages,
        web_server=web_server,
        resolver=resolver,
        prompter=prompter,
        audit=audit,
        logger=logger,
        console=console,
    )
    reconciler = ResourceReconciler(
        database=database,
        web_server=web_server,
        tls=tls,
        audit=audit,
        run_cmd=run_cmd,
        logger=logger,
        console=console,
    )
    environment = EnvironmentConfigurator(
        reconciler=reconciler,
        application=application,
        filesystem_service=filesystem,
        prompter=prompter,
        validation_service=validation,
        audit=audit,
        logger=logger,
        console=console,
    )
    health = HealthCheckService(database=database, web_server=web_server, logger=logger)
    vault = CredentialVault(run_cmd=run_cmd, logger=logger, console=console, credentials_file=config.credentials_file)

    return ServiceBundle(
        run_cmd=run_cmd,
        filesystem=filesystem,
        archive=archive,
        backups=backups,
        packages=packages,
        database=database,
        web_server=web_server,
        tls=tls,
        release=release,
        application=application,
        resolver=resolver,
        runtime=runtime,
        reconciler=reconciler,
        environment=environment,
        health=health,
        vault=vault,
        audit=audit,
        prompter=prompter,
        validation=validation,
    )
