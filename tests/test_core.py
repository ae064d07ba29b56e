import base64
import json
import logging
import os
import subprocess
import zipfile

import pytest
from rich.console import Console

import fireflyinstaller.orchestrators as orchestrators_module
from fireflyinstaller.constants import FIREFLY_REPO, IMPORTER_REPO
from fireflyinstaller.context import ServiceBundle
from fireflyinstaller.core import FireflyInstaller
from fireflyinstaller.errors import DependencyInstallError, MigrationError
from fireflyinstaller.models import AppKind, AppState, RunConfig
from fireflyinstaller.services.archive import ArchiveService
from fireflyinstaller.services.audit import AuditTrail
from fireflyinstaller.services.backup import BackupManager
from fireflyinstaller.services.credentials import CredentialVault
from fireflyinstaller.services.environment import EnvironmentConfigurator
from fireflyinstaller.services.filesystem import FileSystemService
from fireflyinstaller.services.health import HealthCheckService
from fireflyinstaller.services.prompts import Prompter
from fireflyinstaller.services.reconciler import ResourceReconciler
from fireflyinstaller.services.validation import ValidationService
from fireflyinstaller.services.versioning import CompatibilityResolver
from fireflyinstaller.services.web_server import ApacheService

PRIMARY_ENV_EXAMPLE = """APP_ENV=local
APP_DEBUG=true
APP_KEY=SomeRandomStringOf32CharsExactly
DB_CONNECTION=mysql
DB_HOST=db
DB_PORT=3306
DB_DATABASE=firefly
DB_USERNAME=firefly
DB_PASSWORD=secret_firefly_password
STATIC_CRON_TOKEN=PLEASE_REPLACE_WITH_32_CHAR_CODE
"""
IMPORTER_ENV_EXAMPLE = """APP_URL=http://localhost
FIREFLY_III_URL=
APP_KEY=
"""


class FakeHostRunner:
    """Stands in for a2enmod, apachectl, systemctl and the other host commands."""

    def __init__(self, mods_enabled):
        self.mods_enabled = mods_enabled
        self.commands = []

    def __call__(self, cmd, check=True, capture_output=False, **_kwargs):
        self.commands.append(cmd)
        if cmd[0] == "a2enmod":
            os.makedirs(self.mods_enabled, exist_ok=True)
            open(os.path.join(self.mods_enabled, f"{cmd[-1]}.load"), "w").close()
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


class FakeDatabase:
    def __init__(self):
        self.databases = set()
        self.users = {}
        self.grants = set()
        self.tables = set()

    def database_exists(self, name):
        return name in self.databases

    def create_database(self, name):
        self.databases.add(name)

    def user_exists(self, user):
        return user in self.users

    def create_user(self, user, password):
        self.users[user] = password

    def user_has_grant(self, user, database):
        return (user, database) in self.grants

    def grant_all(self, user, database):
        self.grants.add((user, database))

    def table_exists(self, database, table):
        return (database, table) in self.tables

    def can_connect(self, user, password, database, host="127.0.0.1"):
        return self.users.get(user) == password and database in self.databases


class FakeRelease:
    def __init__(self):
        self.latest = {FIREFLY_REPO: "v6.1.0", IMPORTER_REPO: "v1.5.0"}
        self.php_requirement = ">=8.2"
        self.requirements = {}
        self.tags = {}
        self.downloads = []

    def get_release(self, repo, tag=None):
        return {"tag_name": tag or self.latest[repo]}

    def list_release_tags(self, repo, limit=10):
        return self.tags.get(repo, [self.latest[repo]])[:limit]

    def fetch_raw_file(self, repo, ref, path):
        return json.dumps({"require": {"php": self.requirements.get(ref, self.php_requirement)}})

    def acquire(self, repo, dest_dir, asset_pattern, tag=None):
        tag = tag or self.latest[repo]
        self.downloads.append((repo, tag))
        archive_path = os.path.join(dest_dir, f"release-{tag}.zip")
        env_example = PRIMARY_ENV_EXAMPLE if repo == FIREFLY_REPO else IMPORTER_ENV_EXAMPLE
        with zipfile.ZipFile(archive_path, "w") as archive:
            archive.writestr("artisan", "<?php")
            archive.writestr("app/Kernel.php", "<?php")
            archive.writestr("config/app.php", "<?php return [];")
            archive.writestr("public/index.php", "<?php")
            archive.writestr("storage/upload/.gitkeep", "")
            archive.writestr("bootstrap/cache/.gitkeep", "")
            archive.writestr(".env.example", env_example)
            archive.writestr("composer.json", self.fetch_raw_file(repo, tag, "composer.json"))
            archive.writestr("version.txt", tag.lstrip("v"))
        return archive_path


class FakeApplication:
    composer_binary = "/usr/local/bin/composer"

    def __init__(self, database):
        self.database = database
        self.fail_migrate = False
        self.migrations = []

    def installed_version(self, install_dir, version_command):
        path = os.path.join(install_dir, "version.txt")
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as file_obj:
            return file_obj.read().strip()

    def generate_app_key(self, install_dir):
        return "base64:" + base64.b64encode(os.urandom(32)).decode()

    def ensure_composer(self):
        return False

    def composer_install(self, install_dir):
        os.makedirs(os.path.join(install_dir, "vendor"), exist_ok=True)
        with open(os.path.join(install_dir, "vendor", "autoload.php"), "w", encoding="utf-8") as file_obj:
            file_obj.write("<?php")

    def migrate(self, install_dir):
        if self.fail_migrate:
            raise MigrationError("Database migrations failed.")
        self.migrations.append(install_dir)

    def run_maintenance(self, install_dir, commands):
        return None

    def install_passport(self, install_dir):
        for name in self.database.databases:
            self.database.tables.add((name, orchestrators_module.OAUTH_MARKER_TABLE))


class FakePackages:
    def __init__(self):
        self.installed = set()
        self.fail = False
        self.firewall_ports = []

    def install(self, packages):
        if self.fail:
            raise DependencyInstallError("Failed to install system packages: apache2.")
        missing = [package for package in packages if package not in self.installed]
        self.installed.update(missing)
        return missing

    def allow_firewall_port(self, port):
        self.firewall_ports.append(port)
        return True


class FakeRuntime:
    def __init__(self):
        self.requests = []

    def ensure(self, min_required, pinned=None):
        self.requests.append((min_required, pinned))
        return "8.3"

    def current_version(self):
        return "8.3.6"


class FakeTls:
    def has_certificate(self, domain):
        return False

    def has_renewal_timer(self):
        return True


class Host:
    """State of the simulated machine, shared across installer runs."""

    def __init__(self, root):
        self.root = root
        self.apache_dir = root / "etc" / "apache2"
        self.runner = FakeHostRunner(str(self.apache_dir / "mods-enabled"))
        self.database = FakeDatabase()
        self.release = FakeRelease()
        self.application = FakeApplication(self.database)
        self.packages = FakePackages()
        self.runtime = FakeRuntime()

    def config(self, **overrides):
        values = dict(
            non_interactive=True,
            cron_hour=4,
            server_host="10.0.0.5",
            firefly_install_dir=str(self.root / "www" / "firefly-iii"),
            importer_install_dir=str(self.root / "www" / "data-importer"),
            firefly_temp_dir=str(self.root / "tmp" / "firefly-iii-temp"),
            importer_temp_dir=str(self.root / "tmp" / "data-importer-temp"),
            credentials_file=str(self.root / "root" / "firefly_credentials.txt"),
            lock_file=str(self.root / "run" / "fireflyinstaller.lock"),
            log_dir=str(self.root / "log"),
        )
        values.update(overrides)
        return RunConfig(**values)

    def services(self, config):
        logger = logging.getLogger("fireflyinstaller")
        console = Console(record=True)
        prompter = Prompter(interactive=config.interactive, console=console)
        validation = ValidationService()
        audit = AuditTrail(report_file=str(self.root / "log" / "firefly_install_report.json"), logger=logger)
        filesystem = FileSystemService(logger=logger, console=console)
        web_server = ApacheService(
            self.runner,
            logger,
            sites_available=str(self.apache_dir / "sites-available"),
            sites_enabled=str(self.apache_dir / "sites-enabled"),
            mods_enabled=str(self.apache_dir / "mods-enabled"),
            ports_conf=str(self.apache_dir / "ports.conf"),
        )
        tls = FakeTls()
        reconciler = ResourceReconciler(self.database, web_server, tls, audit, self.runner, logger, console)
        return ServiceBundle(
            run_cmd=self.runner,
            filesystem=filesystem,
            archive=ArchiveService(),
            backups=BackupManager(filesystem, logger, console),
            packages=self.packages,
            database=self.database,
            web_server=web_server,
            tls=tls,
            release=self.release,
            application=self.application,
            resolver=CompatibilityResolver(self.release, logger, console),
            runtime=self.runtime,
            reconciler=reconciler,
            environment=EnvironmentConfigurator(
                reconciler, self.application, filesystem, prompter, validation, audit, logger, console
            ),
            health=HealthCheckService(self.database, web_server, logger),
            vault=CredentialVault(self.runner, logger, console, config.credentials_file),
            audit=audit,
            prompter=prompter,
            validation=validation,
        )

    def run(self, **overrides):
        config = self.config(**overrides)
        installer = FireflyInstaller(config=config, services=self.services(config), check_privileges=False)
        exit_code = installer.run()
        return installer, exit_code


@pytest.fixture
def host(tmp_path, monkeypatch):
    monkeypatch.setattr(orchestrators_module, "CRON_FILE", str(tmp_path / "etc" / "cron.d" / "firefly-iii-cron"))
    monkeypatch.setattr(orchestrators_module, "PHP_CONF_DIR", str(tmp_path / "etc" / "php"))
    return Host(tmp_path)


def backup_dirs(tmp_path):
    return [name for name in os.listdir(tmp_path / "www") if "-backup-" in name]


def read_env(path):
    values = {}
    with open(path, "r", encoding="utf-8") as file_obj:
        for line in file_obj:
            if "=" in line and not line.startswith("#"):
                key, value = line.rstrip("\n").split("=", 1)
                values[key] = value
    return values


def test_fresh_install_sets_up_both_applications(host, tmp_path):
    installer, exit_code = host.run()

    assert exit_code == 0
    outcomes = installer.result.outcomes
    assert outcomes[AppKind.PRIMARY].state is AppState.INSTALLED
    assert outcomes[AppKind.PRIMARY].installed_version == "6.1.0"
    assert outcomes[AppKind.IMPORTER].state is AppState.INSTALLED
    assert outcomes[AppKind.IMPORTER].installed_version == "1.5.0"

    primary_env = read_env(tmp_path / "www" / "firefly-iii" / ".env")
    assert primary_env["APP_KEY"].startswith("base64:")
    assert primary_env["APP_URL"] == "http://10.0.0.5"
    assert primary_env["DB_DATABASE"] in host.database.databases
    importer_env = read_env(tmp_path / "www" / "data-importer" / ".env")
    assert importer_env["FIREFLY_III_URL"] == "http://10.0.0.5"
    assert importer_env["APP_URL"] == "http://10.0.0.5:8080"

    cron = (tmp_path / "etc" / "cron.d" / "firefly-iii-cron").read_text(encoding="utf-8")
    assert (
        f"0 4 * * * www-data /usr/bin/flock -n /tmp/firefly_cron.lock /usr/bin/php "
        f"{tmp_path / 'www' / 'firefly-iii' / 'artisan'} firefly-iii:cron"
    ) in cron

    assert (tmp_path / "etc" / "apache2" / "sites-enabled" / "firefly-iii.conf").is_symlink()
    assert (tmp_path / "etc" / "apache2" / "sites-enabled" / "firefly-importer.conf").is_symlink()
    assert "Listen 8080" in (tmp_path / "etc" / "apache2" / "ports.conf").read_text(encoding="utf-8")
    assert host.packages.firewall_ports == [8080]

    credentials = (tmp_path / "root" / "firefly_credentials.txt").read_text(encoding="utf-8")
    assert f"Database name: {primary_env['DB_DATABASE']}" in credentials
    assert f"Data importer APP_KEY: {importer_env['APP_KEY']}" in credentials
    assert installer.result.credentials_file == str(tmp_path / "root" / "firefly_credentials.txt")

    kinds = {mutation.kind for mutation in installer.result.mutations}
    assert {"release", "database", "database user", "environment", "oauth tables", "cron entry", "site config"} <= kinds
    assert not (tmp_path / "tmp" / "firefly-iii-temp").exists()

    report = json.loads((tmp_path / "log" / "firefly_install_report.json").read_text(encoding="utf-8"))
    assert report["status"] == "success"
    assert report["outcomes"]["firefly-iii"]["state"] == "Installed"


def test_second_run_changes_nothing(host, tmp_path):
    host.run()
    env_before = (tmp_path / "www" / "firefly-iii" / ".env").read_text(encoding="utf-8")

    installer, exit_code = host.run()

    assert exit_code == 0
    assert installer.result.outcomes[AppKind.PRIMARY].state is AppState.UP_TO_DATE
    assert installer.result.outcomes[AppKind.IMPORTER].state is AppState.UP_TO_DATE
    assert installer.result.mutations == []
    assert (tmp_path / "www" / "firefly-iii" / ".env").read_text(encoding="utf-8") == env_before
    assert len(host.release.downloads) == 2


def test_update_keeps_configuration_and_user_data(host, tmp_path):
    host.run()
    primary_dir = tmp_path / "www" / "firefly-iii"
    env_before = read_env(primary_dir / ".env")
    (primary_dir / "storage" / "upload" / "receipt.pdf").write_bytes(b"pdf")
    host.release.latest[FIREFLY_REPO] = "v6.2.0"

    installer, exit_code = host.run()

    assert exit_code == 0
    outcome = installer.result.outcomes[AppKind.PRIMARY]
    assert outcome.state is AppState.UPDATED
    assert outcome.previous_version == "6.1.0"
    assert outcome.installed_version == "6.2.0"
    assert read_env(primary_dir / ".env")["APP_KEY"] == env_before["APP_KEY"]
    assert (primary_dir / "storage" / "upload" / "receipt.pdf").read_bytes() == b"pdf"
    assert os.path.isdir(outcome.backup.destination)
    assert not any(name.startswith("firefly-iii-old") for name in os.listdir(tmp_path / "www"))


def test_failed_update_is_rolled_back(host, tmp_path):
    host.run()
    primary_dir = tmp_path / "www" / "firefly-iii"
    env_before = (primary_dir / ".env").read_text(encoding="utf-8")
    host.release.latest[FIREFLY_REPO] = "v6.2.0"
    host.application.fail_migrate = True

    installer, exit_code = host.run()

    assert exit_code == 1
    outcome = installer.result.outcomes[AppKind.PRIMARY]
    assert outcome.state is AppState.ROLLED_BACK
    assert "restored" in outcome.message
    assert installer.result.outcomes[AppKind.IMPORTER].state is AppState.UP_TO_DATE
    assert (primary_dir / "version.txt").read_text(encoding="utf-8") == "6.1.0"
    assert (primary_dir / ".env").read_text(encoding="utf-8") == env_before
    assert sorted(os.listdir(tmp_path / "www")) == ["data-importer", "firefly-iii"]
    assert ("restored", "release") in {(mutation.action, mutation.kind) for mutation in installer.result.mutations}


def test_primary_failure_skips_importer(host, tmp_path):
    host.packages.fail = True

    installer, exit_code = host.run()

    assert exit_code == 1
    assert installer.result.outcomes[AppKind.PRIMARY].state is AppState.FAILED
    importer = installer.result.outcomes[AppKind.IMPORTER]
    assert importer.state is AppState.FAILED
    assert importer.message == "Skipped because Firefly III failed."
    assert not (tmp_path / "www" / "data-importer").exists()


def test_domain_without_name_aborts_before_any_change(host, tmp_path):
    installer, exit_code = host.run(has_domain=True, email_address="ops@example.com")

    assert exit_code == 1
    assert not (tmp_path / "www").exists()
    assert host.release.downloads == []
    assert installer.services.audit.mutations == []
    report = json.loads((tmp_path / "log" / "firefly_install_report.json").read_text(encoding="utf-8"))
    assert report["status"] == "failed"
    assert "DOMAIN_NAME" in report["error"]


def test_run_requires_root(host, monkeypatch):
    config = host.config()
    installer = FireflyInstaller(config=config, services=host.services(config), check_privileges=True)
    monkeypatch.setattr("fireflyinstaller.core.os.geteuid", lambda: 1000)

    assert installer.run() == 1
    assert host.release.downloads == []


def test_install_tunes_php_ini(host, tmp_path):
    cli_ini = tmp_path / "etc" / "php" / "8.3" / "cli" / "php.ini"
    cli_ini.parent.mkdir(parents=True)
    cli_ini.write_text("[PHP]\nmemory_limit = 128M\nexpose_php = On\n;date.timezone =\n", encoding="utf-8")

    installer, exit_code = host.run()

    assert exit_code == 0
    content = cli_ini.read_text(encoding="utf-8")
    assert "memory_limit = 512M\n" in content
    assert "expose_php = Off\n" in content
    assert "date.timezone = UTC\n" in content
    assert ";date.timezone" not in content
    assert [m.identity for m in installer.result.mutations if m.kind == "php.ini"] == [str(cli_ini)]


def test_no_compatible_newer_release_leaves_install_untouched(host, tmp_path):
    host.run()
    host.release.latest[FIREFLY_REPO] = "v6.2.0"
    host.release.tags[FIREFLY_REPO] = ["v6.2.0", "v6.1.0"]
    host.release.requirements = {"v6.2.0": ">=8.4", "v6.1.0": ">=8.2"}

    for _ in range(3):
        installer, exit_code = host.run()

        assert exit_code == 0
        assert installer.result.outcomes[AppKind.PRIMARY].state is AppState.UP_TO_DATE
        assert installer.result.mutations == []
        assert backup_dirs(tmp_path) == []
    assert len(host.release.downloads) == 2


def test_update_falls_back_to_older_compatible_release(host, tmp_path):
    host.run()
    host.release.latest[FIREFLY_REPO] = "v6.3.0"
    host.release.tags[FIREFLY_REPO] = ["v6.3.0", "v6.2.0", "v6.1.0"]
    host.release.requirements = {"v6.3.0": ">=8.4"}

    installer, exit_code = host.run()

    assert exit_code == 0
    outcome = installer.result.outcomes[AppKind.PRIMARY]
    assert outcome.state is AppState.UPDATED
    assert outcome.installed_version == "6.2.0"
    assert (FIREFLY_REPO, "v6.2.0") in host.release.downloads
    assert (FIREFLY_REPO, "v6.3.0") not in host.release.downloads
    assert ("backup", "created") in {(mutation.kind, mutation.action) for mutation in installer.result.mutations}
    assert len(backup_dirs(tmp_path)) == 1


def test_update_aborts_when_no_release_fits_runtime(host, tmp_path):
    host.run()
    primary_dir = tmp_path / "www" / "firefly-iii"
    env_before = (primary_dir / ".env").read_text(encoding="utf-8")
    host.release.latest[FIREFLY_REPO] = "v6.2.0"
    host.release.tags[FIREFLY_REPO] = ["v6.2.0"]
    host.release.requirements = {"v6.2.0": ">=8.4"}

    installer, exit_code = host.run()

    assert exit_code == 1
    outcome = installer.result.outcomes[AppKind.PRIMARY]
    assert outcome.state is AppState.FAILED
    assert "No Firefly III release compatible with PHP 8.3.6" in outcome.message
    assert installer.result.outcomes[AppKind.IMPORTER].message == "Skipped because Firefly III failed."
    assert (primary_dir / "version.txt").read_text(encoding="utf-8") == "6.1.0"
    assert (primary_dir / ".env").read_text(encoding="utf-8") == env_before
    assert backup_dirs(tmp_path) == []
    assert installer.result.mutations == []


def test_non_interactive_errors_go_to_the_log_only(host, monkeypatch, caplog):
    recorded = Console(record=True)
    monkeypatch.setattr("fireflyinstaller.core.console", recorded)

    with caplog.at_level(logging.ERROR, logger="fireflyinstaller"):
        _installer, exit_code = host.run(has_domain=True, email_address="ops@example.com")

    assert exit_code == 1
    assert "DOMAIN_NAME" in caplog.text
    assert "DOMAIN_NAME" not in recorded.export_text()
