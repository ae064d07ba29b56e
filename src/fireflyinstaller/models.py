"""Shared domain models for FireflyInstaller."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple


class AppKind(Enum):
    PRIMARY = "firefly-iii"
    IMPORTER = "data-importer"


class AppState(Enum):
    NOT_INSTALLED = "NotInstalled"
    INSTALLING = "Installing"
    INSTALLED = "Installed"
    CONFIGURED = "Configured"
    UP_TO_DATE = "UpToDate"
    UPDATE_AVAILABLE = "UpdateAvailable"
    UPDATING = "Updating"
    UPDATED = "Updated"
    ROLLED_BACK = "RolledBack"
    FAILED = "Failed"


_TRANSITIONS: Dict[AppState, FrozenSet[AppState]] = {
    AppState.NOT_INSTALLED: frozenset({AppState.INSTALLING, AppState.CONFIGURED, AppState.FAILED}),
    AppState.INSTALLING: frozenset({AppState.INSTALLED, AppState.FAILED}),
    AppState.CONFIGURED: frozenset(
        {AppState.UP_TO_DATE, AppState.UPDATE_AVAILABLE, AppState.FAILED}
    ),
    AppState.UPDATE_AVAILABLE: frozenset({AppState.UPDATING, AppState.FAILED}),
    AppState.UPDATING: frozenset(
        {AppState.UPDATED, AppState.UP_TO_DATE, AppState.ROLLED_BACK, AppState.FAILED}
    ),
}

SUCCESS_STATES = frozenset(
    {AppState.INSTALLED, AppState.UP_TO_DATE, AppState.UPDATE_AVAILABLE, AppState.UPDATED}
)


def can_transition(current: AppState, new: AppState) -> bool:
    return new in _TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class RunConfig:
    """Immutable run settings resolved once at startup."""

    non_interactive: bool = True
    has_domain: bool = False
    domain_name: Optional[str] = None
    email_address: Optional[str] = None
    importer_domain: Optional[str] = None
    db_type: str = "mysql"
    db_name: Optional[str] = None
    db_user: Optional[str] = None
    db_pass: Optional[str] = None
    cron_hour: int = 3
    github_token: Optional[str] = None
    php_version: Optional[str] = None
    firefly_version: Optional[str] = None
    importer_version: Optional[str] = None
    firefly_install_dir: str = "/var/www/firefly-iii"
    importer_install_dir: str = "/var/www/data-importer"
    firefly_temp_dir: str = "/tmp/firefly-iii-temp"
    importer_temp_dir: str = "/tmp/data-importer-temp"
    server_host: str = "localhost"
    timezone: str = "UTC"
    log_dir: str = "/var/log"
    credentials_file: str = "/root/firefly_credentials.txt"
    lock_file: str = "/run/fireflyinstaller.lock"
    backup_retention: int = 3
    verbose: bool = False

    @property
    def interactive(self) -> bool:
        return not self.non_interactive

    def resolved_importer_domain(self) -> Optional[str]:
        if not self.has_domain or not self.domain_name:
            return None
        return self.importer_domain or f"importer.{self.domain_name}"


@dataclass(frozen=True)
class InstallationTarget:
    """One application on disk, as seen at the start of a run."""

    kind: AppKind
    install_dir: str
    temp_dir: str
    required_keys: Tuple[str, ...]
    installed_version: Optional[str] = None
    desired_version: Optional[str] = None


@dataclass
class Credentials:
    db_name: str = ""
    db_user: str = ""
    db_password: str = ""
    app_key: str = ""
    static_cron_token: str = ""
    importer_app_key: str = ""
    db_type: str = "mysql"


@dataclass(frozen=True)
class BackupSnapshot:
    source: str
    destination: str
    created_at: str


@dataclass(frozen=True)
class Mutation:
    kind: str
    identity: str
    action: str
    detail: str = ""


@dataclass
class AppOutcome:
    kind: AppKind
    state: AppState
    installed_version: Optional[str] = None
    previous_version: Optional[str] = None
    backup: Optional[BackupSnapshot] = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state in SUCCESS_STATES


@dataclass
class RunResult:
    outcomes: Dict[AppKind, AppOutcome] = field(default_factory=dict)
    credentials: Optional[Credentials] = None
    credentials_file: Optional[str] = None
    mutations: List[Mutation] = field(default_factory=list)
    log_file: Optional[str] = None
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        if self.error:
            return 1
        if not self.outcomes:
            return 1
        return 0 if all(outcome.succeeded for outcome in self.outcomes.values()) else 1
