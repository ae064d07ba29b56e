"""Installation snapshots taken before destructive operations."""

import os
import secrets
import shutil
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from fireflyinstaller.errors import InstallerError
from fireflyinstaller.errors_catalog import actionable_error
from fireflyinstaller.models import BackupSnapshot

BACKUP_MARKER = "-backup-"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
CRITICAL_FILES = (".env", "artisan", "composer.json")
CRITICAL_DIRS = ("app", "config", "public", "storage")


def unique_path(path: str, token_factory: Callable[[], str] = lambda: secrets.token_hex(2)) -> str:
    """Return ``path`` or a random-suffixed sibling when ``path`` is already taken."""
    candidate = path
    while os.path.lexists(candidate):
        candidate = f"{path}_{token_factory()}"
    return candidate


class BackupManager:
    """Copies installation directories aside and restores them on failure."""

    def __init__(self, filesystem_service, logger, console, clock: Optional[Callable[[], datetime]] = None):
        self.filesystem_service = filesystem_service
        self.logger = logger
        self.console = console
        self.clock = clock or datetime.now

    def backup_path_for(self, source: str) -> str:
        timestamp = self.clock().strftime(TIMESTAMP_FORMAT)
        return unique_path(f"{source.rstrip(os.sep)}{BACKUP_MARKER}{timestamp}")

    def missing_items(self, source: str, backup: str) -> Tuple[List[str], List[str]]:
        """Critical items absent from ``backup``, split by whether ``source`` has them."""
        lost, absent = [], []
        checks = [(name, name, os.path.isfile) for name in CRITICAL_FILES]
        checks += [(name, f"{name}/", os.path.isdir) for name in CRITICAL_DIRS]
        for name, label, exists in checks:
            if exists(os.path.join(backup, name)):
                continue
            if exists(os.path.join(source, name)):
                lost.append(label)
            else:
                absent.append(label)
        return lost, absent

    def verify(self, snapshot: BackupSnapshot):
        """Reject a backup that lost items or does not look like an installation at all."""
        lost, absent = self.missing_items(snapshot.source, snapshot.destination)
        if lost or len(absent) > (len(CRITICAL_FILES) + len(CRITICAL_DIRS)) // 2:
            self.filesystem_service.cleanup_dir(snapshot.destination)
            raise InstallerError(
                actionable_error("backup_incomplete", path=snapshot.source, missing=", ".join(lost + absent))
            )
        if absent:
            self.console.print(f"[yellow]Backup of {snapshot.source} has no {', '.join(absent)}.[/yellow]")
            self.logger.warning("Backup %s is missing %s", snapshot.destination, ", ".join(absent))
        self.logger.info("Backup verified: %s", snapshot.destination)

    def snapshot(self, path: str, verify: bool = False) -> BackupSnapshot:
        if not os.path.isdir(path):
            raise InstallerError(f"Cannot back up {path}: directory does not exist.")

        destination = self.backup_path_for(path)
        self.console.print(f"[blue]Backing up {path} to {destination}...[/blue]")
        try:
            shutil.copytree(path, destination, symlinks=True, copy_function=shutil.copy2)
            shutil.copystat(path, destination)
        except (OSError, shutil.Error) as exc:
            self.filesystem_service.cleanup_dir(destination)
            raise InstallerError(f"Backup of {path} failed: {exc}") from exc

        self.logger.info("Backup created: %s -> %s", path, destination)
        snapshot = BackupSnapshot(
            source=path,
            destination=destination,
            created_at=self.clock().isoformat(timespec="seconds"),
        )
        if verify:
            self.verify(snapshot)
        return snapshot

    def restore(self, snapshot: BackupSnapshot, original_path: Optional[str] = None):
        target = original_path or snapshot.source
        if not os.path.isdir(snapshot.destination):
            raise InstallerError(actionable_error("restore_failed", path=target, backup=snapshot.destination))

        self.console.print(f"[yellow]Restoring {target} from {snapshot.destination}...[/yellow]")
        try:
            self.filesystem_service.safe_remove_directory(target)
            os.replace(snapshot.destination, target)
        except OSError as exc:
            raise InstallerError(
                actionable_error("restore_failed", path=target, backup=snapshot.destination)
            ) from exc
        self.logger.info("Restored %s from %s", target, snapshot.destination)

    def list_backups(self, source: str) -> List[str]:
        parent = os.path.dirname(source.rstrip(os.sep)) or "."
        prefix = os.path.basename(source.rstrip(os.sep)) + BACKUP_MARKER
        if not os.path.isdir(parent):
            return []
        found = [
            os.path.join(parent, name)
            for name in os.listdir(parent)
            if name.startswith(prefix) and os.path.isdir(os.path.join(parent, name))
        ]
        return sorted(found, key=lambda item: os.path.basename(item)[len(prefix):])

    def prune(self, source: str, keep: int) -> List[str]:
        """Remove all but the newest ``keep`` backups of ``source``."""
        if keep <= 0:
            return []
        backups = self.list_backups(source)
        stale = backups[:-keep] if len(backups) > keep else []
        for path in stale:
            self.filesystem_service.safe_remove_directory(path)
            self.logger.info("Pruned old backup: %s", path)
        return stale
