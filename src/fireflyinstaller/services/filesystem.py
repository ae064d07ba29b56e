"""Filesystem helpers for FireflyInstaller."""

import logging
import os
import shutil

from rich.console import Console

from fireflyinstaller.errors import InstallerError

CRITICAL_PATHS = frozenset(
    {"/", "/bin", "/boot", "/dev", "/etc", "/home", "/lib", "/opt", "/proc", "/root", "/sbin", "/sys", "/tmp", "/usr", "/var", "/var/www"}
)


class FileSystemService:
    """Encapsulates file and directory side effects."""

    def __init__(self, logger: logging.Logger, console: Console):
        self.logger = logger
        self.console = console

    def set_permissions(self, path: str, mode: int):
        try:
            os.chmod(path, mode)
        except OSError as exc:
            self.logger.warning("Could not set permissions on %s: %s", path, exc)

    def set_tree_permissions(self, root: str, dir_mode: int, file_mode: int):
        if not os.path.exists(root):
            return

        self.set_permissions(root, dir_mode)
        for current_root, dirs, files in os.walk(root):
            for directory in dirs:
                self.set_permissions(os.path.join(current_root, directory), dir_mode)
            for file_name in files:
                path = os.path.join(current_root, file_name)
                if not os.path.islink(path):
                    self.set_permissions(path, file_mode)

    def chown(self, path: str, user: str, group: str):
        try:
            shutil.chown(path, user=user, group=group)
        except (LookupError, OSError) as exc:
            self.logger.warning("Could not change ownership of %s to %s:%s: %s", path, user, group, exc)

    def chown_tree(self, root: str, user: str, group: str):
        if not os.path.exists(root):
            return

        try:
            shutil.chown(root, user=user, group=group)
        except (LookupError, OSError) as exc:
            self.logger.warning("Could not change ownership of %s to %s:%s: %s", root, user, group, exc)
            return

        for current_root, dirs, files in os.walk(root):
            for name in dirs + files:
                path = os.path.join(current_root, name)
                if os.path.islink(path):
                    continue
                try:
                    shutil.chown(path, user=user, group=group)
                except OSError as exc:
                    self.logger.warning("Could not change ownership of %s: %s", path, exc)

    def move(self, source: str, destination: str):
        try:
            shutil.move(source, destination)
        except OSError as exc:
            raise InstallerError(f"Could not move {source} to {destination}: {exc}") from exc
        self.logger.debug("Moved %s to %s", source, destination)

    def safe_remove_directory(self, path: str):
        normalized = os.path.normpath(os.path.abspath(path))
        if normalized in CRITICAL_PATHS:
            raise InstallerError(f"Refusing to remove critical directory: {normalized}")
        if os.path.islink(normalized):
            os.remove(normalized)
            return
        if os.path.exists(normalized):
            shutil.rmtree(normalized)
            self.logger.debug("Removed directory: %s", normalized)

    def cleanup_dir(self, path: str):
        if os.path.exists(path):
            try:
                shutil.rmtree(path)
                self.logger.debug("Removed directory: %s", path)
            except OSError as exc:
                message = f"Warning: Could not remove {path}: {exc}"
                self.console.print(f"[yellow]{message}[/yellow]")
                self.logger.warning(message)
