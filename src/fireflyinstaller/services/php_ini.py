"""Directive-level editing of ``php.ini`` files."""

import os
import re
import tempfile
from typing import Dict, List, Optional

from fireflyinstaller.errors import InstallerError

PHP_SETTINGS: Dict[str, str] = {
    "memory_limit": "512M",
    "upload_max_filesize": "64M",
    "post_max_size": "64M",
    "max_execution_time": "300",
    "max_input_time": "300",
    "expose_php": "Off",
    "opcache.enable_cli": "1",
    "opcache.memory_consumption": "128",
    "opcache.interned_strings_buffer": "8",
    "opcache.max_accelerated_files": "4000",
    "opcache.revalidate_freq": "60",
}
PHP_SAPIS = ("cli", "apache2", "fpm")

_DIRECTIVE = re.compile(r"^\s*([A-Za-z0-9_.]+)\s*=\s*(.*?)\s*$")
# Only ";name =" placeholders are uncommented; "; name" lines are documentation.
_PLACEHOLDER = re.compile(r"^;([A-Za-z0-9_.]+)\s*=")


def php_settings(timezone: str) -> Dict[str, str]:
    settings = dict(PHP_SETTINGS)
    settings["date.timezone"] = timezone
    return settings


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


class PhpIniFile:
    """A ``php.ini`` kept line for line, with directives changed in place."""

    def __init__(self, path: str, lines: List[str]):
        self.path = path
        self.lines = lines
        self._original = list(lines)

    @classmethod
    def load(cls, path: str) -> "PhpIniFile":
        try:
            with open(path, "r", encoding="utf-8") as file_obj:
                return cls(path, file_obj.read().splitlines())
        except OSError as exc:
            raise InstallerError(f"Could not read PHP configuration '{path}': {exc}") from exc

    def _active(self, key: str) -> List[int]:
        found = []
        for index, line in enumerate(self.lines):
            match = _DIRECTIVE.match(line)
            if match and match.group(1) == key:
                found.append(index)
        return found

    def get(self, key: str) -> Optional[str]:
        indexes = self._active(key)
        if not indexes:
            return None
        return _unquote(_DIRECTIVE.match(self.lines[indexes[-1]]).group(2))

    def ensure(self, key: str, value: str) -> bool:
        """Set ``key`` unless it already holds ``value``; returns whether anything changed."""
        if self.get(key) == value:
            return False

        rendered = f"{key} = {value}"
        indexes = self._active(key)
        if indexes:
            for index in indexes:
                self.lines[index] = rendered
            return True

        for index, line in enumerate(self.lines):
            match = _PLACEHOLDER.match(line)
            if match and match.group(1) == key:
                self.lines[index] = rendered
                return True

        self.lines.append(rendered)
        return True

    @property
    def changed(self) -> bool:
        return self.lines != self._original

    def save(self) -> bool:
        if not self.changed:
            return False
        directory = os.path.dirname(self.path) or "."
        fd, temp_path = tempfile.mkstemp(prefix=".php-ini-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write("\n".join(self.lines) + "\n")
            os.chmod(temp_path, 0o644)
            os.replace(temp_path, self.path)
        except OSError as exc:
            raise InstallerError(f"Could not write PHP configuration '{self.path}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass
        self._original = list(self.lines)
        return True
