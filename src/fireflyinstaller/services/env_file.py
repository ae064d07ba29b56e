"""Key-value access to Laravel style ``.env`` files."""

import os
import re
import tempfile
from typing import Dict, List, Optional, Union

from fireflyinstaller.errors import InstallerError

_ASSIGNMENT = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=(.*)$")
_NEEDS_QUOTES = re.compile(r"[\s#\"'$\\]")


class _Line:
    __slots__ = ("raw", "key", "value")

    def __init__(self, raw: str, key: Optional[str] = None, value: Optional[str] = None):
        self.raw = raw
        self.key = key
        self.value = value


class EnvFile:
    """Parsed ``.env`` file that keeps comments, ordering and unknown keys intact."""

    def __init__(self, path: str, lines: Optional[List[_Line]] = None):
        self.path = path
        self._lines: List[_Line] = lines or []
        self._original = self.render()

    @classmethod
    def load(cls, path: str) -> "EnvFile":
        if not os.path.exists(path):
            return cls(path)
        try:
            with open(path, "r", encoding="utf-8") as file_obj:
                text = file_obj.read()
        except OSError as exc:
            raise InstallerError(f"Could not read environment file '{path}': {exc}") from exc
        return cls.parse(path, text)

    @classmethod
    def parse(cls, path: str, text: str) -> "EnvFile":
        lines = []
        for raw in text.splitlines():
            match = _ASSIGNMENT.match(raw)
            if match and not raw.lstrip().startswith("#"):
                lines.append(_Line(raw, match.group(1), _unquote(match.group(2).strip())))
            else:
                lines.append(_Line(raw))
        return cls(path, lines)

    def keys(self) -> List[str]:
        return [line.key for line in self._lines if line.key]

    def has(self, key: str) -> bool:
        return any(line.key == key for line in self._lines)

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for line in reversed(self._lines):
            if line.key == key:
                return line.value
        return default

    def set(self, key: str, value: Union[str, int, bool]):
        text = _stringify(value)
        rendered = f"{key}={_quote(text)}"
        found = False
        kept = []
        for line in self._lines:
            if line.key == key:
                if found:
                    continue
                found = True
                line = _Line(rendered, key, text)
            kept.append(line)
        if not found:
            kept.append(_Line(rendered, key, text))
        self._lines = kept

    def ensure(self, key: str, value: Union[str, int, bool]) -> bool:
        """Set ``key`` only when it differs; returns whether anything changed."""
        if self.get(key) == _stringify(value):
            return False
        self.set(key, value)
        return True

    def ensure_default(self, key: str, value: Union[str, int, bool], placeholders=()) -> bool:
        """Set ``key`` only when it is missing, empty or a known placeholder."""
        current = self.get(key)
        if current and current not in placeholders:
            return False
        self.set(key, value)
        return True

    def remove(self, key: str) -> bool:
        before = len(self._lines)
        self._lines = [line for line in self._lines if line.key != key]
        return len(self._lines) != before

    def as_dict(self) -> Dict[str, str]:
        return {line.key: line.value or "" for line in self._lines if line.key}

    def render(self) -> str:
        if not self._lines:
            return ""
        return "\n".join(line.raw for line in self._lines) + "\n"

    @property
    def changed(self) -> bool:
        return self.render() != self._original

    def save(self, mode: Optional[int] = None) -> bool:
        """Write the file atomically when its content changed."""
        content = self.render()
        if os.path.exists(self.path) and content == self._original:
            return False

        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=".env-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
            if mode is not None:
                os.chmod(temp_path, mode)
            os.replace(temp_path, self.path)
        except OSError as exc:
            raise InstallerError(f"Could not write environment file '{self.path}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

        self._original = content
        return True


def _stringify(value: Union[str, int, bool]) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quote(value: str) -> str:
    if value == "" or not _NEEDS_QUOTES.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return value[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    if len(value) >= 2 and value[0] == value[-1] == "'":
        return value[1:-1]
    if " #" in value:
        value = value.split(" #", 1)[0].rstrip()
    return value
