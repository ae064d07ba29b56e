"""Version comparison and runtime compatibility resolution."""

import json
import operator
import re
from typing import Callable, Dict, Iterable, List, NamedTuple, Optional

from packaging.version import InvalidVersion as PackagingInvalidVersion
from packaging.version import Version

from fireflyinstaller.constants import MAX_RELEASES_TO_CHECK
from fireflyinstaller.errors import InvalidOperator, InvalidVersion

_OPERATORS: Dict[str, Callable[[int, int], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "=": operator.eq,
}

_REQUIREMENT_TRIPLE = re.compile(r"(\d+)\.(\d+)\.(\d+)")
_REQUIREMENT_PAIR = re.compile(r"(\d+)\.(\d+)")


class RuntimeVersion(NamedTuple):
    major: int
    minor: int
    patch: int = 0

    @classmethod
    def parse(cls, value: str) -> "RuntimeVersion":
        text = str(value).strip()
        if text[:1] in ("v", "V"):
            text = text[1:]
        segments = text.split(".") if text else []
        if not segments or len(segments) > 3 or not all(segment.isdigit() for segment in segments):
            raise InvalidVersion(f"Invalid version string: {value!r}")
        numbers = [int(segment) for segment in segments] + [0] * (3 - len(segments))
        return cls(*numbers)

    @property
    def key(self) -> int:
        return self.major * 10000 + self.minor * 100 + self.patch

    @property
    def major_minor(self) -> str:
        return f"{self.major}.{self.minor}"

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


def compare_versions(left: str, op: str, right: str) -> bool:
    """Compare two dotted versions numerically, padding missing segments with zero."""
    if op not in _OPERATORS:
        raise InvalidOperator(f"Unknown comparison operator: {op!r}")
    return _OPERATORS[op](RuntimeVersion.parse(left).key, RuntimeVersion.parse(right).key)


def strip_tag_prefix(tag: str) -> str:
    return tag[1:] if tag[:1] in ("v", "V") else tag


def parse_runtime_requirement(constraint: Optional[str]) -> Optional[str]:
    """Extract the minimum runtime from a composer constraint such as ``>=8.2`` or ``^8.3.0``."""
    if not constraint:
        return None
    triple = _REQUIREMENT_TRIPLE.search(constraint)
    if triple:
        return ".".join(triple.groups())
    pair = _REQUIREMENT_PAIR.search(constraint)
    if pair:
        return ".".join(pair.groups()) + ".0"
    return None


def stable_versions(versions: Iterable[str]) -> List[str]:
    """Drop pre-releases and unparsable entries, sorted ascending."""
    parsed = []
    for value in versions:
        try:
            candidate = Version(value)
        except PackagingInvalidVersion:
            continue
        if candidate.is_prerelease or candidate.is_devrelease:
            continue
        parsed.append((candidate, value))
    return [value for _, value in sorted(set(parsed))]


def latest_stable(versions: Iterable[str]) -> Optional[str]:
    ordered = stable_versions(versions)
    return ordered[-1] if ordered else None


class CompatibilityResolver:
    """Matches application releases against runtime versions."""

    def __init__(self, release_service, logger, console, max_releases: int = MAX_RELEASES_TO_CHECK):
        self.release_service = release_service
        self.logger = logger
        self.console = console
        self.max_releases = max_releases

    def find_compatible_runtime(self, min_version: str, available_versions: Iterable[str]) -> Optional[str]:
        candidates = stable_versions(available_versions)
        required = RuntimeVersion.parse(min_version)

        for candidate in candidates:
            if RuntimeVersion.parse(candidate).major_minor == required.major_minor:
                return candidate

        for candidate in candidates:
            if compare_versions(candidate, ">=", min_version):
                return candidate
        return None

    def required_runtime(self, repo: str, tag: str) -> Optional[str]:
        content = self.release_service.fetch_raw_file(repo, tag, "composer.json")
        if not content:
            return None
        try:
            manifest = json.loads(content)
        except ValueError:
            self.logger.warning("composer.json for %s %s is not valid JSON.", repo, tag)
            return None
        constraint = (manifest.get("require") or {}).get("php")
        return parse_runtime_requirement(constraint)

    def is_release_compatible(self, repo: str, tag: str, current_runtime: str) -> bool:
        required = self.required_runtime(repo, tag)
        if required is None:
            message = f"Could not determine the PHP requirement for {tag}; proceeding with caution."
            self.console.print(f"[yellow]{message}[/yellow]")
            self.logger.warning(message)
            return True
        compatible = compare_versions(current_runtime, ">=", required)
        self.logger.info(
            "Release %s requires PHP >= %s; current PHP %s is %s.",
            tag,
            required,
            current_runtime,
            "compatible" if compatible else "incompatible",
        )
        return compatible

    def find_compatible_release(
        self,
        repo: str,
        current_runtime: str,
        release_tags: List[str],
        max_to_check: Optional[int] = None,
    ) -> Optional[str]:
        limit = max_to_check if max_to_check is not None else self.max_releases
        for tag in release_tags[:limit]:
            required = self.required_runtime(repo, tag)
            if required is None:
                self.logger.warning("Skipping release %s: PHP requirement could not be determined.", tag)
                continue
            if compare_versions(current_runtime, ">=", required):
                self.logger.info("Release %s is compatible with PHP %s.", tag, current_runtime)
                return tag
            self.logger.debug("Release %s requires PHP >= %s.", tag, required)
        return None
