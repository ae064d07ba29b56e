"""GitHub release lookup, download with fallback transport and checksum verification."""

import hashlib
import os
import re
import time
from typing import Any, Dict, List, Optional

from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
)

from fireflyinstaller.constants import DOWNLOAD_RETRIES, DOWNLOAD_TIMEOUT
from fireflyinstaller.errors import InstallerError, IntegrityMismatch, ReleaseNotFound
from fireflyinstaller.errors_catalog import actionable_error
from fireflyinstaller.services.versioning import stable_versions, strip_tag_prefix

GITHUB_API = "https://api.github.com"
GITHUB_RAW = "https://raw.githubusercontent.com"
_SHA256 = re.compile(r"\b([a-fA-F0-9]{64})\b")


class ReleaseService:
    """Resolves, downloads and verifies upstream release archives."""

    def __init__(
        self,
        logger,
        console,
        requests_module,
        run_cmd=None,
        github_token: Optional[str] = None,
        timeout: float = DOWNLOAD_TIMEOUT,
        retry_count: int = DOWNLOAD_RETRIES,
        retry_backoff_seconds: float = 2.0,
    ):
        self.logger = logger
        self.console = console
        self.requests = requests_module
        self.run_cmd = run_cmd
        self.github_token = github_token
        self.timeout = timeout
        self.retry_count = max(1, retry_count)
        self.retry_backoff_seconds = retry_backoff_seconds

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/vnd.github+json", "User-Agent": "fireflyinstaller"}
        if self.github_token:
            headers["Authorization"] = f"Bearer {self.github_token}"
        return headers

    def _get_json(self, url: str, repo: str) -> Any:
        try:
            response = self.requests.get(url, headers=self._headers(), timeout=self.timeout)
        except self.requests.RequestException as exc:
            raise InstallerError(f"Could not reach the GitHub API for {repo}: {exc}") from exc

        if response.status_code == 401:
            raise InstallerError(actionable_error("github_bad_credentials"))
        if response.status_code in (403, 429) and (
            response.headers.get("X-RateLimit-Remaining") == "0" or "rate limit" in (response.text or "").lower()
        ):
            raise InstallerError(actionable_error("github_rate_limited", repo=repo))
        if response.status_code == 404:
            raise ReleaseNotFound(f"GitHub returned 404 for {url}")

        try:
            response.raise_for_status()
            return response.json()
        except self.requests.RequestException as exc:
            raise InstallerError(f"GitHub API request failed for {repo}: {exc}") from exc
        except ValueError as exc:
            raise InstallerError(f"GitHub API returned invalid JSON for {repo}.") from exc

    def get_release(self, repo: str, tag: Optional[str] = None) -> Dict[str, Any]:
        if tag:
            url = f"{GITHUB_API}/repos/{repo}/releases/tags/{tag}"
        else:
            url = f"{GITHUB_API}/repos/{repo}/releases/latest"
        try:
            release = self._get_json(url, repo)
        except ReleaseNotFound as exc:
            if tag and not tag.startswith("v"):
                return self.get_release(repo, f"v{tag}")
            raise ReleaseNotFound(f"Release {tag or 'latest'} not found for {repo}.") from exc
        if not isinstance(release, dict) or not release.get("tag_name"):
            raise ReleaseNotFound(f"Release {tag or 'latest'} for {repo} has no tag.")
        return release

    def list_release_tags(self, repo: str, limit: int = 10) -> List[str]:
        """Stable release tags, newest first."""
        releases = self._get_json(f"{GITHUB_API}/repos/{repo}/releases?per_page={max(limit, 10)}", repo)
        tags = [
            release["tag_name"]
            for release in releases or []
            if release.get("tag_name") and not release.get("draft") and not release.get("prerelease")
        ]
        stable = set(stable_versions(strip_tag_prefix(tag) for tag in tags))
        return [tag for tag in tags if strip_tag_prefix(tag) in stable][:limit]

    def fetch_raw_file(self, repo: str, ref: str, path: str) -> Optional[str]:
        url = f"{GITHUB_RAW}/{repo}/{ref}/{path}"
        try:
            response = self.requests.get(url, timeout=self.timeout)
            response.raise_for_status()
        except self.requests.RequestException as exc:
            self.logger.warning("Could not fetch %s: %s", url, exc)
            return None
        return response.text

    @staticmethod
    def find_asset(release: Dict[str, Any], pattern: str) -> Optional[Dict[str, Any]]:
        regex = re.compile(pattern)
        for asset in release.get("assets", []):
            if regex.search(asset.get("name", "")):
                return asset
        return None

    def download_file(self, url: str, dest_path: str, description: str = "Downloading..."):
        os.makedirs(os.path.dirname(dest_path) or ".", exist_ok=True)
        last_error: Optional[Exception] = None

        for attempt in range(1, self.retry_count + 1):
            try:
                self._download_with_requests(url, dest_path, description)
                return
            except self.requests.RequestException as exc:
                last_error = exc
                self.logger.warning("Download attempt %s/%s failed for %s: %s", attempt, self.retry_count, url, exc)
                self._discard(dest_path)
                if attempt < self.retry_count:
                    time.sleep(self.retry_backoff_seconds)

        if self.run_cmd is None:
            raise InstallerError(actionable_error("download_failed", url=url)) from last_error

        self.console.print("[yellow]Primary download failed, retrying with curl...[/yellow]")
        try:
            self.run_cmd(
                [
                    "curl",
                    "--fail",
                    "--location",
                    "--silent",
                    "--show-error",
                    "--retry",
                    str(self.retry_count),
                    "--max-time",
                    str(int(self.timeout * 10)),
                    "--connect-timeout",
                    str(int(self.timeout)),
                    "--output",
                    dest_path,
                    url,
                ],
                capture_output=True,
            )
        except InstallerError as exc:
            self._discard(dest_path)
            raise InstallerError(actionable_error("download_failed", url=url)) from exc

    def _download_with_requests(self, url: str, dest_path: str, description: str):
        with self.requests.get(url, stream=True, timeout=self.timeout, headers={"User-Agent": "fireflyinstaller"}) as response:
            response.raise_for_status()
            total_size = int(response.headers.get("Content-Length", 0))

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                "•",
                TimeElapsedColumn(),
                console=self.console,
            ) as progress:
                task = progress.add_task(f"[cyan]{description}", total=total_size or None)
                with open(dest_path, "wb") as file_obj:
                    for chunk in response.iter_content(chunk_size=8192):
                        if not chunk:
                            continue
                        file_obj.write(chunk)
                        progress.update(task, advance=len(chunk))

    @staticmethod
    def sha256_of(path: str) -> str:
        hasher = hashlib.sha256()
        with open(path, "rb") as file_obj:
            for chunk in iter(lambda: file_obj.read(65536), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    @staticmethod
    def parse_checksum(content: str) -> Optional[str]:
        match = _SHA256.search(content or "")
        return match.group(1).lower() if match else None

    def verify_checksum(self, archive_path: str, checksum_path: str):
        with open(checksum_path, "r", encoding="utf-8", errors="replace") as file_obj:
            expected = self.parse_checksum(file_obj.read())
        if not expected:
            self._discard(archive_path)
            raise IntegrityMismatch(f"Checksum file {checksum_path} does not contain a SHA-256 digest.")

        actual = self.sha256_of(archive_path)
        if actual != expected:
            self._discard(archive_path)
            raise IntegrityMismatch(
                actionable_error(
                    "checksum_mismatch",
                    filename=os.path.basename(archive_path),
                    expected=expected,
                    actual=actual,
                )
            )
        self.logger.info("Checksum verified for %s", os.path.basename(archive_path))

    def acquire(self, repo: str, dest_dir: str, asset_pattern: str, tag: Optional[str] = None) -> str:
        """Download the release archive for ``tag`` (latest when None) and return its local path."""
        release = self.get_release(repo, tag)
        asset = self.find_asset(release, asset_pattern)
        if asset is None:
            raise ReleaseNotFound(
                actionable_error(
                    "release_not_found",
                    pattern=asset_pattern,
                    repo=repo,
                    tag=release.get("tag_name", tag or "latest"),
                )
            )

        name = asset["name"]
        archive_path = os.path.join(dest_dir, name)
        self.download_file(asset["browser_download_url"], archive_path, f"Downloading {name}...")

        checksum_asset = next(
            (item for item in release.get("assets", []) if item.get("name") == f"{name}.sha256"),
            None,
        )
        if checksum_asset is None:
            message = f"No checksum published for {name}; continuing without verification."
            self.console.print(f"[yellow]{message}[/yellow]")
            self.logger.warning(message)
            return archive_path

        checksum_path = f"{archive_path}.sha256"
        self.download_file(checksum_asset["browser_download_url"], checksum_path, f"Downloading {name}.sha256...")
        try:
            self.verify_checksum(archive_path, checksum_path)
        finally:
            self._discard(checksum_path)
        return archive_path

    @staticmethod
    def _discard(path: str):
        try:
            os.remove(path)
        except OSError:
            pass
