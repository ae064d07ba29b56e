import hashlib
import json

import pytest
from rich.console import Console

from fireflyinstaller.errors import InstallerError, IntegrityMismatch, ReleaseNotFound
from fireflyinstaller.services.release import GITHUB_API, GITHUB_RAW, ReleaseService

REPO = "firefly-iii/firefly-iii"
ASSET_PATTERN = r"^FireflyIII-v?[\d.]+\.zip$"
ARCHIVE_BYTES = b"PK-firefly-release"


class DummyLogger:
    def info(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None

    def debug(self, *_args, **_kwargs):
        return None


class FakeResponse:
    def __init__(self, status_code=200, payload=None, body=b"", headers=None, text=None):
        self.status_code = status_code
        self.payload = payload
        self.body = body
        self.headers = headers or {"Content-Length": str(len(body))}
        self.text = text if text is not None else (json.dumps(payload) if payload is not None else body.decode())

    def raise_for_status(self):
        if self.status_code >= 400:
            raise FakeRequestsModule.RequestException(f"HTTP {self.status_code}")

    def json(self):
        if self.payload is None:
            raise ValueError("no json")
        return self.payload

    def iter_content(self, chunk_size=8192):
        yield self.body

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeRequestsModule:
    class RequestException(Exception):
        pass

    def __init__(self, routes):
        self.routes = routes
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs))
        route = self.routes.get(url)
        if route is None:
            return FakeResponse(status_code=404, text="Not Found")
        if isinstance(route, Exception):
            raise route
        return route


class RecordingRunner:
    def __init__(self, fail=False):
        self.commands = []
        self.fail = fail

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        if self.fail:
            raise InstallerError("curl failed")
        output = cmd[cmd.index("--output") + 1]
        with open(output, "wb") as file_obj:
            file_obj.write(ARCHIVE_BYTES)


def build_service(routes, run_cmd=None, github_token=None):
    return ReleaseService(
        logger=DummyLogger(),
        console=Console(record=True),
        requests_module=FakeRequestsModule(routes),
        run_cmd=run_cmd,
        github_token=github_token,
        retry_count=2,
        retry_backoff_seconds=0.0,
    )


def release_payload(tag="v6.1.0", with_checksum=True):
    name = f"FireflyIII-{tag}.zip"
    assets = [{"name": name, "browser_download_url": f"https://downloads.example/{name}"}]
    if with_checksum:
        assets.append({"name": f"{name}.sha256", "browser_download_url": f"https://downloads.example/{name}.sha256"})
    return {"tag_name": tag, "assets": assets}


def release_routes(checksum_text, tag="v6.1.0", with_checksum=True):
    name = f"FireflyIII-{tag}.zip"
    routes = {
        f"{GITHUB_API}/repos/{REPO}/releases/latest": FakeResponse(payload=release_payload(tag, with_checksum)),
        f"https://downloads.example/{name}": FakeResponse(body=ARCHIVE_BYTES),
    }
    if with_checksum:
        routes[f"https://downloads.example/{name}.sha256"] = FakeResponse(body=checksum_text.encode())
    return routes


def test_acquire_downloads_and_verifies_checksum(tmp_path):
    digest = hashlib.sha256(ARCHIVE_BYTES).hexdigest()
    service = build_service(release_routes(f"{digest}  FireflyIII-v6.1.0.zip\n"))

    archive = service.acquire(REPO, str(tmp_path), ASSET_PATTERN)

    assert archive == str(tmp_path / "FireflyIII-v6.1.0.zip")
    assert (tmp_path / "FireflyIII-v6.1.0.zip").read_bytes() == ARCHIVE_BYTES
    assert not (tmp_path / "FireflyIII-v6.1.0.zip.sha256").exists()


def test_acquire_rejects_mismatched_checksum_and_removes_archive(tmp_path):
    service = build_service(release_routes(f"{'0' * 64}  FireflyIII-v6.1.0.zip\n"))

    with pytest.raises(IntegrityMismatch, match="Checksum mismatch"):
        service.acquire(REPO, str(tmp_path), ASSET_PATTERN)

    assert list(tmp_path.iterdir()) == []


def test_acquire_continues_without_published_checksum(tmp_path):
    service = build_service(release_routes("", with_checksum=False))

    archive = service.acquire(REPO, str(tmp_path), ASSET_PATTERN)

    assert (tmp_path / "FireflyIII-v6.1.0.zip").exists()
    assert archive.endswith("FireflyIII-v6.1.0.zip")


def test_acquire_raises_when_no_asset_matches(tmp_path):
    routes = {
        f"{GITHUB_API}/repos/{REPO}/releases/latest": FakeResponse(
            payload={"tag_name": "v6.1.0", "assets": [{"name": "source.tar.gz"}]}
        )
    }
    service = build_service(routes)

    with pytest.raises(ReleaseNotFound, match="No release asset matching"):
        service.acquire(REPO, str(tmp_path), ASSET_PATTERN)


def test_get_release_retries_tag_with_v_prefix():
    routes = {f"{GITHUB_API}/repos/{REPO}/releases/tags/v6.1.0": FakeResponse(payload=release_payload())}
    service = build_service(routes)

    assert service.get_release(REPO, "6.1.0")["tag_name"] == "v6.1.0"


def test_get_release_reports_rate_limit():
    routes = {
        f"{GITHUB_API}/repos/{REPO}/releases/latest": FakeResponse(
            status_code=403,
            headers={"X-RateLimit-Remaining": "0"},
            text="API rate limit exceeded",
        )
    }
    service = build_service(routes)

    with pytest.raises(InstallerError, match="GITHUB_TOKEN"):
        service.get_release(REPO)


def test_get_release_reports_bad_credentials():
    routes = {f"{GITHUB_API}/repos/{REPO}/releases/latest": FakeResponse(status_code=401, text="Bad credentials")}
    service = build_service(routes, github_token="expired")

    with pytest.raises(InstallerError, match="rejected the configured GITHUB_TOKEN"):
        service.get_release(REPO)
    _, kwargs = service.requests.calls[0]
    assert kwargs["headers"]["Authorization"] == "Bearer expired"


def test_list_release_tags_filters_prereleases_and_drafts():
    releases = [
        {"tag_name": "v6.2.0-beta.1", "prerelease": True},
        {"tag_name": "v6.1.1"},
        {"tag_name": "v6.1.0", "draft": True},
        {"tag_name": "v6.0.9"},
    ]
    routes = {f"{GITHUB_API}/repos/{REPO}/releases?per_page=10": FakeResponse(payload=releases)}
    service = build_service(routes)

    assert service.list_release_tags(REPO, limit=10) == ["v6.1.1", "v6.0.9"]


def test_fetch_raw_file_returns_none_on_error():
    routes = {f"{GITHUB_RAW}/{REPO}/v6.1.0/composer.json": FakeResponse(status_code=500, text="oops")}
    service = build_service(routes)

    assert service.fetch_raw_file(REPO, "v6.1.0", "composer.json") is None


def test_download_falls_back_to_curl(tmp_path):
    url = "https://downloads.example/FireflyIII-v6.1.0.zip"
    runner = RecordingRunner()
    service = build_service({url: FakeRequestsModule.RequestException("connection reset")}, run_cmd=runner)

    service.download_file(url, str(tmp_path / "release.zip"))

    assert runner.commands[0][0] == "curl"
    assert (tmp_path / "release.zip").read_bytes() == ARCHIVE_BYTES
    assert len(service.requests.calls) == 2


def test_download_failure_without_fallback_is_actionable(tmp_path):
    url = "https://downloads.example/FireflyIII-v6.1.0.zip"
    service = build_service({url: FakeRequestsModule.RequestException("connection reset")})

    with pytest.raises(InstallerError, match="Suggested action"):
        service.download_file(url, str(tmp_path / "release.zip"))
