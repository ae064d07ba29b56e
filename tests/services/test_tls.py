import subprocess

import pytest
from rich.console import Console

from fireflyinstaller.errors import CreationFailed, InstallerError
from fireflyinstaller.services.tls import CertbotService


class DummyLogger:
    def warning(self, *_args, **_kwargs):
        return None


class FakeWebServer:
    def __init__(self):
        self.events = []

    def stop(self):
        self.events.append("stop")

    def start(self):
        self.events.append("start")


class CertbotRunner:
    def __init__(self, live_dir, fail_plugins=(), returncodes=None, stdout=""):
        self.live_dir = live_dir
        self.fail_plugins = set(fail_plugins)
        self.returncodes = returncodes or {}
        self.stdout = stdout
        self.calls = []

    def __call__(self, cmd, check=True, **_kwargs):
        self.calls.append(cmd)
        if cmd[:2] == ["certbot", "certonly"]:
            if cmd[2] in self.fail_plugins:
                raise InstallerError(f"certbot {cmd[2]} failed")
            domain = cmd[cmd.index("-d") + 1]
            directory = self.live_dir / domain
            directory.mkdir(parents=True, exist_ok=True)
            for name in ("fullchain.pem", "privkey.pem"):
                (directory / name).write_text("pem", encoding="utf-8")
        returncode = self.returncodes.get(cmd[0], 0)
        return subprocess.CompletedProcess(cmd, returncode, stdout=self.stdout, stderr="")


def build_service(tmp_path, runner):
    web_server = FakeWebServer()
    service = CertbotService(runner, web_server, DummyLogger(), Console(record=True), live_dir=str(tmp_path))
    return service, web_server


def test_issue_uses_standalone_and_restarts_apache(tmp_path):
    runner = CertbotRunner(tmp_path)
    service, web_server = build_service(tmp_path, runner)

    service.issue("money.example.com", "ops@example.com")

    assert web_server.events == ["stop", "start"]
    assert runner.calls[0][2] == "--standalone"
    assert service.has_certificate("money.example.com")


def test_issue_falls_back_to_apache_plugin(tmp_path):
    runner = CertbotRunner(tmp_path, fail_plugins={"--standalone"})
    service, web_server = build_service(tmp_path, runner)

    service.issue("money.example.com", "ops@example.com")

    assert [call[2] for call in runner.calls] == ["--standalone", "--apache"]
    assert web_server.events == ["stop", "start"]


def test_issue_failure_raises_creation_failed(tmp_path):
    runner = CertbotRunner(tmp_path, fail_plugins={"--standalone", "--apache"})
    service, _ = build_service(tmp_path, runner)

    with pytest.raises(CreationFailed, match="money.example.com"):
        service.issue("money.example.com", "ops@example.com")


def test_expiry_and_timer_checks(tmp_path):
    expiring = CertbotRunner(tmp_path, returncodes={"openssl": 1}, stdout="certbot.timer")
    service, _ = build_service(tmp_path, expiring)

    assert service.expires_soon("money.example.com")
    assert service.has_renewal_timer()

    valid = CertbotRunner(tmp_path, stdout="apt-daily.timer")
    service, _ = build_service(tmp_path, valid)
    assert not service.expires_soon("money.example.com")
    assert not service.has_renewal_timer()
