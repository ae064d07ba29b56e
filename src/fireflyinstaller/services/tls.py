"""certbot based TLS certificate issuer."""

import os

from fireflyinstaller.constants import CERT_RENEWAL_SECONDS, LETSENCRYPT_LIVE_DIR
from fireflyinstaller.errors import CreationFailed, InstallerError
from fireflyinstaller.errors_catalog import actionable_error


class CertbotService:
    """Issues and renews Let's Encrypt certificates."""

    def __init__(self, run_cmd, web_server, logger, console, live_dir: str = LETSENCRYPT_LIVE_DIR):
        self.run_cmd = run_cmd
        self.web_server = web_server
        self.logger = logger
        self.console = console
        self.live_dir = live_dir

    def certificate_dir(self, domain: str) -> str:
        return os.path.join(self.live_dir, domain)

    def has_certificate(self, domain: str) -> bool:
        directory = self.certificate_dir(domain)
        return all(os.path.exists(os.path.join(directory, name)) for name in ("fullchain.pem", "privkey.pem"))

    def expires_soon(self, domain: str, seconds: int = CERT_RENEWAL_SECONDS) -> bool:
        certificate = os.path.join(self.certificate_dir(domain), "fullchain.pem")
        result = self.run_cmd(
            ["openssl", "x509", "-checkend", str(seconds), "-noout", "-in", certificate],
            check=False,
            capture_output=True,
        )
        return result.returncode != 0

    def renew(self, domain: str) -> bool:
        result = self.run_cmd(
            ["certbot", "renew", "--cert-name", domain, "--quiet", "--non-interactive"],
            check=False,
            capture_output=True,
        )
        return result.returncode == 0

    def issue(self, domain: str, email: str):
        self.console.print(f"[blue]Requesting a TLS certificate for {domain}...[/blue]")
        base = ["--non-interactive", "--agree-tos", "--email", email, "-d", domain]

        self.web_server.stop()
        try:
            self.run_cmd(["certbot", "certonly", "--standalone"] + base, capture_output=True)
            return
        except InstallerError as exc:
            self.logger.warning("Standalone issuance for %s failed, trying the Apache plugin: %s", domain, exc)
        finally:
            self.web_server.start()

        try:
            self.run_cmd(["certbot", "certonly", "--apache"] + base, capture_output=True)
        except InstallerError as exc:
            raise CreationFailed(actionable_error("certificate_failed", domain=domain)) from exc

        if not self.has_certificate(domain):
            raise CreationFailed(actionable_error("certificate_failed", domain=domain))

    def has_renewal_timer(self) -> bool:
        result = self.run_cmd(
            ["systemctl", "list-timers", "--all", "--no-pager"],
            check=False,
            capture_output=True,
        )
        return result.returncode == 0 and "certbot" in (result.stdout or "")
