"""Generated secrets and the operator facing credentials file."""

import os
import secrets
import string
import tempfile
from typing import Optional

from fireflyinstaller.constants import SECRET_FILE_MODE
from fireflyinstaller.errors import InstallerError
from fireflyinstaller.models import Credentials

ADJECTIVES = ("brave", "happy", "clever", "bold", "calm", "keen", "quick", "bright")
NOUNS = ("sparrow", "lion", "eagle", "falcon", "tiger", "whale", "dolphin", "panther")
PASSWORD_SYMBOLS = "!%*-_=+.,"


def generate_name(prefix: str, rng=secrets) -> str:
    return f"{prefix}_{rng.choice(ADJECTIVES)}_{rng.choice(NOUNS)}"


def generate_password(length: int = 16) -> str:
    """Random password with letters, digits and symbols that need no quoting in ``.env``."""
    alphabet = string.ascii_letters + string.digits + PASSWORD_SYMBOLS
    while True:
        password = "".join(secrets.choice(alphabet) for _ in range(length))
        if (
            any(char.islower() for char in password)
            and any(char.isupper() for char in password)
            and any(char.isdigit() for char in password)
            and any(char in PASSWORD_SYMBOLS for char in password)
        ):
            return password


def generate_token() -> str:
    return secrets.token_hex(16)


class CredentialVault:
    """Writes the credentials summary with root-only permissions, optionally gpg encrypted."""

    def __init__(self, run_cmd, logger, console, credentials_file: str):
        self.run_cmd = run_cmd
        self.logger = logger
        self.console = console
        self.credentials_file = credentials_file

    def render(self, credentials: Credentials, urls: Optional[dict] = None) -> str:
        lines = ["Firefly III installation credentials", ""]
        for label, url in (urls or {}).items():
            lines.append(f"{label}: {url}")
        if urls:
            lines.append("")
        lines.append(f"Database type: {credentials.db_type}")
        if credentials.db_type == "mysql":
            lines.extend(
                [
                    f"Database name: {credentials.db_name}",
                    f"Database user: {credentials.db_user}",
                    f"Database password: {credentials.db_password}",
                ]
            )
        lines.append(f"APP_KEY: {credentials.app_key}")
        if credentials.static_cron_token:
            lines.append(f"STATIC_CRON_TOKEN: {credentials.static_cron_token}")
        if credentials.importer_app_key:
            lines.append(f"Data importer APP_KEY: {credentials.importer_app_key}")
        return "\n".join(lines) + "\n"

    def _current_content(self) -> Optional[str]:
        if not os.path.exists(self.credentials_file):
            return None
        try:
            with open(self.credentials_file, "r", encoding="utf-8") as file_obj:
                return file_obj.read()
        except OSError:
            return None

    def has_encrypted_copy(self) -> bool:
        return os.path.exists(f"{self.credentials_file}.gpg")

    def save(self, credentials: Credentials, urls: Optional[dict] = None, passphrase: Optional[str] = None) -> Optional[str]:
        """Write the credentials file; returns its path, or None when it was already up to date."""
        content = self.render(credentials, urls)
        if self._current_content() == content and not passphrase:
            self.logger.debug("Credentials file %s is up to date.", self.credentials_file)
            return None

        directory = os.path.dirname(self.credentials_file) or "."
        os.makedirs(directory, exist_ok=True)
        fd, temp_path = tempfile.mkstemp(prefix=".credentials-", dir=directory)
        try:
            os.fchmod(fd, SECRET_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as file_obj:
                file_obj.write(content)
            os.replace(temp_path, self.credentials_file)
        except OSError as exc:
            raise InstallerError(f"Could not write credentials file '{self.credentials_file}': {exc}") from exc
        finally:
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError:
                    pass

        self.logger.info("Credentials saved to %s", self.credentials_file)
        if passphrase:
            return self.encrypt(passphrase)
        return self.credentials_file

    def encrypt(self, passphrase: str) -> str:
        encrypted = f"{self.credentials_file}.gpg"
        try:
            self.run_cmd(
                [
                    "gpg",
                    "--batch",
                    "--yes",
                    "--pinentry-mode",
                    "loopback",
                    "--passphrase-fd",
                    "0",
                    "--symmetric",
                    "--output",
                    encrypted,
                    self.credentials_file,
                ],
                input_text=passphrase + "\n",
                capture_output=True,
            )
        except InstallerError as exc:
            self.console.print("[yellow]Encryption failed; the credentials file was left unencrypted.[/yellow]")
            self.logger.warning("gpg encryption of %s failed: %s", self.credentials_file, exc)
            return self.credentials_file

        os.chmod(encrypted, SECRET_FILE_MODE)
        os.remove(self.credentials_file)
        self.console.print(f"[green]Credentials encrypted to {encrypted}.[/green]")
        return encrypted
