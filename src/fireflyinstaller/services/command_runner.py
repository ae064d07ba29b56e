"""Subprocess execution for host commands (apt, systemctl, php, mysql...)."""

import os
import subprocess
import time
from typing import Dict, Iterable, List, Optional

from fireflyinstaller.errors import InstallerError

REDACTED = "******"


class CommandRunner:
    """Runs external commands with retries, secret redaction and uniform errors."""

    def __init__(self, logger, default_timeout: Optional[float] = None, subprocess_module=subprocess):
        self.logger = logger
        self.default_timeout = default_timeout
        self.subprocess = subprocess_module

    def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
        retry_on_returncodes: Optional[Iterable[int]] = None,
        input_text: Optional[str] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        redact: Optional[Iterable[str]] = None,
    ) -> subprocess.CompletedProcess:
        shown = self._display(cmd, redact)
        self.logger.debug("Executing: %s", shown)

        limit = timeout if timeout is not None else self.default_timeout
        attempts = max(1, retry_count + 1)
        retryable_codes = set(retry_on_returncodes or [])
        merged_env = {**os.environ, **env} if env else None

        attempt = 0
        while True:
            attempt += 1
            last_attempt = attempt >= attempts
            try:
                result = self.subprocess.run(
                    cmd,
                    text=True,
                    capture_output=capture_output,
                    timeout=limit,
                    input=input_text,
                    cwd=cwd,
                    env=merged_env,
                )
            except FileNotFoundError as exc:
                raise InstallerError(
                    f"Required command not found: {cmd[0]}. Install it with `apt-get install` and try again."
                ) from exc
            except subprocess.TimeoutExpired as exc:
                if last_attempt:
                    raise InstallerError(f"{shown} timed out after {limit}s.") from exc
                self._pause(attempt, attempts, retry_backoff_seconds, f"timed out: {shown}")
                continue
            except OSError as exc:
                raise InstallerError(f"Could not execute {shown}: {exc}") from exc

            if capture_output and result.stdout:
                self.logger.debug("Output of %s: %s", cmd[0], result.stdout.strip())
            if result.returncode == 0:
                return result

            failure = f"{shown} exited with status {result.returncode}"
            details = (result.stderr or "").strip() if capture_output else ""
            if details:
                failure = f"{failure}\n{details}"

            if not last_attempt and (not retryable_codes or result.returncode in retryable_codes):
                self._pause(attempt, attempts, retry_backoff_seconds, f"failed: {failure}")
                continue
            if check:
                raise InstallerError(failure)
            self.logger.debug(failure)
            return result

    def _pause(self, attempt: int, attempts: int, delay: float, reason: str):
        self.logger.warning("Attempt %s/%s %s; retrying in %.1fs.", attempt, attempts, reason, delay)
        time.sleep(delay)

    @staticmethod
    def _display(cmd: List[str], redact: Optional[Iterable[str]]) -> str:
        hidden = [value for value in (redact or []) if value]
        shown = []
        for part in cmd:
            for value in hidden:
                part = part.replace(value, REDACTED)
            shown.append(part)
        return " ".join(shown)
