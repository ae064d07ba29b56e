"""Exclusive run lock so two installer runs never mutate the host at once."""

import fcntl
import json
import os
from datetime import datetime, timezone
from typing import Optional

from fireflyinstaller.errors import LockError
from fireflyinstaller.errors_catalog import actionable_error


class RunLock:
    """Holds an ``flock`` on the lock file for the lifetime of a run."""

    def __init__(self, lock_file: str, logger):
        self.lock_file = lock_file
        self.logger = logger
        self._fd: Optional[int] = None

    def acquire(self):
        directory = os.path.dirname(self.lock_file) or "."
        os.makedirs(directory, exist_ok=True)
        fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            holder = self._read_holder(fd)
            os.close(fd)
            raise LockError(
                actionable_error("lock_held", path=self.lock_file, pid=holder.get("pid", "unknown"))
            ) from exc

        metadata = {
            "pid": os.getpid(),
            "path": self.lock_file,
            "started_at": datetime.now(timezone.utc).isoformat(),
        }
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(metadata).encode("utf-8"))
        self._fd = fd
        self.logger.debug("Acquired run lock %s", self.lock_file)

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        self.logger.debug("Released run lock %s", self.lock_file)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False

    @staticmethod
    def _read_holder(fd: int) -> dict:
        try:
            os.lseek(fd, 0, os.SEEK_SET)
            data = os.read(fd, 4096).decode("utf-8")
            return json.loads(data) if data else {}
        except (OSError, ValueError):
            return {}
