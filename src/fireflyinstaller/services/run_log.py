"""Per-run log files and their retention."""

import glob
import logging
import os
import time
from datetime import datetime
from typing import List, Optional

from fireflyinstaller.constants import LOG_FILE_PREFIX, MAX_LOG_AGE_DAYS, MAX_LOG_FILES

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


class RunLogService:
    """Creates the log file for this run and prunes older ones by age and count."""

    def __init__(
        self,
        log_dir: str,
        prefix: str = LOG_FILE_PREFIX,
        max_files: int = MAX_LOG_FILES,
        max_age_days: int = MAX_LOG_AGE_DAYS,
    ):
        self.log_dir = log_dir
        self.prefix = prefix
        self.max_files = max_files
        self.max_age_days = max_age_days

    def new_log_path(self, now: Optional[datetime] = None) -> str:
        stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
        return os.path.join(self.log_dir, f"{self.prefix}_{stamp}.log")

    def existing_logs(self) -> List[str]:
        pattern = os.path.join(self.log_dir, f"{self.prefix}_*.log")
        return sorted(glob.glob(pattern), key=os.path.getmtime)

    def prune(self, now: Optional[float] = None) -> List[str]:
        current = now if now is not None else time.time()
        cutoff = current - self.max_age_days * 86400
        removed = []

        remaining = []
        for path in self.existing_logs():
            if os.path.getmtime(path) < cutoff:
                removed.append(path)
            else:
                remaining.append(path)

        if self.max_files > 0 and len(remaining) >= self.max_files:
            removed.extend(remaining[: len(remaining) - self.max_files + 1])

        for path in removed:
            try:
                os.remove(path)
            except OSError:
                continue
        return removed

    def attach(self, logger: logging.Logger, now: Optional[datetime] = None) -> str:
        os.makedirs(self.log_dir, exist_ok=True)
        self.prune()
        log_path = self.new_log_path(now)
        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)
        os.chmod(log_path, 0o600)
        return log_path
