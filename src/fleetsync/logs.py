"""
Run log management for FleetSync.

Each run writes one supervisory transcript and one engine log per job into
the configured log directory. File names carry the run timestamp so runs
never collide. Files older than the retention window are purged at startup.
"""

import os
import time
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_RETENTION_DAYS = 30


@dataclass
class RunLogs:
    """Log file locations for a single run."""
    log_directory: str
    run_stamp: str = field(default_factory=lambda: datetime.now().strftime("%Y%m%d_%H%M%S"))

    def __post_init__(self):
        self.log_directory = os.path.expanduser(self.log_directory)

    @property
    def transcript_path(self) -> str:
        return os.path.join(self.log_directory, f"fleetsync_{self.run_stamp}.log")

    def engine_log_path(self, index: int) -> str:
        """Engine activity log for job ``index``; appended across relaunches"""
        return os.path.join(self.log_directory, f"engine_{self.run_stamp}_job{index}.log")

    def ensure_directory(self):
        os.makedirs(self.log_directory, exist_ok=True)


def setup_logging(transcript_path: Optional[str] = None, verbose: bool = False,
                  console: Optional[Console] = None) -> logging.Logger:
    """Attach console and transcript handlers to the package logger."""
    package_logger = logging.getLogger("fleetsync")
    package_logger.setLevel(logging.DEBUG)

    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(console=console, show_path=False, rich_tracebacks=True)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    package_logger.addHandler(console_handler)

    if transcript_path:
        os.makedirs(os.path.dirname(transcript_path) or ".", exist_ok=True)
        file_handler = logging.FileHandler(transcript_path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger.addHandler(file_handler)

    return package_logger


def purge_old_logs(log_directory: str, retention_days: int, now: Optional[float] = None) -> int:
    """
    Delete files in ``log_directory`` older than ``retention_days``.

    Best-effort: failures are logged as warnings and never raised.
    Returns the number of files removed.
    """
    if retention_days < 1:
        raise ValueError("retention_days must be a positive integer")

    if not os.path.isdir(log_directory):
        return 0

    cutoff = (now if now is not None else time.time()) - retention_days * 86400
    removed = 0

    try:
        entries = os.listdir(log_directory)
    except OSError as e:
        logger.warning(f"Could not list log directory {log_directory} for cleanup: {e}")
        return 0

    for name in entries:
        path = os.path.join(log_directory, name)
        try:
            if os.path.isfile(path) and os.path.getmtime(path) < cutoff:
                os.remove(path)
                removed += 1
        except OSError as e:
            logger.warning(f"Could not remove old log file {path}: {e}")

    if removed:
        logger.info(f"Removed {removed} log files older than {retention_days} days from {log_directory}")

    return removed
