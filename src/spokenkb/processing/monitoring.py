"""Default operational monitor: terminal pipeline failures go to the error log."""
from typing import List, Tuple

from spokenkb.utils.logger import setup_worker_logger

logger = setup_worker_logger('monitor')


class LoggingMonitor:
    """Monitor that records alerts in the worker log (and keeps them for inspection)."""

    def __init__(self):
        self.alerts: List[Tuple[str, str, str]] = []

    def alert(self, video_id: str, error_code: str, message: str) -> None:
        self.alerts.append((video_id, error_code, message))
        logger.error(f"ALERT [{error_code}] video {video_id}: {message}")
