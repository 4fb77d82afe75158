"""
Exponential backoff policy - shared retry timing for pipeline stages

Provides consistent exponential backoff behavior:
- Base delay: 60 seconds
- Maximum delay: 6 hours
- Maximum attempts: 5
- Exponential growth: 2^(attempts - 1)

Backoff is never slept on. The orchestrator stores the resulting
next_eligible_at on the video and the scheduler compares it to the clock, so
retries stay observable in the database and testable without real delays.

Usage:
    policy = ExponentialBackoff.from_config(pipeline_config)
    video.next_eligible_at = policy.next_eligible_at(video.attempt_count, now)
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from databases without tz support."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class ExponentialBackoff:
    """Exponential backoff with a ceiling and an attempt budget."""

    DEFAULT_BACKOFF_BASE = 60  # 1 minute
    DEFAULT_BACKOFF_MAX = 60 * 60 * 6  # 6 hours
    DEFAULT_MAX_ATTEMPTS = 5

    def __init__(
        self,
        base: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_attempts: Optional[int] = None
    ):
        self.base = self.DEFAULT_BACKOFF_BASE if base is None else base
        self.max_delay = self.DEFAULT_BACKOFF_MAX if max_delay is None else max_delay
        self.max_attempts = self.DEFAULT_MAX_ATTEMPTS if max_attempts is None else max_attempts
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def from_config(cls, pipeline_config: Dict[str, Any]) -> "ExponentialBackoff":
        return cls(
            base=pipeline_config.get('backoff_base_seconds'),
            max_delay=pipeline_config.get('backoff_max_seconds'),
            max_attempts=pipeline_config.get('max_attempts'),
        )

    def calculate_backoff(self, attempts: int) -> float:
        """Delay in seconds after the given number of failed attempts."""
        if attempts <= 0:
            return 0.0
        return float(min(self.base * (2 ** (attempts - 1)), self.max_delay))

    def next_eligible_at(self, attempts: int, now: Optional[datetime] = None) -> datetime:
        """When a video with this many failed attempts may be retried."""
        now = now or utcnow()
        return now + timedelta(seconds=self.calculate_backoff(attempts))

    def is_exhausted(self, attempts: int) -> bool:
        """True once the attempt budget is used up."""
        return attempts >= self.max_attempts

    def remaining(self, next_eligible_at: Optional[datetime], now: Optional[datetime] = None) -> float:
        """Seconds left until eligibility (0 when already eligible)."""
        if next_eligible_at is None:
            return 0.0
        now = now or utcnow()
        return max(0.0, (as_utc(next_eligible_at) - now).total_seconds())
