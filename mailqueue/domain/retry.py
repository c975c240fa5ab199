import random
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from mailqueue.settings import settings

# Broker per-message TTLs below one second are rounded up
MIN_DELAY_MS = 1000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry policy shared by both delivery tiers.

    The worker uses a fixed delay (exponential=False); the persisted
    scheduler uses exponential backoff:

        delay = min(base * (2 ^ attempts), max_delay)
        if jitter:
            delay = delay + random_uniform(0, 0.1 * delay)
    """
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: Optional[float] = None
    exponential: bool = False
    jitter: bool = False

    def is_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def delay_seconds(self, attempts: int) -> float:
        """
        Args:
            attempts: Number of attempts made so far (the one that just failed
                      included). Negative values are treated as 0.
        """
        if attempts < 0:
            attempts = 0

        if self.exponential:
            # 2^20 base units is far beyond any sensible cap
            delay = self.base_delay_seconds * (2 ** min(attempts, 20))
        else:
            delay = self.base_delay_seconds

        if self.max_delay_seconds is not None and delay > self.max_delay_seconds:
            delay = self.max_delay_seconds

        if self.jitter:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def next_run(self, attempts: int, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + timedelta(seconds=self.delay_seconds(attempts))


WORKER_RETRY_POLICY = RetryPolicy(
    max_attempts=settings.WORKER_MAX_RETRIES,
    base_delay_seconds=settings.WORKER_RETRY_DELAY_SECONDS,
)

SCHEDULED_EMAIL_RETRY_POLICY = RetryPolicy(
    max_attempts=settings.SCHEDULED_EMAIL_MAX_ATTEMPTS,
    base_delay_seconds=60,
    max_delay_seconds=settings.SCHEDULED_EMAIL_MAX_BACKOFF_MINUTES * 60,
    exponential=True,
)


def next_quota_period_start(now: Optional[datetime] = None) -> datetime:
    """Next UTC midnight."""
    now = (now or utcnow()).astimezone(timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return today + timedelta(days=1)


def quota_day_key(now: Optional[datetime] = None) -> str:
    return (now or utcnow()).astimezone(timezone.utc).strftime("%Y-%m-%d")


def delay_ms_until(target: datetime, now: Optional[datetime] = None) -> int:
    delta = (target - (now or utcnow())).total_seconds()
    return max(int(delta * 1000), MIN_DELAY_MS)


def delay_ms_until_quota_reset(now: Optional[datetime] = None, buffer_seconds: Optional[int] = None) -> int:
    """Milliseconds until the next UTC midnight plus a clock-skew buffer."""
    if buffer_seconds is None:
        buffer_seconds = settings.QUOTA_RESUME_BUFFER_SECONDS
    now = now or utcnow()
    target = next_quota_period_start(now) + timedelta(seconds=buffer_seconds)
    return delay_ms_until(target, now)
