"""Retry and backoff policy for domain activations."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from sitehost.config import Settings


@dataclass(frozen=True)
class ProvisioningPolicy:
    """Operational tuning for the activation pipeline."""

    max_attempts: int = 10
    max_certificate_cycles: int = 3
    backoff_initial_seconds: int = 60
    backoff_multiplier: float = 2.0
    backoff_max_seconds: int = 3600
    retry_bump_seconds: int = 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProvisioningPolicy":
        return cls(
            max_attempts=settings.MAX_ATTEMPTS,
            max_certificate_cycles=settings.MAX_CERTIFICATE_CYCLES,
            backoff_initial_seconds=settings.BACKOFF_INITIAL_SECONDS,
            backoff_multiplier=settings.BACKOFF_MULTIPLIER,
            backoff_max_seconds=settings.BACKOFF_MAX_SECONDS,
            retry_bump_seconds=settings.POLL_INTERVAL_SECONDS,
        )

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next check after ``attempts`` unsuccessful checks."""
        exponent = max(attempts - 1, 0)
        seconds = self.backoff_initial_seconds * (self.backoff_multiplier ** exponent)
        return timedelta(seconds=min(seconds, self.backoff_max_seconds))

    def next_check(self, now: datetime, attempts: int) -> datetime:
        return now + self.backoff(attempts)

    def retry_bump(self, now: datetime) -> datetime:
        """Minimal delay for a row whose processing errored."""
        return now + timedelta(seconds=self.retry_bump_seconds)
