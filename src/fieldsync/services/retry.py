"""
Retry/backoff policy shared by every queued mutation.
"""

from dataclasses import dataclass
from typing import Optional

from fieldsync.core.config import QueueSettings, settings
from fieldsync.core.exceptions import PersistenceUnavailable


def is_retryable(exc: BaseException) -> bool:
    """Only transient store failures are worth another attempt."""
    return isinstance(exc, PersistenceUnavailable)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with a cap and a bounded number of retries.

    An operation gets one initial attempt plus ``max_retries`` retries; the
    delay before retry ``n`` is ``initial_delay * backoff_factor ** (n - 1)``,
    capped at ``max_delay``.
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0

    @classmethod
    def from_settings(cls, queue_settings: Optional[QueueSettings] = None) -> "RetryPolicy":
        queue_settings = queue_settings or settings.queue
        return cls(
            max_retries=queue_settings.max_retries,
            initial_delay=queue_settings.initial_delay_seconds,
            max_delay=queue_settings.max_delay_seconds,
            backoff_factor=queue_settings.backoff_factor,
        )

    def delay_for(self, retry_number: int) -> float:
        """Delay in seconds before the given retry (1-based)."""
        if retry_number < 1:
            return 0.0
        return min(self.initial_delay * self.backoff_factor ** (retry_number - 1), self.max_delay)

    def exhausted(self, failures: int) -> bool:
        """True once ``failures`` failed attempts used up every retry."""
        return failures > self.max_retries

    def should_retry(self, failures: int, exc: BaseException) -> bool:
        return is_retryable(exc) and not self.exhausted(failures)
