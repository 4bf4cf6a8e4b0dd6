"""Retry policy with exponential backoff.

Delay follows the formula base_delay * 2^attempt, where attempt is the
zero-based index of the attempt that just failed. Only classified
failures whose kind is retryable consume the budget; anything else
short-circuits regardless of how many attempts remain.
"""

import logging
from dataclasses import dataclass

from audio_ingest.utils.classifier import ClassifiedError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff shared by every remote call site.

    Args:
        max_attempts: Total attempts allowed, including the first (default 3).
        base_delay: Delay in seconds after the first failed attempt (default 1.0).
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")

    def next_delay(self, attempt_index: int) -> float | None:
        """Return the wait before the next attempt, or None when exhausted.

        Args:
            attempt_index: Zero-based index of the attempt that just failed.

        Returns:
            Seconds to wait before retrying, or None if no attempts remain.
        """
        if attempt_index + 1 >= self.max_attempts:
            return None
        return self.base_delay * (2**attempt_index)

    def delay_for(self, error: ClassifiedError, attempt_index: int) -> float | None:
        """Return the retry delay for a classified failure, or None to stop."""
        if not error.retryable:
            logger.info(
                "Not retrying %s failure on attempt %d",
                error.kind.value,
                attempt_index + 1,
            )
            return None
        delay = self.next_delay(attempt_index)
        if delay is None:
            logger.warning(
                "Retry budget exhausted after %d attempts: %s",
                attempt_index + 1,
                error.kind.value,
            )
        return delay
