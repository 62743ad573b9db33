"""
Retry policy for opening connections.

Only connection establishment is retried, using the ``error_handling``
settings. Per-user lookups and the batch update are attempted exactly once
per run.
"""

import time
import logging
from typing import Callable, Dict, Any, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class RetriesExhausted(Exception):
    """Raised when a connection could not be opened within the allowed attempts."""

    def __init__(self, target: str, attempts: int, last_exception: Exception):
        self.target = target
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"{target} failed after {attempts} attempts: {last_exception}")


class ConnectRetry:
    """
    Attempts and wait time for opening a connection.

    Built from the ``error_handling`` section; ``max_retries`` is the total
    number of attempts, and at least one is always made.
    """

    def __init__(self, error_config: Optional[Dict[str, Any]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        error_config = error_config or {}
        self.max_retries = max(1, int(error_config.get('max_retries', 3)))
        self.wait_seconds = float(error_config.get('retry_wait_seconds', 5))
        self.sleep = sleep

    def open(self, target: str, opener: Callable[[], T],
             retry_on: Tuple[Type[Exception], ...]) -> T:
        """
        Call ``opener`` until it succeeds or the attempts run out.

        Args:
            target: What is being connected to, used in log messages
            opener: Opens and returns the connection
            retry_on: Exception types that count as a failed attempt;
                anything else propagates straight away

        Raises:
            RetriesExhausted: If every attempt failed
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                connection = opener()
            except retry_on as e:
                if attempt == self.max_retries:
                    raise RetriesExhausted(target, attempt, e) from e
                logger.warning(f"{target} connection failed attempt={attempt}/{self.max_retries} "
                               f"error={type(e).__name__}: {e}, retrying in {self.wait_seconds:g}s")
                self.sleep(self.wait_seconds)
                continue

            if attempt > 1:
                logger.info(f"{target} connection succeeded attempt={attempt}")
            return connection
