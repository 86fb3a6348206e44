"""Bounded exponential backoff for failed sync passes."""

import logging
from typing import Optional


logger = logging.getLogger(__name__)


class Backoff:
    """Exponential backoff capped at ``max_delay`` with a bounded retry count.

    Delays double with each consecutive failure: base, 2*base, 4*base... up
    to ``max_delay``. After ``max_retries`` consecutive failures no automatic
    retry is scheduled; the next external trigger still runs a pass.
    """

    def __init__(self, base_delay: float = 2.0, max_delay: float = 300.0, max_retries: int = 8):
        if base_delay <= 0 or max_delay < base_delay:
            raise ValueError("Backoff needs 0 < base_delay <= max_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.failures = 0

    @property
    def exhausted(self) -> bool:
        return self.failures > self.max_retries

    def next_delay(self) -> Optional[float]:
        """Register a failure and return the delay before the next retry.

        Returns:
            Seconds to wait, or None when automatic retries are exhausted
        """
        self.failures += 1
        if self.exhausted:
            logger.error(f"All {self.max_retries} automatic retries failed")
            return None
        delay = min(self.base_delay * (2 ** (self.failures - 1)), self.max_delay)
        logger.warning(f"Sync attempt {self.failures} failed, retrying in {delay}s")
        return delay

    def reset(self):
        self.failures = 0
