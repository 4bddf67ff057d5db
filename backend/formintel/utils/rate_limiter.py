"""
Per-process budget for external provider calls.
OCR, LLM and page-source calls all draw from one combined total.
"""
import logging
from collections import Counter
from datetime import datetime
from threading import Lock
from typing import Dict, Optional

from formintel.config import Config
from formintel.exceptions import RateLimitExceededError

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Call budget shared by every provider client in the process.

    Services: 'vision', 'textract', 'llm', 'firecrawl'.
    """

    def __init__(self, max_total_calls: Optional[int] = None, enabled: Optional[bool] = None):
        """
        Args:
            max_total_calls: Combined limit across services (defaults to Config.MAX_TOTAL_CALLS)
            enabled: When False, calls are counted but never refused
        """
        self.max_total_calls = max_total_calls or Config.MAX_TOTAL_CALLS
        self.enabled = Config.ENABLE_RATE_LIMITING if enabled is None else enabled
        self.calls: Counter = Counter()
        self.lock = Lock()
        self.started_at = datetime.now()

    @property
    def used(self) -> int:
        return sum(self.calls.values())

    def acquire(self, service: str):
        """
        Reserve one call for ``service``.

        Check and record happen under one lock.

        Raises:
            RateLimitExceededError: if the budget is exhausted
        """
        with self.lock:
            used = self.used
            if self.enabled and used >= self.max_total_calls:
                reason = f"Call budget exhausted: {used}/{self.max_total_calls} external calls made"
                logger.warning(f"Refusing {service} call. {reason}")
                raise RateLimitExceededError(reason, provider=service, status_code=429)
            self.calls[service] += 1
        logger.debug(f"{service} call recorded ({used + 1}/{self.max_total_calls})")

    def get_stats(self) -> Dict:
        """Combined usage, broken down by service."""
        with self.lock:
            used = self.used
            return {
                'enabled': self.enabled,
                'total_calls': used,
                'max_calls': self.max_total_calls,
                'remaining_calls': max(0, self.max_total_calls - used),
                'calls_by_service': dict(self.calls),
                'session_duration': (datetime.now() - self.started_at).total_seconds()
            }

    def reset(self):
        with self.lock:
            self.calls.clear()
            self.started_at = datetime.now()
        logger.info("Rate limiter reset")
