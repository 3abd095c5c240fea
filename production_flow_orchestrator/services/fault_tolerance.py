"""
Fault tolerance mechanisms for outgoing webhook delivery.

Provides:
- Retry policy with exponential backoff, jitter and Retry-After support
- Per-webhook health tracking with auto-disable after consecutive failures
"""

import random
import threading
from dataclasses import dataclass
from typing import Dict, Optional, Callable

from ..utils.logger import get_logger


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.2
    max_retry_after: float = 120.0

    def compute_delay(self, attempt: int, retry_after: Optional[float] = None,
                      rng: Optional[Callable[[], float]] = None) -> float:
        """
        Delay before the attempt following ``attempt`` (1-based).

        A server-supplied ``Retry-After`` wins over the computed backoff,
        bounded by ``max_retry_after``.
        """
        if retry_after is not None:
            return max(0.0, min(retry_after, self.max_retry_after))

        delay = min(
            self.initial_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )

        if self.jitter:
            rand = rng or random.random
            # Spread retries across +/- jitter of the nominal delay
            delay *= 1 + self.jitter * (2 * rand() - 1)

        return max(0.0, min(delay, self.max_delay))

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts


class HealthTracker:
    """
    Process-wide consecutive failure counters keyed by webhook id.

    Counters are seeded from persisted state at start-up; callers persist the
    value returned by ``record_failure``/``record_success`` after each change.
    Safe for use from worker tasks and threads alike.
    """

    def __init__(self, failure_threshold: int = 5):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.failure_threshold = failure_threshold
        self._failures: Dict[str, int] = {}
        self._lock = threading.Lock()
        self.logger = get_logger(__name__)

    def load(self, counts: Dict[str, int]):
        """Seed counters from persisted consecutive failure counts."""
        with self._lock:
            self._failures.update({k: int(v) for k, v in counts.items() if v})
        self.logger.info("Loaded webhook health state", extra={"tracked_webhooks": len(counts)})

    def record_failure(self, webhook_id: str) -> int:
        with self._lock:
            count = self._failures.get(webhook_id, 0) + 1
            self._failures[webhook_id] = count
        return count

    def record_success(self, webhook_id: str) -> int:
        with self._lock:
            self._failures.pop(webhook_id, None)
        return 0

    def reset(self, webhook_id: str):
        with self._lock:
            self._failures.pop(webhook_id, None)

    def failures(self, webhook_id: str) -> int:
        with self._lock:
            return self._failures.get(webhook_id, 0)

    def is_degraded(self, webhook_id: str) -> bool:
        return self.failures(webhook_id) >= self.failure_threshold

    def reached_threshold(self, count: int) -> bool:
        return count >= self.failure_threshold

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._failures)
