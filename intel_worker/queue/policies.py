"""Per-queue retry, admission and retention policies.

The table at the bottom is configuration-time constant: it is read when a
queue is built and never changed through the job API.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional


class QueueName(str, Enum):
    """The fixed set of job lanes."""
    RESEARCH = "research"
    ENRICHMENT = "enrichment"
    REPORTS = "reports"
    SIGNALS = "signals"


class BackoffStrategy(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry policy configuration."""
    max_attempts: int = 3
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    base_delay_seconds: float = 2.0

    def next_delay(self, attempts: int) -> Optional[float]:
        """
        Delay before the next attempt, given how many attempts were made.

        Returns None once the attempts are exhausted.
        """
        if attempts >= self.max_attempts:
            return None
        if self.strategy == BackoffStrategy.FIXED:
            return self.base_delay_seconds
        return self.base_delay_seconds * (2 ** (max(attempts, 1) - 1))


class RateLimiter:
    """Sliding-window admission control.

    Admits at most ``max_jobs`` acquisitions within any ``window_seconds``
    span. The lock makes check-and-record a single step, so two workers can
    never both take the last slot.
    """

    def __init__(
        self,
        max_jobs: int,
        window_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_jobs < 1:
            raise ValueError("max_jobs must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_jobs = max_jobs
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._admitted: deque[float] = deque()
        self._total_admitted = 0
        self._total_denied = 0

    def _evict(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self.window_seconds:
            self._admitted.popleft()

    def try_acquire(self) -> bool:
        """Admit one dequeue if the window has room; never blocks."""
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._admitted) >= self.max_jobs:
                self._total_denied += 1
                return False
            self._admitted.append(now)
            self._total_admitted += 1
            return True

    def retry_after(self) -> float:
        """Seconds until the oldest admission leaves the window (0 if free)."""
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._admitted) < self.max_jobs:
                return 0.0
            return self.window_seconds - (now - self._admitted[0])

    def stats(self) -> dict:
        with self._lock:
            self._evict(self._clock())
            return {
                "max_jobs": self.max_jobs,
                "window_seconds": self.window_seconds,
                "in_window": len(self._admitted),
                "total_admitted": self._total_admitted,
                "total_denied": self._total_denied,
            }


@dataclass(frozen=True)
class CleanRule:
    """One scheduled clean pass: evict ``state`` jobs older than the grace."""
    state: str
    grace_seconds: float
    limit: int


@dataclass(frozen=True)
class QueueConfig:
    """Everything that is fixed per queue."""
    name: QueueName
    concurrency: int
    retry: RetryPolicy
    rate_limit_max: Optional[int] = None  # None -> no admission limit
    rate_limit_window_seconds: Optional[float] = None
    keep_completed: int = 100
    keep_failed: int = 50
    default_priority: str = "normal"
    clean_rules: tuple[CleanRule, ...] = field(default_factory=tuple)

    def build_rate_limiter(self, clock: Callable[[], float] = time.monotonic) -> Optional[RateLimiter]:
        if self.rate_limit_max is None or self.rate_limit_window_seconds is None:
            return None
        return RateLimiter(self.rate_limit_max, self.rate_limit_window_seconds, clock=clock)

    def to_dict(self) -> dict:
        return {
            "name": self.name.value,
            "concurrency": self.concurrency,
            "retry": {
                "max_attempts": self.retry.max_attempts,
                "strategy": self.retry.strategy.value,
                "base_delay_seconds": self.retry.base_delay_seconds,
            },
            "rate_limit": (
                {"max_jobs": self.rate_limit_max, "window_seconds": self.rate_limit_window_seconds}
                if self.rate_limit_max is not None else None
            ),
            "keep_completed": self.keep_completed,
            "keep_failed": self.keep_failed,
            "default_priority": self.default_priority,
        }


HOUR = 60 * 60
DAY = 24 * HOUR


QUEUE_CONFIGS: dict[QueueName, QueueConfig] = {
    QueueName.RESEARCH: QueueConfig(
        name=QueueName.RESEARCH,
        concurrency=3,
        retry=RetryPolicy(max_attempts=3, strategy=BackoffStrategy.EXPONENTIAL, base_delay_seconds=2.0),
        rate_limit_max=10,
        rate_limit_window_seconds=60,
        keep_completed=100,
        keep_failed=50,
        clean_rules=(
            CleanRule("completed", DAY, 100),
            CleanRule("failed", 7 * DAY, 50),
        ),
    ),
    QueueName.ENRICHMENT: QueueConfig(
        name=QueueName.ENRICHMENT,
        concurrency=5,
        retry=RetryPolicy(max_attempts=2, strategy=BackoffStrategy.FIXED, base_delay_seconds=5.0),
        rate_limit_max=50,  # upstream enrichment APIs
        rate_limit_window_seconds=60,
        keep_completed=50,
        keep_failed=25,
        clean_rules=(
            CleanRule("completed", DAY, 50),
            CleanRule("failed", 7 * DAY, 25),
        ),
    ),
    QueueName.REPORTS: QueueConfig(
        name=QueueName.REPORTS,
        concurrency=2,
        retry=RetryPolicy(max_attempts=2, strategy=BackoffStrategy.FIXED, base_delay_seconds=1.0),
        rate_limit_max=20,
        rate_limit_window_seconds=HOUR,
        keep_completed=20,
        keep_failed=10,
        clean_rules=(
            CleanRule("completed", 7 * DAY, 20),
            CleanRule("failed", 30 * DAY, 10),
        ),
    ),
    QueueName.SIGNALS: QueueConfig(
        name=QueueName.SIGNALS,
        concurrency=10,
        retry=RetryPolicy(max_attempts=5, strategy=BackoffStrategy.EXPONENTIAL, base_delay_seconds=1.0),
        keep_completed=200,
        keep_failed=100,
        default_priority="high",  # real-time signals jump the line
        clean_rules=(
            CleanRule("completed", 12 * HOUR, 200),
            CleanRule("failed", 3 * DAY, 100),
        ),
    ),
}


def get_queue_config(name: QueueName) -> QueueConfig:
    return QUEUE_CONFIGS[name]
