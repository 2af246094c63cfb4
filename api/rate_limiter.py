"""
Rate Limiter
------------
Sliding-window admission control keyed by caller identity.

Across any window of `window_seconds`, at most `max_requests` calls per
identity are admitted. Buckets are created lazily and swept by a
background thread once their window has fully elapsed.
"""

from collections import deque
from dataclasses import dataclass, field
from threading import Event, Lock, Thread
from typing import Callable, Deque, Dict, Optional
import logging
import math
import time


@dataclass
class RateLimitConfig:
    """Rate limit configuration."""
    max_requests: int = 10
    window_seconds: float = 10.0
    cleanup_interval_seconds: Optional[float] = None  # Defaults to 5 windows

    def __post_init__(self):
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.cleanup_interval_seconds is None:
            self.cleanup_interval_seconds = self.window_seconds * 5


@dataclass
class RateLimitInfo:
    """Remaining-count and reset metadata, safe to show callers."""
    limit: int
    remaining: int
    reset_after_seconds: float

    @property
    def retry_after(self) -> int:
        """Whole seconds, for the Retry-After header."""
        return max(1, math.ceil(self.reset_after_seconds))

    def to_dict(self) -> Dict[str, float]:
        return {
            "limit": self.limit,
            "remaining": self.remaining,
            "reset_after_seconds": round(self.reset_after_seconds, 3),
        }

    def headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.retry_after),
        }


@dataclass
class _Bucket:
    timestamps: Deque[float] = field(default_factory=deque)
    last_seen: float = 0.0


class RateLimiter:
    """
    Sliding-window rate limiter.

    Thread-safe; one lock guards every bucket, so the cleanup sweep never
    interleaves with check().
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic
    ):
        self.config = config or RateLimitConfig()
        self.name = name
        self._clock = clock
        self._buckets: Dict[str, _Bucket] = {}
        self._lock = Lock()
        self._stop = Event()
        self._sweeper: Optional[Thread] = None
        self._logger = logging.getLogger(f"toolgate.api.rate_limiter.{name}")

    def _prune(self, bucket: _Bucket, now: float) -> None:
        cutoff = now - self.config.window_seconds
        while bucket.timestamps and bucket.timestamps[0] <= cutoff:
            bucket.timestamps.popleft()

    def check(self, identity: str) -> bool:
        """Admit (and record) one request, or deny it."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(identity)
            if bucket is None:
                bucket = self._buckets[identity] = _Bucket()
            self._prune(bucket, now)
            bucket.last_seen = now

            if len(bucket.timestamps) >= self.config.max_requests:
                self._logger.info(f"Rate limit hit for {identity}")
                return False

            bucket.timestamps.append(now)
            return True

    def remaining(self, identity: str) -> int:
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(identity)
            if bucket is None:
                return self.config.max_requests
            self._prune(bucket, now)
            return max(0, self.config.max_requests - len(bucket.timestamps))

    def reset_after(self, identity: str) -> float:
        """Seconds until the oldest admitted request leaves the window."""
        now = self._clock()
        with self._lock:
            bucket = self._buckets.get(identity)
            if bucket is None:
                return 0.0
            self._prune(bucket, now)
            if not bucket.timestamps:
                return 0.0
            return max(0.0, bucket.timestamps[0] + self.config.window_seconds - now)

    def info(self, identity: str) -> RateLimitInfo:
        return RateLimitInfo(
            limit=self.config.max_requests,
            remaining=self.remaining(identity),
            reset_after_seconds=self.reset_after(identity),
        )

    def reset(self, identity: str) -> None:
        with self._lock:
            self._buckets.pop(identity, None)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()

    def cleanup(self) -> int:
        """Drop buckets with nothing left in the window. Returns how many."""
        now = self._clock()
        with self._lock:
            idle = []
            for identity, bucket in self._buckets.items():
                self._prune(bucket, now)
                if not bucket.timestamps:
                    idle.append(identity)
            for identity in idle:
                del self._buckets[identity]

        if idle:
            self._logger.debug(f"Swept {len(idle)} idle rate-limit buckets")
        return len(idle)

    @property
    def tracked_identities(self) -> int:
        with self._lock:
            return len(self._buckets)

    # Background sweep

    def start(self) -> None:
        """Start the periodic cleanup thread (idempotent)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop.clear()
        self._sweeper = Thread(
            target=self._sweep_loop,
            name=f"rate-limit-sweep-{self.name}",
            daemon=True,
        )
        self._sweeper.start()

    def stop(self) -> None:
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.config.cleanup_interval_seconds):
            try:
                self.cleanup()
            except Exception as e:
                self._logger.error(f"Rate limiter sweep failed: {e}")
