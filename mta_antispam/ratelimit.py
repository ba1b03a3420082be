import threading
import time
from collections.abc import Sized
from dataclasses import dataclass, field
from typing import Callable, Dict, Tuple

_EPSILON = 1e-9


@dataclass(frozen=True)
class BucketConfig:
    capacity: float = 100
    refill_per_second: float = 100 / 60


@dataclass
class TokenBucket:
    tokens: float
    last_refill: float
    last_used: float
    retired: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, compare=False)


class RateLimiter(Sized):
    """Token buckets keyed by client IP or authenticated identity.

    Tokens are refilled lazily on every consumption. Each bucket has its own
    lock; the map lock is only held to look up, insert or prune buckets.
    """

    def __init__(
        self,
        config: BucketConfig = BucketConfig(),
        time_fn: Callable[[], float] = time.monotonic,
    ):
        if config.capacity <= 0 or config.refill_per_second <= 0:
            raise ValueError("Rate limit capacity and refill rate must be positive.")
        self.config = config
        self._time = time_fn
        self._buckets: Dict[str, TokenBucket] = {}
        self._buckets_lock = threading.Lock()

    def _bucket(self, key: str) -> TokenBucket:
        bucket = self._buckets.get(key)
        if bucket is None:
            with self._buckets_lock:
                now = self._time()
                bucket = self._buckets.setdefault(
                    key, TokenBucket(self.config.capacity, now, now)
                )
        return bucket

    def _refill(self, bucket: TokenBucket, now: float):
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(
            self.config.capacity,
            bucket.tokens + elapsed * self.config.refill_per_second,
        )
        bucket.last_refill = now

    def consume(self, key: str, cost: float = 1) -> Tuple[bool, float]:
        """Take ``cost`` tokens from the bucket of ``key``.

        Returns whether the tokens were available and the tokens left.
        """
        while True:
            bucket = self._bucket(key)
            with bucket.lock:
                if bucket.retired:
                    continue
                now = self._time()
                self._refill(bucket, now)
                bucket.last_used = now
                if bucket.tokens + _EPSILON < cost:
                    return False, bucket.tokens
                bucket.tokens = max(0.0, bucket.tokens - cost)
                return True, bucket.tokens

    def remaining(self, key: str) -> float:
        bucket = self._buckets.get(key)
        if bucket is None:
            return self.config.capacity
        with bucket.lock:
            self._refill(bucket, self._time())
            return bucket.tokens

    def prune(self, idle_seconds: float) -> int:
        """Forget buckets that are full and have not been used for a while."""
        removed = 0
        with self._buckets_lock:
            for key, bucket in list(self._buckets.items()):
                with bucket.lock:
                    now = self._time()
                    self._refill(bucket, now)
                    if (
                        bucket.tokens >= self.config.capacity
                        and now - bucket.last_used >= idle_seconds
                    ):
                        # Unmapped before the bucket lock is released, so a
                        # consumer waiting on it retries with a fresh bucket.
                        bucket.retired = True
                        del self._buckets[key]
                        removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._buckets)
