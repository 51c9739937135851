"""
kudos.services.throttle — Token-bucket rate limiter
====================================================

Limits manual adjustments per ``(tenant, user)``: a bucket holds up to
``capacity`` tokens and regains one every ``refill_seconds``.  A request
with an empty bucket raises :class:`RateLimitExceeded`, which the admin
route turns into HTTP 429 with ``Retry-After``.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from threading import Lock

logger = logging.getLogger(__name__)


class RateLimitExceeded(Exception):
    """No token left for this key."""

    def __init__(self, key: Hashable, retry_after: float) -> None:
        super().__init__(f"Rate limit exceeded for {key}")
        self.key = key
        self.retry_after = retry_after

    @property
    def retry_after_header(self) -> str:
        return str(max(1, math.ceil(self.retry_after)))


@dataclass
class _Bucket:
    tokens: int
    updated_at: float


class TokenBucketLimiter:
    """Per-key token buckets with whole-token refill.

    Thread-safe.  Buckets are created full on first use.
    """

    def __init__(
        self,
        capacity: int = 5,
        refill_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capacity = capacity
        self.refill_seconds = refill_seconds
        self._clock = clock
        self._lock = Lock()
        self._buckets: dict[Hashable, _Bucket] = {}

    def _refill(self, bucket: _Bucket, now: float) -> None:
        if bucket.tokens >= self.capacity:
            bucket.updated_at = now
            return
        earned = int((now - bucket.updated_at) // self.refill_seconds)
        if earned > 0:
            bucket.tokens = min(self.capacity, bucket.tokens + earned)
            bucket.updated_at += earned * self.refill_seconds

    def acquire(self, key: Hashable) -> int:
        """Take one token for *key*; return the tokens left.

        Raises
        ------
        RateLimitExceeded
            When the bucket is empty.
        """
        with self._lock:
            now = self._clock()
            bucket = self._buckets.setdefault(key, _Bucket(self.capacity, now))
            self._refill(bucket, now)
            if bucket.tokens <= 0:
                retry_after = bucket.updated_at + self.refill_seconds - now
                logger.warning("Rate limit hit for %s (retry in %.1fs)", key, retry_after)
                raise RateLimitExceeded(key, retry_after)
            bucket.tokens -= 1
            return bucket.tokens

    def remaining(self, key: Hashable) -> int:
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return self.capacity
            self._refill(bucket, self._clock())
            return bucket.tokens

    def reset(self, key: Hashable | None = None) -> None:
        """Clear limiter state. If *key* is None, clear all."""
        with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)
