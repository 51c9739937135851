"""
kudos.services.idempotency — TTL response cache
================================================

Remembers the response of a completed request under its idempotency key
for ``ttl_seconds`` (10 minutes by default).  A repeat of the same key
inside the window gets the stored response back, unchanged, and nothing
else happens.  Expired records are trimmed lazily on each access.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any


@dataclass(frozen=True, slots=True)
class IdempotencyRecord:
    key: str
    cached_response: Any
    expires_at: float


def make_key(tenant: str, user_id: str, token: str | None) -> str | None:
    """``tenant::user::token``, or ``None`` when the request carries no token."""
    if not token:
        return None
    return f"{tenant}::{user_id}::{token}"


class IdempotencyCache:
    """In-memory key → response map with expiry."""

    def __init__(
        self, ttl_seconds: float = 600, clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._records: dict[str, IdempotencyRecord] = {}

    def __len__(self) -> int:
        with self._lock:
            self._trim(self._clock())
            return len(self._records)

    def get(self, key: str | None) -> Any | None:
        if key is None:
            return None
        with self._lock:
            now = self._clock()
            self._trim(now)
            record = self._records.get(key)
            return record.cached_response if record is not None else None

    def put(self, key: str | None, response: Any) -> None:
        if key is None:
            return
        with self._lock:
            now = self._clock()
            self._trim(now)
            self._records[key] = IdempotencyRecord(key, response, now + self.ttl_seconds)

    def _trim(self, now: float) -> None:
        expired = [k for k, rec in self._records.items() if rec.expires_at <= now]
        for k in expired:
            del self._records[k]
