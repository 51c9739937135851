"""
kudos.engine.seen — TTL seen-set for webhook deduplication
===========================================================

Webhook senders deliver at least once.  The seen-set remembers identities
for a bounded window (24 h by default) so a redelivery inside that window
is dropped before any reward is computed.

Entries are kept in insertion order and first-seen times only grow, so
expired entries always sit at the front: eviction pops from the front and
stops at the first live entry.
"""

from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from threading import Lock

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class SeenSet:
    """In-memory id → first-seen map with lazy TTL eviction.

    Thread-safe.  Not persisted: a restart forgets every id, which is why
    batch imports use the database key index instead.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = Lock()
        self._entries: OrderedDict[str, float] = OrderedDict()

    def __len__(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._entries)

    def has_seen(self, identity: str | None) -> bool:
        """Return True when *identity* was marked within the TTL window."""
        if not identity:
            return False
        with self._lock:
            self._evict(self._clock())
            return identity in self._entries

    def mark_seen(self, identity: str | None) -> None:
        """Record *identity*; re-marking keeps the original first-seen time."""
        if not identity:
            return
        with self._lock:
            now = self._clock()
            self._evict(now)
            self._entries.setdefault(identity, now)

    def check_and_mark(self, identity: str | None) -> bool:
        """Atomically test and record *identity*.

        Returns True when the identity is new (caller should process it).
        Ids of ``None`` are always new and never recorded.
        """
        if not identity:
            return True
        with self._lock:
            now = self._clock()
            self._evict(now)
            if identity in self._entries:
                return False
            self._entries[identity] = now
            return True

    def _evict(self, now: float) -> None:
        cutoff = now - self.ttl_seconds
        while self._entries:
            if next(iter(self._entries.values())) > cutoff:
                break
            self._entries.popitem(last=False)
