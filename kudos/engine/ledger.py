"""
kudos.engine.ledger — Step-based incremental ledger
====================================================

Sales XP is paid per full *step* of a running monthly total (e.g. 50 XP per
100,000 of sales).  Each batch contributes an arbitrary amount, so the
ledger remembers, per scope key, how many steps were already paid and only
pays the difference:

    steps_now = floor(total / step_size)
    delta     = steps_now - steps_awarded        # paid only when > 0

The total is recomputed from the event log (the source of truth) on every
settlement; the ledger file only remembers ``steps_awarded``.

Settlements for the same key are serialized with a per-key ``asyncio.Lock``
so two concurrent batches cannot both observe the same ``steps_awarded``.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Iterable, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from threading import Lock

from kudos.constants import utcnow_iso

logger = logging.getLogger(__name__)

__all__ = [
    "LedgerKey",
    "LedgerEntry",
    "LedgerOutcome",
    "LedgerStore",
    "IncrementalLedger",
    "KeyedLocks",
]


@dataclass(frozen=True, slots=True)
class LedgerKey:
    """Identifies one running total, e.g. ``("user", "2025-01", email, maker)``."""

    scope: str
    period: str
    dimension_a: str = ""
    dimension_b: str = ""


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    key: LedgerKey
    cumulative_total: float
    steps_awarded: int
    last_updated_at: str


@dataclass(frozen=True, slots=True)
class LedgerOutcome:
    """What one settlement did."""

    key: LedgerKey
    total: float
    steps_before: int
    steps_now: int
    xp: int = 0
    results: list = field(default_factory=list)

    @property
    def delta_steps(self) -> int:
        return max(0, self.steps_now - self.steps_before)


# ---------------------------------------------------------------------------
# Per-key async locks
# ---------------------------------------------------------------------------
class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped again once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[object, tuple[asyncio.Lock, int]] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: object):
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)


# ---------------------------------------------------------------------------
# Snapshot store — append-only JSONL, latest record per key wins
# ---------------------------------------------------------------------------
class LedgerStore:
    """Append-only ledger snapshots at ``<data_dir>/ledger/sales_steps.jsonl``."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = Lock()
        self._entries: dict[LedgerKey, LedgerEntry] | None = None

    def _load(self) -> dict[LedgerKey, LedgerEntry]:
        if self._entries is not None:
            return self._entries
        entries: dict[LedgerKey, LedgerEntry] = {}
        if self.path.exists():
            with open(self.path, encoding="utf-8") as fh:
                for line_no, line in enumerate(fh, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        rec = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning("Skipping bad ledger line %s:%d", self.path, line_no)
                        continue
                    key = LedgerKey(
                        scope=str(rec.get("scope", "")),
                        period=str(rec.get("period", "")),
                        dimension_a=str(rec.get("dimension_a", "")),
                        dimension_b=str(rec.get("dimension_b", "")),
                    )
                    entries[key] = LedgerEntry(
                        key=key,
                        cumulative_total=float(rec.get("total_at_update", 0)),
                        steps_awarded=int(rec.get("steps_awarded", 0)),
                        last_updated_at=str(rec.get("at", "")),
                    )
        self._entries = entries
        return entries

    def get(self, key: LedgerKey) -> LedgerEntry | None:
        with self._lock:
            return self._load().get(key)

    def steps_awarded(self, key: LedgerKey) -> int:
        entry = self.get(key)
        return entry.steps_awarded if entry else 0

    def record(self, key: LedgerKey, steps_awarded: int, total: float) -> LedgerEntry:
        at = utcnow_iso()
        entry = LedgerEntry(key, total, steps_awarded, at)
        line = json.dumps(
            {
                "at": at,
                "scope": key.scope,
                "period": key.period,
                "dimension_a": key.dimension_a,
                "dimension_b": key.dimension_b,
                "steps_awarded": steps_awarded,
                "total_at_update": total,
            },
            ensure_ascii=False,
        )
        with self._lock:
            entries = self._load()
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
            entries[key] = entry
        return entry

    def entries(self) -> Iterator[LedgerEntry]:
        with self._lock:
            return iter(list(self._load().values()))


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------
AwardFn = Callable[[int, int], Iterable[Awaitable]]


class IncrementalLedger:
    """Pays step XP for the part of a running total not yet paid.

    Parameters
    ----------
    store:
        Where ``steps_awarded`` per key is remembered.
    step_size:
        Amount per step (e.g. 100,000).
    per_step_xp:
        XP paid per step.
    total_for:
        Recomputes the current total for a key from the event log.
    """

    def __init__(
        self,
        store: LedgerStore,
        step_size: float,
        per_step_xp: int,
        total_for: Callable[[LedgerKey], float],
    ) -> None:
        if step_size <= 0:
            raise ValueError("step_size must be positive")
        self.store = store
        self.step_size = step_size
        self.per_step_xp = per_step_xp
        self.total_for = total_for
        self._locks = KeyedLocks()

    async def settle(self, key: LedgerKey, award: AwardFn | None = None) -> LedgerOutcome:
        """Bring *key* up to date, paying any newly completed steps.

        *award* is called with ``(delta_steps, xp)`` and must enqueue its
        dispatches synchronously, returning the awaitables.  The snapshot is
        written after every dispatch is enqueued and before they are awaited.
        """
        async with self._locks.hold(key):
            total = float(self.total_for(key))
            steps_before = self.store.steps_awarded(key)
            steps_now = int(total // self.step_size)

            if steps_now <= steps_before:
                return LedgerOutcome(key, total, steps_before, max(steps_now, steps_before))

            delta = steps_now - steps_before
            xp = delta * self.per_step_xp
            pending = list(award(delta, xp)) if award is not None else []
            self.store.record(key, steps_now, total)
            logger.info(
                "Ledger %s/%s %s %s: total=%s steps %d→%d (+%d XP)",
                key.scope, key.period, key.dimension_a, key.dimension_b,
                total, steps_before, steps_now, xp,
            )
            results = list(await asyncio.gather(*pending, return_exceptions=True)) if pending else []
            return LedgerOutcome(key, total, steps_before, steps_now, xp, results)
