"""
kudos.services.event_log — Append-only JSONL event log
=======================================================

Every processed fact is appended to ``<data_dir>/events/<category>.jsonl``
(one JSON object per line).  The log is the source of truth the ledger
recomputes running totals from, and the raw material for reports.

All methods are synchronous and short; call them directly from async code.
"""

from __future__ import annotations

import enum
import json
import logging
from collections.abc import Iterator
from pathlib import Path
from threading import Lock
from typing import Any

from kudos.constants import UNKNOWN_MAKER, utcnow_iso
from kudos.engine.ledger import LedgerKey

logger = logging.getLogger(__name__)


class LogCategory(enum.StrEnum):
    """File names (without ``.jsonl``) under ``events/``."""
    CALLS = "calls"
    APPOINTMENTS = "appointments"
    LABELS = "labels"
    APPROVALS = "approvals"
    SALES = "sales"
    MAKER_AWARDS = "maker_awards"
    DAILY_BONUS = "daily_bonus"
    ADJUSTMENTS = "adjustments"
    DISPATCH_FAILURES = "dispatch_failures"


class EventLog:
    """Append-only, per-category JSONL files."""

    def __init__(self, data_dir: str | Path) -> None:
        self.root = Path(data_dir) / "events"
        self._lock = Lock()

    def path_for(self, category: str) -> Path:
        return self.root / f"{category}.jsonl"

    def append(self, category: str, record: dict[str, Any]) -> dict[str, Any]:
        """Append *record* (stamped with ``at``) and return what was written."""
        row = {"at": utcnow_iso(), **record}
        line = json.dumps(row, ensure_ascii=False, default=str)
        with self._lock:
            self.root.mkdir(parents=True, exist_ok=True)
            with open(self.path_for(category), "a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        return row

    def read(self, category: str) -> Iterator[dict[str, Any]]:
        """Yield every record of *category*; unparsable lines are skipped."""
        path = self.path_for(category)
        if not path.exists():
            return
        with open(path, encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping bad line in %s", path)

    # -----------------------------------------------------------------------
    # Aggregates
    # -----------------------------------------------------------------------
    def sum_sales(
        self, month: str, email: str | None = None, maker: str | None = None
    ) -> float:
        """Total sale amount in *month*, optionally for one actor and maker."""
        total = 0.0
        for rec in self.read(LogCategory.SALES):
            rec_month = rec.get("month") or str(rec.get("day") or "")[:7]
            if rec_month != month:
                continue
            if email is not None and (rec.get("email") or "") != email:
                continue
            if maker is not None and (rec.get("maker") or UNKNOWN_MAKER) != maker:
                continue
            try:
                total += float(rec.get("amount") or 0)
            except (TypeError, ValueError):
                continue
        return total

    def total_for(self, key: LedgerKey) -> float:
        """Running total behind a sales ledger key."""
        if key.scope == "company":
            return self.sum_sales(key.period)
        return self.sum_sales(key.period, email=key.dimension_a, maker=key.dimension_b)
