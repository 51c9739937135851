"""
kudos.engine.events — NormalizedEvent and categories
=====================================================

The universal event envelope.  Every CRM notification, telephony webhook,
workflow callback, batch row and gamification callback is normalized into a
:class:`NormalizedEvent` before the reward pipeline processes it.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

__all__ = [
    "SourceKind",
    "EventCategory",
    "CallDirection",
    "NormalizedEvent",
    "infer_duration_ms",
]

# Longest call the engine will believe, in milliseconds (3 hours)
DEFAULT_MAX_CALL_MS = 3 * 60 * 60 * 1000


class SourceKind(enum.StrEnum):
    """Where an event came from."""
    CRM = "crm"
    TELEPHONY = "telephony"
    WORKFLOW = "workflow"
    BATCH = "batch"
    GAMIFICATION = "gamification"
    ADMIN = "admin"


class EventCategory(enum.StrEnum):
    """What kind of real-world fact an event records."""
    CALL = "call"
    APPOINTMENT = "appointment"
    APPROVAL = "approval"
    SALE = "sale"
    DAILY_BONUS = "daily_bonus"
    MAKER_AWARD = "maker_award"


class CallDirection(enum.StrEnum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"
    UNKNOWN = "unknown"


# ---------------------------------------------------------------------------
# NormalizedEvent — the universal event envelope
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class NormalizedEvent:
    """Normalized event from any source.

    This is the sole input to the reward rules.  Source-specific details
    (call duration, direction, status, amount, maker...) live in
    ``metadata``; the untouched source payload stays in ``raw`` so the actor
    resolver can look for owner and email fields.
    """

    source_kind: SourceKind
    category: EventCategory
    event_id: str | None = None
    subject_id: str | None = None
    outcome: str | None = None
    occurred_at: datetime | None = None
    tenant: str = "default"
    raw: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)

    def identity(self) -> str | None:
        """Stable dedup key: ``source:event_id`` or ``source:subject@occurred_at``.

        Returns ``None`` when neither is available; such events are never
        considered duplicates.
        """
        if self.event_id:
            return f"{self.source_kind}:{self.event_id}"
        if self.subject_id and self.occurred_at is not None:
            return f"{self.source_kind}:{self.subject_id}@{self.occurred_at.isoformat()}"
        return None

    @property
    def occurred_or_now(self) -> datetime:
        return self.occurred_at or datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Duration helpers
# ---------------------------------------------------------------------------
def infer_duration_ms(value: object, max_call_ms: int = DEFAULT_MAX_CALL_MS) -> int:
    """Interpret an ambiguous duration as milliseconds.

    CRM duration properties arrive in seconds or milliseconds depending on
    the portal.  A whole-second value no larger than the call cap is taken
    as milliseconds; otherwise anything that would fit in three hours as
    seconds is taken as seconds; the rest is milliseconds.
    """
    try:
        n = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0
    if n != n or n <= 0:  # NaN
        return 0
    if n <= max_call_ms and n % 1000 == 0:
        return int(n)
    if n <= 10_800:
        return int(round(n * 1000))
    return int(round(n))
