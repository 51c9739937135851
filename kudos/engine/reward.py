"""
kudos.engine.reward — Reward rules
===================================

Pure calculation: a :class:`NormalizedEvent` plus the reward configuration
(and, for CRM outcomes, the tenant's label set) goes in, a list of
:class:`RewardDelta` comes out.  No HTTP, no file, no DB I/O in here.

Step-based sales XP is not computed here: it depends on a running monthly
total and is owned by :mod:`kudos.engine.ledger`.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from kudos.config import RewardConfig
from kudos.constants import MISSED_STATUSES
from kudos.engine.events import CallDirection, EventCategory, NormalizedEvent
from kudos.engine.labels import LabelItem, match_labels, pick_label_ids

logger = logging.getLogger(__name__)

__all__ = ["RewardDelta", "compute_reward", "call_reward", "appointment_reward", "is_missed_call"]


@dataclass(frozen=True, slots=True)
class RewardDelta:
    """One unit of reward to apply to one actor."""

    xp: int
    reason: str
    badge_label: str | None = None


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------
def is_missed_call(event: NormalizedEvent, config: RewardConfig) -> bool:
    status = str(event.metadata.get("status") or "").strip().lower()
    if status in MISSED_STATUSES:
        return True
    outcome = (event.outcome or "").strip().lower()
    if outcome and outcome in {label.lower() for label in config.missed_call_labels}:
        return True
    return int(event.metadata.get("duration_ms") or 0) <= 0


def call_reward(event: NormalizedEvent, config: RewardConfig) -> list[RewardDelta]:
    """XP for one call.

    Inbound calls and calls from sources outside ``call_sources`` are
    recorded but earn nothing.  A missed call costs the configured penalty;
    a connected call earns the per-call XP plus XP per full duration unit.
    """
    if event.metadata.get("direction") == CallDirection.INBOUND:
        return []
    if str(event.source_kind) not in config.call_sources:
        return []

    if is_missed_call(event, config):
        if config.missed_call_penalty_xp <= 0:
            return []
        return [RewardDelta(-config.missed_call_penalty_xp, "call.missed")]

    duration_ms = min(int(event.metadata["duration_ms"]), config.max_call_ms)
    deltas = [RewardDelta(config.per_call_xp, "call.completed")]
    units = duration_ms // config.unit_ms if config.unit_ms > 0 else 0
    if units > 0 and config.per_unit_xp:
        deltas.append(RewardDelta(units * config.per_unit_xp, "call.duration"))
    return deltas


# ---------------------------------------------------------------------------
# Appointments / labels
# ---------------------------------------------------------------------------
def appointment_reward(
    event: NormalizedEvent, config: RewardConfig, labels: Iterable[LabelItem] = ()
) -> tuple[list[RewardDelta], list[LabelItem]]:
    """XP for a CRM outcome, plus the labels it matched.

    Matched labels carrying XP award their own XP.  Otherwise a matched
    appointment label, or an outcome listed in ``appointment_values``, earns
    one default appointment award.
    """
    matched = match_labels(labels, event.outcome, pick_label_ids(event.raw))
    with_xp = [label for label in matched if label.xp]
    if with_xp:
        deltas = [
            RewardDelta(
                label.xp,
                "label",
                label.badge or label.title or label.category,
            )
            for label in with_xp
        ]
        return deltas, matched

    outcome = (event.outcome or "").strip().lower()
    global_hit = bool(outcome) and outcome in {v.lower() for v in config.appointment_values}
    if any(label.is_appointment for label in matched) or global_hit:
        return [RewardDelta(config.appointment_xp, "appointment", config.appointment_badge)], matched
    return [], matched


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def compute_reward(
    event: NormalizedEvent,
    config: RewardConfig,
    labels: Iterable[LabelItem] = (),
) -> list[RewardDelta]:
    """Return the reward deltas for *event*.

    This is a PURE function: same input, same output, no side effects.
    """
    category = event.category
    if category == EventCategory.CALL:
        return call_reward(event, config)

    if category == EventCategory.APPOINTMENT:
        deltas, _ = appointment_reward(event, config, labels)
        return deltas

    if category == EventCategory.APPROVAL:
        return [RewardDelta(config.approval_xp, "approval")] if config.approval_xp else []

    if category == EventCategory.SALE:
        amount = float(event.metadata.get("amount") or 0)
        if config.small_sale_xp > 0 and 0 < amount < config.sales_step:
            return [RewardDelta(config.small_sale_xp, "sale.small")]
        return []

    if category == EventCategory.DAILY_BONUS:
        return [RewardDelta(config.daily_bonus_xp, "daily_bonus")] if config.daily_bonus_xp else []

    if category == EventCategory.MAKER_AWARD:
        return [RewardDelta(config.maker_award_xp, "maker_award", config.maker_award_badge)]

    logger.warning("No reward rule for category %s", category)
    return []
