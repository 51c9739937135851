"""
tests/test_reward_engine.py — Unit Tests for the Reward Rules
==============================================================

Tests the pure calculation (no I/O, no database).
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from kudos.config import RewardConfig
from kudos.engine.events import CallDirection, EventCategory, NormalizedEvent, SourceKind
from kudos.engine.labels import LabelItem
from kudos.engine.reward import appointment_reward, compute_reward, is_missed_call


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def config() -> RewardConfig:
    return RewardConfig()


def call_event(duration_ms=0, status="completed", direction=CallDirection.OUTBOUND,
               source=SourceKind.TELEPHONY, outcome=None) -> NormalizedEvent:
    return NormalizedEvent(
        source_kind=source,
        category=EventCategory.CALL,
        event_id="c-1",
        outcome=outcome,
        metadata={"duration_ms": duration_ms, "status": status, "direction": direction},
    )


def outcome_event(outcome=None, raw=None) -> NormalizedEvent:
    return NormalizedEvent(
        source_kind=SourceKind.CRM,
        category=EventCategory.APPOINTMENT,
        event_id="e-1",
        outcome=outcome,
        raw=raw or {},
    )


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------
class TestCallReward:
    def test_620000ms_call_yields_five_xp(self, config):
        deltas = compute_reward(call_event(620_000), config)
        assert sum(d.xp for d in deltas) == 5
        assert [d.reason for d in deltas] == ["call.completed", "call.duration"]

    def test_short_call_earns_flat_xp_only(self, config):
        deltas = compute_reward(call_event(120_000), config)
        assert [(d.xp, d.reason) for d in deltas] == [(1, "call.completed")]

    def test_duration_capped_before_division(self, config):
        """A 30-hour duration is clamped to 3 hours: 36 units, not 360."""
        deltas = compute_reward(call_event(30 * 60 * 60 * 1000), config)
        assert sum(d.xp for d in deltas) == 1 + 36 * 2

    def test_missed_status_is_penalized(self, config):
        deltas = compute_reward(call_event(0, status="no_answer"), config)
        assert [(d.xp, d.reason) for d in deltas] == [(-1, "call.missed")]

    def test_zero_duration_counts_as_missed(self, config):
        assert is_missed_call(call_event(0, status="completed"), config)

    def test_missed_label_outcome(self, config):
        assert is_missed_call(call_event(60_000, outcome="不在"), config)

    def test_penalty_disabled_when_zero(self, config):
        cfg = replace(config, missed_call_penalty_xp=0)
        assert compute_reward(call_event(0, status="missed"), cfg) == []

    def test_inbound_call_earns_nothing(self, config):
        assert compute_reward(call_event(900_000, direction=CallDirection.INBOUND), config) == []

    def test_crm_duration_not_rewarded_by_default(self, config):
        assert compute_reward(call_event(900_000, source=SourceKind.CRM), config) == []

    def test_crm_duration_rewarded_when_configured(self, config):
        cfg = replace(config, call_sources=("telephony", "crm"))
        deltas = compute_reward(call_event(900_000, source=SourceKind.CRM), cfg)
        assert sum(d.xp for d in deltas) == 1 + 3 * 2


# ---------------------------------------------------------------------------
# Appointments and labels
# ---------------------------------------------------------------------------
class TestAppointmentReward:
    def test_global_appointment_value(self, config):
        deltas = compute_reward(outcome_event("APPOINTMENT_SCHEDULED"), config)
        assert [(d.xp, d.reason, d.badge_label) for d in deltas] == [
            (20, "appointment", "🎯 New Appointment")
        ]

    def test_unknown_outcome_earns_nothing(self, config):
        assert compute_reward(outcome_event("left voicemail"), config) == []

    def test_label_with_xp_awards_its_own_xp(self, config):
        labels = [LabelItem(id="lbl-9", title="Demo booked", xp=15, badge="📅 Demo")]
        deltas = compute_reward(outcome_event("whatever", {"labelId": "lbl-9"}), config, labels)
        assert [(d.xp, d.reason, d.badge_label) for d in deltas] == [(15, "label", "📅 Demo")]

    def test_appointment_label_without_xp_uses_default(self, config):
        labels = [LabelItem(title="Meeting set")]
        deltas, matched = appointment_reward(outcome_event("meeting SET"), config, labels)
        assert [d.xp for d in deltas] == [20]
        assert matched == labels

    def test_non_appointment_label_without_xp_is_recorded_only(self, config):
        labels = [LabelItem(title="Callback", category="followup")]
        deltas, matched = appointment_reward(outcome_event("callback"), config, labels)
        assert deltas == []
        assert matched == labels

    def test_disabled_label_ignored(self, config):
        labels = [LabelItem(title="Meeting set", enabled=False, xp=50)]
        assert compute_reward(outcome_event("meeting set"), config, labels) == []


# ---------------------------------------------------------------------------
# Flat rules
# ---------------------------------------------------------------------------
class TestFlatRules:
    def _event(self, category, **metadata):
        return NormalizedEvent(source_kind=SourceKind.BATCH, category=category, metadata=metadata)

    def test_approval(self, config):
        assert [d.xp for d in compute_reward(self._event(EventCategory.APPROVAL), config)] == [30]

    def test_sale_has_no_per_row_xp_by_default(self, config):
        assert compute_reward(self._event(EventCategory.SALE, amount=40_000), config) == []

    def test_small_sale_exception(self, config):
        cfg = replace(config, small_sale_xp=3)
        assert [d.xp for d in compute_reward(self._event(EventCategory.SALE, amount=40_000), cfg)] == [3]
        assert compute_reward(self._event(EventCategory.SALE, amount=150_000), cfg) == []

    def test_daily_bonus(self, config):
        assert [d.xp for d in compute_reward(self._event(EventCategory.DAILY_BONUS), config)] == [10]

    def test_maker_award_carries_badge(self, config):
        (delta,) = compute_reward(self._event(EventCategory.MAKER_AWARD), config)
        assert delta.xp == 5
        assert delta.badge_label == "🏆 Maker Award"

    def test_is_deterministic(self, config):
        event = call_event(620_000)
        assert compute_reward(event, config) == compute_reward(event, config)
