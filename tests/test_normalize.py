"""
tests/test_normalize.py — Source Payload Normalization
=======================================================
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from kudos.engine.events import CallDirection, EventCategory, SourceKind, infer_duration_ms
from kudos.engine.normalize import (
    normalize_crm_events,
    normalize_telephony,
    normalize_workflow,
    normalize_workflow_call,
    parse_timestamp,
)


class TestParseTimestamp:
    def test_epoch_millis_and_seconds_agree(self):
        assert parse_timestamp(1736473200000) == parse_timestamp("1736473200")

    def test_iso_with_z(self):
        assert parse_timestamp("2025-01-10T01:00:00Z") == datetime(2025, 1, 10, 1, tzinfo=timezone.utc)

    def test_naive_iso_is_utc(self):
        assert parse_timestamp("2025-01-10T01:00:00").tzinfo is timezone.utc

    @pytest.mark.parametrize("value", [None, "", "yesterday", {"at": 1}])
    def test_unparsable(self, value):
        assert parse_timestamp(value) is None


class TestInferDuration:
    @pytest.mark.parametrize("value,expected", [
        (620_000, 620_000),      # whole seconds in ms
        (620, 620_000),          # seconds
        (61.5, 61_500),
        (12_345_678, 12_345_678),
        ("300", 300_000),
        (0, 0),
        (-5, 0),
        ("n/a", 0),
        (float("nan"), 0),
    ])
    def test_values(self, value, expected):
        assert infer_duration_ms(value) == expected


class TestCrmEvents:
    def _entry(self, **overrides):
        entry = {
            "eventId": 1,
            "subscriptionType": "call.propertyChange",
            "objectId": 42,
            "propertyName": "hs_call_disposition",
            "propertyValue": "appointment_scheduled",
            "occurredAt": 1736473200000,
        }
        entry.update(overrides)
        return entry

    def test_disposition_becomes_appointment(self):
        (event,) = normalize_crm_events([self._entry()])
        assert event.source_kind == SourceKind.CRM
        assert event.category == EventCategory.APPOINTMENT
        assert event.outcome == "appointment_scheduled"
        assert event.identity() == "crm:1"
        assert event.metadata["call_id"] == "42"

    def test_duration_becomes_call(self):
        (event,) = normalize_crm_events([
            self._entry(propertyName="hs_call_duration", propertyValue="95"),
        ])
        assert event.category == EventCategory.CALL
        assert event.metadata["duration_ms"] == 95_000
        assert event.metadata["direction"] == CallDirection.UNKNOWN

    def test_call_object_type_id_is_enough(self):
        entry = self._entry(subscriptionType="object.propertyChange", objectTypeId="0-48")
        assert len(normalize_crm_events([entry])) == 1

    def test_other_objects_and_properties_ignored(self):
        events = normalize_crm_events([
            self._entry(subscriptionType="contact.propertyChange"),
            self._entry(propertyName="hs_call_title"),
            "junk",
        ])
        assert events == []

    def test_non_list_payload(self):
        assert normalize_crm_events({"eventId": 1}) == []
        assert normalize_crm_events(None) == []

    def test_missing_event_id_falls_back_to_subject_and_time(self):
        first = self._entry(attemptNumber=0, objectId=111)
        second = self._entry(attemptNumber=0, objectId=222)
        del first["eventId"], second["eventId"]
        a, b = normalize_crm_events([first, second])
        assert a.event_id is None
        assert a.identity() == "crm:111@2025-01-10T01:00:00+00:00"
        assert a.identity() != b.identity()


class TestTelephony:
    def test_outbound_log_preferred(self):
        body = {
            "event_id": "ev-1",
            "payload": {"object": {
                "user_email": "Alice@Example.com",
                "call_logs": [
                    {"direction": "inbound", "talk_time": 10, "call_id": "in"},
                    {"direction": "outbound", "talk_time": 125, "call_id": "out", "result": "Completed"},
                ],
            }},
        }
        event = normalize_telephony(body)
        assert event.metadata["direction"] == CallDirection.OUTBOUND
        assert event.metadata["duration_ms"] == 125_000
        assert event.metadata["status"] == "completed"
        assert event.raw == {"userEmail": "alice@example.com"}
        assert event.identity() == "telephony:ev-1"

    def test_duration_from_start_and_end(self):
        body = {"payload": {"object": {
            "call_id": "c-1",
            "direction": "outbound",
            "start_time": "2025-01-10T01:00:00Z",
            "end_time": "2025-01-10T01:02:30Z",
            "user_id": "zu-1",
        }}}
        event = normalize_telephony(body)
        assert event.metadata["duration_ms"] == 150_000
        assert event.raw == {"telephonyUserId": "zu-1"}
        assert event.event_id == "c-1"

    def test_duration_is_capped(self):
        body = {"payload": {"object": {"call_id": "c", "talk_time": 99_999}}}
        assert normalize_telephony(body, max_call_ms=60_000).metadata["duration_ms"] == 60_000

    def test_unknown_direction(self):
        body = {"payload": {"object": {"call_id": "c", "direction": "sideways"}}}
        assert normalize_telephony(body).metadata["direction"] == CallDirection.UNKNOWN


class TestWorkflow:
    def test_outcome_callback(self):
        event = normalize_workflow({"callId": "c-1", "outcome": "新規アポ", "tenant": "acme"})
        assert event.category == EventCategory.APPOINTMENT
        assert event.tenant == "acme"
        assert event.identity() == "workflow:c-1"

    def test_disposition_from_properties(self):
        event = normalize_workflow({"id": 5, "properties": {"hs_call_disposition": "abc-123"}})
        assert event.outcome == "abc-123"

    def test_duration_pseudo_event(self):
        body = {"type": "call.duration", "callId": "c-1", "durationSec": 45}
        event = normalize_workflow_call(body)
        assert event.category == EventCategory.CALL
        assert event.metadata["duration_ms"] == 45_000
        assert event.event_id == "dur:c-1"

    def test_other_types_are_not_duration_events(self):
        assert normalize_workflow_call({"callId": "c-1"}) is None

    def test_duration_without_any_id_has_no_identity(self):
        body = {"type": "call.duration", "durationSec": 45}
        event = normalize_workflow_call(body)
        assert event.event_id is None
        assert event.identity() is None

    def test_duration_ids_differ_per_call(self):
        first = normalize_workflow_call({"type": "call.duration", "callId": "c-1", "durationSec": 5})
        second = normalize_workflow_call({"type": "call.duration", "callId": "c-2", "durationSec": 5})
        assert first.identity() != second.identity()
