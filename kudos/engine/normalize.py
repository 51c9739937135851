"""
kudos.engine.normalize — Source payloads → NormalizedEvent
===========================================================

One function per source.  Each takes the already-authenticated, parsed
JSON body and returns zero or more :class:`NormalizedEvent`; nothing here
touches the network, the seen-set or the event log.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from kudos.engine.events import (
    DEFAULT_MAX_CALL_MS,
    CallDirection,
    EventCategory,
    NormalizedEvent,
    SourceKind,
    infer_duration_ms,
)

logger = logging.getLogger(__name__)

__all__ = [
    "parse_timestamp",
    "normalize_crm_events",
    "normalize_telephony",
    "normalize_workflow",
    "normalize_workflow_call",
]

CRM_CALL_OBJECT_TYPE = "0-48"
CRM_DISPOSITION_PROPERTY = "hs_call_disposition"
CRM_DURATION_PROPERTY = "hs_call_duration"


def parse_timestamp(value: object) -> datetime | None:
    """Accept epoch seconds / milliseconds (number or digit string) or ISO-8601."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip().isdigit()):
        n = float(value)
        if n > 1e12:
            n /= 1000.0
        try:
            return datetime.fromtimestamp(n, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip().replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


# ---------------------------------------------------------------------------
# CRM v3 change notifications
# ---------------------------------------------------------------------------
def _is_call(entry: dict) -> bool:
    return (
        "call" in str(entry.get("subscriptionType") or "").lower()
        or str(entry.get("objectTypeId") or "") == CRM_CALL_OBJECT_TYPE
    )


def normalize_crm_events(
    payload: object, tenant: str = "default", max_call_ms: int = DEFAULT_MAX_CALL_MS
) -> list[NormalizedEvent]:
    """Turn a CRM v3 notification batch (a JSON array) into events.

    Disposition changes become appointment-category events; duration
    changes become call events.  Everything else is ignored.
    """
    if not isinstance(payload, list):
        return []

    events: list[NormalizedEvent] = []
    for entry in payload:
        if not isinstance(entry, dict) or not _is_call(entry):
            continue
        prop = entry.get("propertyName")
        event_id = _str(entry.get("eventId"))
        subject = _str(entry.get("objectId"))
        occurred = parse_timestamp(entry.get("occurredAt"))

        if prop == CRM_DISPOSITION_PROPERTY:
            events.append(NormalizedEvent(
                source_kind=SourceKind.CRM,
                category=EventCategory.APPOINTMENT,
                event_id=event_id,
                subject_id=subject,
                outcome=_str(entry.get("propertyValue")),
                occurred_at=occurred,
                tenant=tenant,
                raw=entry,
                metadata={"call_id": subject},
            ))
        elif prop == CRM_DURATION_PROPERTY:
            events.append(NormalizedEvent(
                source_kind=SourceKind.CRM,
                category=EventCategory.CALL,
                event_id=event_id,
                subject_id=subject,
                occurred_at=occurred,
                tenant=tenant,
                raw=entry,
                metadata={
                    "call_id": subject,
                    "duration_ms": infer_duration_ms(entry.get("propertyValue"), max_call_ms),
                    "direction": CallDirection.UNKNOWN,
                },
            ))
    return events


# ---------------------------------------------------------------------------
# Telephony call-completion webhooks
# ---------------------------------------------------------------------------
def _pick_call_log(obj: dict) -> dict:
    logs = obj.get("call_logs")
    if not isinstance(logs, list):
        nested = obj.get("object")
        logs = nested.get("call_logs") if isinstance(nested, dict) else None
    logs = [entry for entry in logs or [] if isinstance(entry, dict)]
    for entry in logs:
        if str(entry.get("direction") or "").lower() == CallDirection.OUTBOUND:
            return entry
    return logs[0] if logs else obj


def _first(*values: object) -> object:
    for value in values:
        if value not in (None, ""):
            return value
    return None


def normalize_telephony(
    body: dict, tenant: str = "default", max_call_ms: int = DEFAULT_MAX_CALL_MS
) -> NormalizedEvent | None:
    """Turn a telephony call-completion webhook into a call event.

    The outbound call log is preferred when the payload lists several.
    Talk time comes from ``talk_time`` (seconds) or the start/end times.
    """
    if not isinstance(body, dict):
        return None
    payload = body.get("payload")
    obj = (payload or {}).get("object") if isinstance(payload, dict) else None
    if not isinstance(obj, dict):
        obj = body.get("object") if isinstance(body.get("object"), dict) else {}
    chosen = _pick_call_log(obj)

    email = _first(
        obj.get("user_email"), obj.get("owner_email"), obj.get("caller_email"),
        obj.get("callee_email"), chosen.get("caller_email"), chosen.get("callee_email"),
    )
    user_id = _first(
        obj.get("zoom_user_id"), obj.get("user_id"), obj.get("owner_id"),
        chosen.get("zoom_user_id"), chosen.get("user_id"), chosen.get("owner_id"),
    )
    raw_direction = str(chosen.get("direction") or obj.get("direction") or "").lower()
    direction = (
        CallDirection(raw_direction)
        if raw_direction in (CallDirection.OUTBOUND, CallDirection.INBOUND)
        else CallDirection.UNKNOWN
    )

    talk = _first(chosen.get("talk_time"), obj.get("talk_time"), chosen.get("talkTime"), obj.get("talkTime"))
    if isinstance(talk, (int, float)) and not isinstance(talk, bool):
        duration_ms = max(0, int(talk * 1000))
    else:
        started = parse_timestamp(_first(chosen.get("start_time"), obj.get("start_time")))
        ended = parse_timestamp(_first(
            chosen.get("end_time"), obj.get("end_time"), chosen.get("ended_at"), obj.get("ended_at"),
        ))
        duration_ms = (
            max(0, int((ended - started).total_seconds() * 1000)) if started and ended else 0
        )
    duration_ms = min(duration_ms, max_call_ms)

    ended_at = parse_timestamp(_first(
        chosen.get("end_time"), obj.get("end_time"), chosen.get("ended_at"), obj.get("ended_at"),
    ))
    occurred = parse_timestamp(body.get("event_ts") or body.get("timestamp")) or ended_at
    call_id = _str(_first(obj.get("call_id"), obj.get("session_id"), chosen.get("call_id"), chosen.get("session_id")))
    status = _str(_first(chosen.get("result"), chosen.get("status"), obj.get("result"), obj.get("status")))

    raw: dict = {}
    if email:
        raw["userEmail"] = str(email).lower()
    if user_id is not None:
        raw["telephonyUserId"] = str(user_id)

    return NormalizedEvent(
        source_kind=SourceKind.TELEPHONY,
        category=EventCategory.CALL,
        event_id=_str(body.get("event_id")) or call_id,
        subject_id=call_id,
        outcome=status,
        occurred_at=occurred,
        tenant=tenant,
        raw=raw,
        metadata={
            "call_id": call_id,
            "duration_ms": duration_ms,
            "direction": direction,
            "status": (status or "").lower(),
        },
    )


# ---------------------------------------------------------------------------
# CRM workflow callbacks
# ---------------------------------------------------------------------------
def normalize_workflow(body: dict, tenant: str = "default") -> NormalizedEvent | None:
    """Turn a CRM workflow call-outcome callback into an appointment event."""
    if not isinstance(body, dict):
        return None
    props = body.get("properties") if isinstance(body.get("properties"), dict) else {}
    outcome = _first(body.get("outcome"), body.get("hs_call_disposition"), props.get("hs_call_disposition"))
    call_id = _str(_first(body.get("callId"), body.get("engagementId"), body.get("id")))
    occurred = parse_timestamp(_first(
        body.get("endedAt"), body.get("occurredAt"), body.get("timestamp"), props.get("hs_timestamp"),
    ))
    return NormalizedEvent(
        source_kind=SourceKind.WORKFLOW,
        category=EventCategory.APPOINTMENT,
        event_id=_str(body.get("eventId")) or call_id,
        subject_id=call_id,
        outcome=_str(outcome),
        occurred_at=occurred,
        tenant=str(body.get("tenant") or tenant),
        raw=body,
        metadata={"call_id": call_id},
    )


def normalize_workflow_call(
    body: dict, tenant: str = "default", max_call_ms: int = DEFAULT_MAX_CALL_MS
) -> NormalizedEvent | None:
    """A workflow callback with ``type == "call.duration"`` also reports talk time."""
    if not isinstance(body, dict) or body.get("type") != "call.duration":
        return None
    call_id = _str(_first(body.get("callId"), body.get("engagementId"), body.get("id")))
    duration = _first(body.get("durationMs"), body.get("durationSec"))
    source_id = _str(body.get("eventId")) or call_id
    return NormalizedEvent(
        source_kind=SourceKind.WORKFLOW,
        category=EventCategory.CALL,
        event_id=f"dur:{source_id}" if source_id else None,
        subject_id=call_id,
        occurred_at=parse_timestamp(_first(body.get("endedAt"), body.get("occurredAt"), body.get("timestamp"))),
        tenant=str(body.get("tenant") or tenant),
        raw=body,
        metadata={
            "call_id": call_id,
            "duration_ms": infer_duration_ms(duration, max_call_ms),
            "direction": CallDirection.UNKNOWN,
        },
    )
