"""
kudos.api.routes.webhooks — Inbound webhooks
=============================================

Authentication happens synchronously inside the request; the reward work
runs as a background task after the response is sent.

* ``/webhooks/crm``          — CRM v3 signature; always 204
* ``/webhooks/telephony``    — URL-validation handshake, signature or bearer
* ``/webhooks/workflow``     — bearer ``AUTH_TOKEN``
* ``/webhooks/gamification`` — query token; daily-report bonus
"""

from __future__ import annotations

import json
import logging
import time

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from kudos.api.deps import get_services, token_matches
from kudos.engine.events import NormalizedEvent
from kudos.engine.normalize import (
    normalize_crm_events,
    normalize_telephony,
    normalize_workflow,
    normalize_workflow_call,
)
from kudos.engine.signatures import (
    read_bearer,
    url_candidates,
    url_validation_response,
    verify_crm_v3,
    verify_telephony,
)
from kudos.services.bootstrap import Services
from kudos.services.pipeline import RewardPipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

CRM_SIGNATURE_HEADER = "x-hubspot-signature-v3"
CRM_TIMESTAMP_HEADER = "x-hubspot-request-timestamp"
TELEPHONY_SIGNATURE_HEADER = "x-zm-signature"


def _unauthorized() -> JSONResponse:
    return JSONResponse({"ok": False, "error": "auth"}, status_code=status.HTTP_401_UNAUTHORIZED)


def _parse_json(raw: bytes) -> object:
    try:
        return json.loads(raw.decode("utf-8")) if raw else None
    except (UnicodeDecodeError, ValueError):
        return None


async def _process_events(pipeline: RewardPipeline, events: list[NormalizedEvent]) -> None:
    for event in events:
        try:
            result = await pipeline.process_event(event)
        except Exception:
            logger.exception("Processing %s event %s failed", event.source_kind, event.identity())
            continue
        if not result.duplicate:
            logger.info(
                "%s %s → %s: %+d XP (%d dispatched)",
                event.source_kind, event.category,
                result.actor.display_name if result.actor else "?",
                result.xp, result.dispatched,
            )


async def _deliver_daily_bonus(pipeline: RewardPipeline, email: str, text: str, day: str) -> None:
    try:
        outcome = await pipeline.deliver_daily_bonus(email, text, day)
    except Exception:
        logger.exception("Daily bonus for %s on %s failed", email, day)
        return
    logger.info("Daily bonus for %s on %s: %s", email, day, outcome)


# ---------------------------------------------------------------------------
# CRM v3
# ---------------------------------------------------------------------------
@router.post("/crm", status_code=status.HTTP_204_NO_CONTENT)
async def crm_webhook(
    request: Request,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    raw = await request.body()
    url = request.url
    path_with_query = url.path + (f"?{url.query}" if url.query else "")
    headers = request.headers
    candidates = url_candidates(
        path_with_query,
        url.path,
        forwarded_proto=headers.get("x-forwarded-proto", ""),
        host=headers.get("x-forwarded-host") or headers.get("host", ""),
        public_base_url=services.config.public_base_url,
    )
    timestamp = headers.get(CRM_TIMESTAMP_HEADER, "")
    result = verify_crm_v3(
        services.secrets.crm_webhook_secret,
        request.method,
        headers.get(CRM_SIGNATURE_HEADER, ""),
        timestamp,
        raw,
        candidates,
    )

    if not result.ok:
        logger.warning(
            "CRM webhook rejected: %s (path=%s, %d candidates)",
            result.reason, path_with_query, len(candidates),
        )
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    if timestamp.isdigit():
        skew_ms = abs(time.time() * 1000 - int(timestamp))
        if skew_ms > services.config.signature_skew_seconds * 1000:
            logger.info("CRM webhook timestamp is stale (%.0fs)", skew_ms / 1000)

    events = normalize_crm_events(
        _parse_json(raw), max_call_ms=services.config.rewards.max_call_ms
    )
    logger.info("CRM webhook verified (uri=%s): %d events", result.matched_url, len(events))
    if events:
        background.add_task(_process_events, services.pipeline, events)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Telephony
# ---------------------------------------------------------------------------
@router.post("/telephony")
async def telephony_webhook(
    request: Request,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    raw = await request.body()
    body = _parse_json(raw)
    secrets = services.secrets

    handshake_key = secrets.telephony_webhook_secret or secrets.auth_token or "dummy"
    handshake = url_validation_response(body, handshake_key)
    if handshake is not None:
        logger.info("Telephony URL validation answered")
        return JSONResponse(handshake)

    signature = request.headers.get(TELEPHONY_SIGNATURE_HEADER, "")
    verified = False
    if signature:
        result = verify_telephony(
            signature,
            raw,
            secret=secrets.telephony_webhook_secret,
            verification_token=secrets.telephony_verification_token,
            skew_seconds=services.config.signature_skew_seconds,
        )
        verified = result.ok
        if not verified:
            logger.warning("Telephony signature rejected: %s", result.reason)

    if not verified:
        expected = (
            secrets.telephony_bearer_token
            or secrets.telephony_webhook_secret
            or secrets.auth_token
        )
        if expected and token_matches(read_bearer(request.headers), (expected,)):
            verified = True

    if not verified:
        logger.warning("Telephony webhook rejected (no valid signature or bearer)")
        return _unauthorized()

    event = normalize_telephony(
        body if isinstance(body, dict) else {},
        max_call_ms=services.config.rewards.max_call_ms,
    )
    if event is not None:
        background.add_task(_process_events, services.pipeline, [event])
    return {"ok": True, "accepted": event is not None}


# ---------------------------------------------------------------------------
# CRM workflow callbacks
# ---------------------------------------------------------------------------
@router.post("/workflow")
async def workflow_webhook(
    request: Request,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    expected = services.secrets.auth_token
    if not expected:
        logger.error("Workflow webhook called but AUTH_TOKEN is not configured")
        return JSONResponse(
            {"ok": False, "error": "server_misconfigured"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    if not token_matches(read_bearer(request.headers), (expected,)):
        return _unauthorized()

    body = _parse_json(await request.body())
    body = body if isinstance(body, dict) else {}
    max_call_ms = services.config.rewards.max_call_ms
    events = [
        e for e in (normalize_workflow(body), normalize_workflow_call(body, max_call_ms=max_call_ms))
        if e is not None
    ]
    background.add_task(_process_events, services.pipeline, events)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Gamification task webhook (daily report bonus)
# ---------------------------------------------------------------------------
@router.post("/gamification")
async def gamification_webhook(
    request: Request,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
):
    token = (request.query_params.get("t") or request.query_params.get("token") or "").strip()
    if not token_matches(token, (services.secrets.gamification_webhook_secret,)):
        return _unauthorized()

    email = (request.query_params.get("email") or "").strip().lower()
    if not email:
        return JSONResponse({"ok": False, "error": "missing email"}, status_code=400)

    body = _parse_json(await request.body())
    body = body if isinstance(body, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    task = body.get("task") or data.get("task") or data
    task = task if isinstance(task, dict) else {}
    text = str(task.get("text") or task.get("title") or "")
    completed = task.get("completed") is True or str(body.get("direction") or "").lower() == "up"

    pipeline = services.pipeline
    if not completed or not pipeline.is_daily_task(text):
        return {"ok": True, "skipped": True}

    day = await pipeline.claim_daily_bonus(email)
    if day is None:
        return {"ok": True, "duplicate": True}
    background.add_task(_deliver_daily_bonus, pipeline, email, text, day)
    if pipeline.daily_bonus_status(email) in ("dry_run", "no_credential"):
        return {"ok": True, "dryRun": True}
    return {"ok": True, "awarded": True}
