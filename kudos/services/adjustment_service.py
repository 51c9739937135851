"""
kudos.services.adjustment_service — Manual XP adjustments
==========================================================

Admins can push a one-off XP correction to a user.  A ``delta_level`` is
validated and recorded on the audit row and event log only; it is never
sent to the gamification API.

Every accepted adjustment follows the same pattern:

  1. Validate the request
  2. Return the cached response if the idempotency key was already used
  3. Take a rate-limit token for ``(tenant, user)``
  4. Insert the ``manual_adjustments`` audit row
  5. Append to the ``adjustments`` event log
  6. Queue the award through the pipeline (skipped in dry-run)
  7. Cache the response under the idempotency key

Steps 2–7 run under a per-key lock so two identical submissions racing each
other produce one adjustment.
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Engine
from sqlalchemy.orm import Session

from kudos.database.engine import run_db
from kudos.database.models import ManualAdjustment
from kudos.engine.actors import Actor
from kudos.engine.ledger import KeyedLocks
from kudos.engine.reward import RewardDelta
from kudos.services.event_log import LogCategory
from kudos.services.idempotency import IdempotencyCache, make_key
from kudos.services.pipeline import RewardPipeline
from kudos.services.throttle import TokenBucketLimiter

logger = logging.getLogger(__name__)

MAX_DELTA_XP = 100_000
MAX_DELTA_LEVEL = 50
MAX_NOTE_LENGTH = 512
MAX_IDEMPOTENCY_KEY_LENGTH = 128


class AdjustmentValidationError(ValueError):
    """The adjustment request is malformed (HTTP 422)."""


@dataclass(frozen=True, slots=True)
class AdjustmentRequest:
    tenant: str
    user_id: str
    delta_xp: int
    delta_level: int | None = None
    note: str | None = None
    idempotency_key: str | None = None


def _clamp(value: int, bound: int) -> int:
    return max(-bound, min(bound, value))


def _as_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool):
        raise AdjustmentValidationError(f"{field_name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise AdjustmentValidationError(f"{field_name} must be a number") from None
    if not math.isfinite(number):
        raise AdjustmentValidationError(f"{field_name} must be finite")
    return int(number)


def validate_adjustment(payload: dict, tenant: str = "default") -> AdjustmentRequest:
    """Build an :class:`AdjustmentRequest` from a JSON body.

    ``deltaXp`` is clamped to ±100,000 and ``deltaLvl`` to ±50.

    Raises
    ------
    AdjustmentValidationError
        On a missing user, non-numeric deltas or oversized strings.
    """
    if not isinstance(payload, dict):
        raise AdjustmentValidationError("body must be a JSON object")

    user_id = str(payload.get("userId") or "").strip()
    if not user_id:
        raise AdjustmentValidationError("userId is required")

    delta_xp = _clamp(_as_int(payload.get("deltaXp", 0), "deltaXp"), MAX_DELTA_XP)

    delta_level = None
    if payload.get("deltaLvl") is not None:
        delta_level = _clamp(_as_int(payload["deltaLvl"], "deltaLvl"), MAX_DELTA_LEVEL)

    note = payload.get("note")
    if note is not None:
        note = str(note)
        if len(note) > MAX_NOTE_LENGTH:
            raise AdjustmentValidationError(f"note exceeds {MAX_NOTE_LENGTH} characters")

    key = payload.get("idempotencyKey")
    if key is not None:
        key = str(key).strip() or None
        if key and len(key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise AdjustmentValidationError(
                f"idempotencyKey exceeds {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
            )

    return AdjustmentRequest(
        tenant=str(payload.get("tenant") or tenant),
        user_id=user_id,
        delta_xp=delta_xp,
        delta_level=delta_level,
        note=note,
        idempotency_key=key,
    )


def _row_to_dict(obj: Any) -> dict:
    """Convert a SQLAlchemy model instance to a JSON-serializable dict."""
    result = {}
    for col in obj.__table__.columns:
        val = getattr(obj, col.key, None)
        if isinstance(val, datetime):
            val = val.isoformat()
        result[col.name] = val
    return result


def _insert_adjustment(engine: Engine, row: ManualAdjustment) -> dict:
    with Session(engine, expire_on_commit=False) as session:
        session.add(row)
        session.commit()
        return _row_to_dict(row)


class AdjustmentService:
    """Applies manual adjustments exactly once per idempotency key."""

    def __init__(
        self,
        pipeline: RewardPipeline,
        engine: Engine,
        *,
        limiter: TokenBucketLimiter,
        cache: IdempotencyCache,
    ) -> None:
        self.pipeline = pipeline
        self.engine = engine
        self.limiter = limiter
        self.cache = cache
        self._locks = KeyedLocks()

    async def apply(self, request: AdjustmentRequest, actor_id: str | None = None) -> tuple[dict, bool]:
        """Apply *request*; return ``(response, replayed)``.

        Raises
        ------
        RateLimitExceeded
            When ``(tenant, user)`` has no token left.  Replays never
            consume a token.
        """
        cache_key = make_key(request.tenant, request.user_id, request.idempotency_key)
        lock_key = cache_key or f"{request.tenant}::{request.user_id}"

        async with self._locks.hold(lock_key):
            if cache_key is not None:
                cached = self.cache.get(cache_key)
                if cached is not None:
                    logger.info("Idempotent replay of adjustment %s", cache_key)
                    return cached, True

            self.limiter.acquire((request.tenant, request.user_id))

            row = ManualAdjustment(
                id=str(uuid.uuid4()),
                tenant=request.tenant,
                user_id=request.user_id,
                delta_xp=request.delta_xp,
                delta_level=request.delta_level,
                note=request.note,
                idempotency_key=request.idempotency_key,
                actor_id=actor_id,
                source="manual",
                created_at=datetime.now(timezone.utc),
            )
            stored = await run_db(_insert_adjustment, self.engine, row)

            email = request.user_id.strip().lower()
            actor = Actor(self.pipeline.directory.display_name_for(email), email, "manual")
            self.pipeline.event_log.append(LogCategory.ADJUSTMENTS, {
                "day": stored["created_at"][:10],
                "email": email,
                "name": actor.display_name,
                "tenant": request.tenant,
                "delta_xp": request.delta_xp,
                "delta_level": request.delta_level,
                "note": request.note,
                "adjustment_id": stored["id"],
                "admin": actor_id,
            })
            future = self.pipeline.submit_award(
                actor,
                RewardDelta(request.delta_xp, "manual"),
                notes=request.note or "manual adjustment",
            )

            response = {
                "ok": True,
                "applied": future is not None,
                "adjustment_id": stored["id"],
                "user_id": request.user_id,
                "delta_xp": request.delta_xp,
                "delta_level": request.delta_level,
                "note": request.note,
                "idempotency_key": request.idempotency_key,
                "created_at": stored["created_at"],
            }
            if cache_key is not None:
                self.cache.put(cache_key, response)

        logger.info(
            "Manual adjustment %s: %+d XP for %s by %s",
            stored["id"], request.delta_xp, request.user_id, actor_id or "?",
        )
        if future is not None:
            await future
        return response, False
