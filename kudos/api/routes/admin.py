"""
kudos.api.routes.admin — Admin endpoints (JWT‑protected)
=========================================================
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from kudos.api.deps import get_current_admin, get_services
from kudos.engine.labels import LabelItem
from kudos.services.adjustment_service import AdjustmentValidationError, validate_adjustment
from kudos.services.bootstrap import Services
from kudos.services.throttle import RateLimitExceeded

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class LabelIn(BaseModel):
    id: str | None = None
    title: str | None = None
    category: str = "appointment"
    enabled: bool = True
    xp: int | None = None
    badge: str | None = None


class LabelSet(BaseModel):
    items: list[LabelIn] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Manual adjustments
# ---------------------------------------------------------------------------
@router.post("/adjustments")
async def create_adjustment(
    payload: dict[str, Any] = Body(...),
    tenant: str = Query("default"),
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    try:
        request = validate_adjustment(payload, tenant=tenant)
    except AdjustmentValidationError as exc:
        raise HTTPException(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error": "invalid_adjustment", "message": str(exc)},
        )

    try:
        response, replayed = await services.adjustments.apply(request, actor_id=str(admin.get("sub") or ""))
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": "Too many adjustments for this user; retry later.",
                "retry_after": exc.retry_after_header,
            },
            headers={"Retry-After": exc.retry_after_header},
        )

    if replayed:
        return JSONResponse(response, headers={"Idempotent-Replay": "true"})
    return response


# ---------------------------------------------------------------------------
# Sales ledger
# ---------------------------------------------------------------------------
@router.get("/ledger")
def list_ledger(
    period: str | None = Query(None, description="Filter by month, e.g. 2025-01"),
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    entries = [
        {
            "scope": e.key.scope,
            "period": e.key.period,
            "dimension_a": e.key.dimension_a,
            "dimension_b": e.key.dimension_b,
            "cumulative_total": e.cumulative_total,
            "steps_awarded": e.steps_awarded,
            "last_updated_at": e.last_updated_at,
        }
        for e in services.ledger.store.entries()
        if period is None or e.key.period == period
    ]
    entries.sort(key=lambda d: (d["period"], d["scope"], d["dimension_a"], d["dimension_b"]))
    return {"entries": entries, "step_size": services.ledger.step_size}


# ---------------------------------------------------------------------------
# Outcome labels
# ---------------------------------------------------------------------------
@router.get("/labels/{tenant}")
def get_labels(
    tenant: str,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    items = services.labels.get(tenant, include_disabled=True)
    return {"tenant": tenant, "items": [item.to_dict() for item in items]}


@router.put("/labels/{tenant}")
def put_labels(
    tenant: str,
    body: LabelSet,
    admin: dict = Depends(get_current_admin),
    services: Services = Depends(get_services),
):
    items = [LabelItem.from_dict(item.model_dump()) for item in body.items]
    stored = services.labels.put(tenant, items)
    logger.info("Admin %s replaced labels for %s", admin.get("sub"), tenant)
    return {"tenant": tenant, "items": [item.to_dict() for item in stored]}
