"""
kudos.api.routes.imports — Spreadsheet batch upload
====================================================

The CSV text is the raw request body (``text/csv``; a UTF-8 BOM is fine).
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from kudos.api.deps import get_services, require_import_token
from kudos.services.bootstrap import Services

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imports", tags=["imports"], dependencies=[Depends(require_import_token)])


async def _read_text(request: Request) -> str:
    raw = await request.body()
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "CSV must be UTF-8")
    if not text.strip():
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "Empty CSV")
    return text


@router.post("/preview")
async def preview_import(request: Request, services: Services = Depends(get_services)):
    """Counts for the uploaded sheet; nothing is claimed, logged or sent."""
    text = await _read_text(request)
    return {"ok": True, "preview": services.importer.preview(text)}


@router.post("")
async def run_import(request: Request, services: Services = Depends(get_services)):
    text = await _read_text(request)
    summary = await services.importer.run(text)
    return {"ok": True, **summary.to_dict()}
