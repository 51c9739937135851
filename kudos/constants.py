"""
kudos.constants — Shared Constants & Helpers
=============================================

Single source of truth for text folding, calendar keys (day / month in the
business timezone) and JSON-from-environment loading.  Import from here
instead of duplicating in the engine, services and routes.
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Asia/Tokyo"

# ---------------------------------------------------------------------------
# Call statuses treated as "not connected"
# ---------------------------------------------------------------------------
MISSED_STATUSES: frozenset[str] = frozenset(
    {"missed", "no_answer", "no-answer", "noanswer", "unanswered"}
)

# Synthetic maker value used when a sale row has no maker column
UNKNOWN_MAKER = "(unknown)"

_WS_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------
def norm_space(value: object) -> str:
    """Fold full-width spaces, collapse runs of whitespace and trim."""
    if value is None:
        return ""
    return _WS_RE.sub(" ", str(value).replace("　", " ")).strip()


def squash(value: object) -> str:
    """Lower-case and drop all whitespace (used for fuzzy key matching)."""
    return _WS_RE.sub("", norm_space(value)).lower()


def is_email(value: object) -> bool:
    return isinstance(value, str) and "@" in value and not value.startswith("@")


# ---------------------------------------------------------------------------
# Calendar keys
# ---------------------------------------------------------------------------
def _zone(tz: str | None) -> ZoneInfo:
    return ZoneInfo(tz or DEFAULT_TIMEZONE)


def to_local(moment: datetime, tz: str | None = None) -> datetime:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(_zone(tz))


def local_day(moment: datetime | None = None, tz: str | None = None) -> str:
    """Return ``YYYY-MM-DD`` of *moment* in the business timezone."""
    return to_local(moment or datetime.now(timezone.utc), tz).strftime("%Y-%m-%d")


def local_month(moment: datetime | None = None, tz: str | None = None) -> str:
    """Return ``YYYY-MM`` of *moment* in the business timezone."""
    return to_local(moment or datetime.now(timezone.utc), tz).strftime("%Y-%m")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# JSON maps from the environment
# ---------------------------------------------------------------------------
def read_env_json(name: str) -> dict:
    """Load a JSON object from ``<name>_JSON`` or the file at ``<name>_FILE``.

    Returns an empty dict when neither is set or the content is not a JSON
    object.  Malformed content is logged, not raised, so a typo in one map
    doesn't take the whole service down.
    """
    inline = os.getenv(f"{name}_JSON", "").strip()
    file_path = os.getenv(f"{name}_FILE", "").strip()

    text = inline
    if not text and file_path:
        path = Path(file_path)
        if not path.exists():
            logger.warning("%s_FILE points to a missing file: %s", name, path)
            return {}
        text = path.read_text(encoding="utf-8")
    if not text:
        return {}

    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.error("Could not parse %s: %s", name, exc)
        return {}
    if not isinstance(data, dict):
        logger.error("%s must be a JSON object, got %s", name, type(data).__name__)
        return {}
    return data
