"""
kudos.engine.labels — Tenant label sets
========================================

Each tenant can define which CRM call outcomes count, and for how much XP.
A label is matched either by one of the id candidates found in the payload
or by case-insensitive equality of its title with the outcome text.

Label sets are stored as one JSON document per tenant under
``<data_dir>/tenants/<tenant>/labels.json``.  Older documents that only
carry ``ids`` / ``titles`` lists are read as appointment labels without XP.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from pathlib import Path

from kudos.constants import utcnow_iso

logger = logging.getLogger(__name__)

__all__ = ["LabelItem", "LabelBook", "pick_label_ids", "match_labels", "dedupe_labels"]

APPOINTMENT_CATEGORY = "appointment"
MAX_LABELS = 2000

_ID_FIELDS = (
    "labelId",
    "labelIds",
    "hs_label_id",
    "hs_outcome_id",
    "hs_pipeline_stage",
    "hs_task_type_id",
    "hs_dealstage",
)
_SAFE_TENANT_RE = re.compile(r"[^\w.-]+")


@dataclass(frozen=True, slots=True)
class LabelItem:
    """One configured outcome label."""

    id: str | None = None
    title: str | None = None
    category: str = APPOINTMENT_CATEGORY
    enabled: bool = True
    xp: int | None = None
    badge: str | None = None

    @property
    def is_appointment(self) -> bool:
        return self.category == APPOINTMENT_CATEGORY

    @classmethod
    def from_dict(cls, data: dict) -> LabelItem:
        xp = data.get("xp")
        try:
            xp = max(0, int(float(xp))) if xp not in (None, "") else None
        except (TypeError, ValueError):
            xp = None
        return cls(
            id=str(data["id"]).strip() if data.get("id") not in (None, "") else None,
            title=str(data["title"]).strip() if data.get("title") else None,
            category=str(data.get("category") or APPOINTMENT_CATEGORY).lower(),
            enabled=data.get("enabled") is not False,
            xp=xp,
            badge=str(data["badge"]) if data.get("badge") else None,
        )

    def to_dict(self) -> dict:
        return asdict(self)


def dedupe_labels(items: Iterable[LabelItem]) -> list[LabelItem]:
    """Drop repeats keyed on ``category|id|title`` (title lower-cased)."""
    seen: set[str] = set()
    out: list[LabelItem] = []
    for item in items:
        key = f"{item.category}|{item.id or ''}|{(item.title or '').lower()}"
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out[:MAX_LABELS]


def pick_label_ids(raw: dict | None) -> list[str]:
    """Collect every label-id-like value from *raw* and ``raw['properties']``."""
    out: list[str] = []

    def push(value: object) -> None:
        if isinstance(value, (list, tuple)):
            for v in value:
                push(v)
        elif value not in (None, ""):
            out.append(str(value))

    if not isinstance(raw, dict):
        return out
    for container in (raw, raw.get("properties")):
        if isinstance(container, dict):
            for name in _ID_FIELDS:
                push(container.get(name))
    return out


def match_labels(
    items: Iterable[LabelItem], outcome: str | None, id_candidates: Iterable[str]
) -> list[LabelItem]:
    """Return the enabled labels whose id or title matches."""
    outcome_lc = (outcome or "").strip().lower()
    ids = set(id_candidates)
    matched = []
    for item in items:
        if not item.enabled:
            continue
        by_id = item.id is not None and item.id in ids
        by_title = bool(item.title and outcome_lc and outcome_lc == item.title.lower())
        if by_id or by_title:
            matched.append(item)
    return dedupe_labels(matched)


# ---------------------------------------------------------------------------
# File store
# ---------------------------------------------------------------------------
class LabelBook:
    """Reads and writes per-tenant label documents."""

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)

    def _path(self, tenant: str) -> Path:
        safe = _SAFE_TENANT_RE.sub("_", tenant or "default")
        return self.data_dir / "tenants" / safe / "labels.json"

    def get(self, tenant: str, include_disabled: bool = False) -> list[LabelItem]:
        path = self._path(tenant)
        if not path.exists():
            return []
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Unreadable label file %s: %s", path, exc)
            return []

        items = [LabelItem.from_dict(d) for d in doc.get("items") or [] if isinstance(d, dict)]
        items += [LabelItem(id=str(i)) for i in doc.get("ids") or []]
        items += [LabelItem(title=str(t)) for t in doc.get("titles") or []]
        items = dedupe_labels(items)
        if include_disabled:
            return items
        return [item for item in items if item.enabled]

    def put(self, tenant: str, items: Iterable[LabelItem]) -> list[LabelItem]:
        path = self._path(tenant)
        path.parent.mkdir(parents=True, exist_ok=True)
        stored = dedupe_labels(items)
        doc = {
            "tenant": tenant,
            "items": [item.to_dict() for item in stored],
            "updatedAt": utcnow_iso(),
        }
        path.write_text(json.dumps(doc, ensure_ascii=False, indent=2), encoding="utf-8")
        logger.info("Saved %d labels for tenant %s", len(stored), tenant)
        return stored
