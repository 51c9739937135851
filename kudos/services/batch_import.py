"""
kudos.services.batch_import — Spreadsheet batch import
=======================================================

Approved-deal spreadsheets are uploaded periodically, and the same rows
come back again and again in later uploads.  Each accepted row becomes an
approval (and, with a positive amount, a sale); a row is applied at most
once ever thanks to the persistent ``import_keys`` index.

Column headers vary between exports, so each field is located by fuzzy
header matching against a synonym list: exact match ignoring case and
whitespace first, then substring.

After the rows are applied:

* the maker with the most newly approved rows earns a maker award for the
  first actor who approved one of its rows;
* the sales ledger settles every ``(month, actor, maker)`` the batch touched.
"""

from __future__ import annotations

import csv
import io
import logging
import re
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from zoneinfo import ZoneInfo

from sqlalchemy import Engine

from kudos.constants import local_day, local_month, norm_space, squash
from kudos.database.engine import claim_key, run_db
from kudos.database.models import ImportKeyKind
from kudos.engine.actors import Actor, extract_spoken_name
from kudos.engine.events import EventCategory, NormalizedEvent, SourceKind
from kudos.services.event_log import LogCategory
from kudos.services.pipeline import RewardPipeline

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Column synonyms
# ---------------------------------------------------------------------------
MAKER_COLUMNS: tuple[str, ...] = (
    "メーカー", "メーカー名", "メーカー名（取引先）", "ブランド", "brand", "maker",
    "取引先名", "会社名", "メーカー（社名）",
)
AMOUNT_COLUMNS: tuple[str, ...] = (
    "金額", "売上", "受注金額", "受注金額（税込）", "受注金額（税抜）", "売上金額",
    "売上金額（税込）", "売上金額（税抜）", "金額(円)", "amount", "price", "契約金額",
    "成約金額", "合計金額", "売上合計", "報酬", "追加報酬",
)
EXTRA_REWARD_COLUMN = "追加報酬"
REWARD_MARKER = "報酬"
ID_COLUMNS: tuple[str, ...] = (
    "id", "案件ID", "取引ID", "レコードID", "社内ID", "番号", "伝票番号", "管理番号",
)
APPROVED_AT_COLUMNS: tuple[str, ...] = ("承認日時", "承認日", "approved_at", "approval date")
STATUS_COLUMNS: tuple[str, ...] = ("商談ステータス", "ステータス", "最終結果", "status")
APPROVED_TOKENS: tuple[str, ...] = ("承認", "approved", "approve", "accepted", "合格")

NAME_COLUMNS: tuple[str, ...] = (
    "名乗り", "名乗り（DXPort）", "名乗り（dxport）", "名乗り（ＤＸＰｏｒｔ）",
)
FREE_TEXT_NAME_COLUMNS: tuple[str, ...] = (
    "承認条件 回答23", "承認条件 回答２３", "DXPortの", "DX PORTの", "DXPortの担当者",
    "獲得者", "DX Portの", "DXportの", "dxportの", "dx portの", "自由記述",
    "備考（dxport）", "dxport 備考",
)
EMAIL_COLUMNS: tuple[str, ...] = (
    "email", "mail", "担当者メール", "担当者 メール", "担当者 メールアドレス", "担当メール",
    "担当者email", "owner email", "オーナー メール", "ユーザー メール", "営業担当メール",
    "担当者e-mail", "担当e-mail", "担当者メールアドレス", "担当者のメール",
)

_DATE_RE = re.compile(
    r"^(\d{4})/(\d{1,2})/(\d{1,2})(?:\s+(\d{1,2}):(\d{1,2})(?::(\d{1,2}))?)?$"
)
_NUMBER_RE = re.compile(r"[^\d.-]")
_WS_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Row helpers (pure)
# ---------------------------------------------------------------------------
def first_match_key(keys: Iterable[str], candidates: Sequence[str]) -> str | None:
    """Find the header matching *candidates*: exact (squashed) first, then substring."""
    keys = list(keys)
    by_squashed = {squash(k): k for k in keys}
    for candidate in candidates:
        hit = by_squashed.get(squash(candidate))
        if hit is not None:
            return hit
    squashed_candidates = [squash(c) for c in candidates]
    for key in keys:
        sk = squash(key)
        if any(c and c in sk for c in squashed_candidates):
            return key
    return None


def parse_amount(value: object) -> float | None:
    """``"¥1,200,000"`` → ``1200000.0``; ``None`` when nothing numeric is left."""
    if value is None:
        return None
    cleaned = _NUMBER_RE.sub("", str(value))
    if cleaned in ("", "-", ".", "-."):
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_approval_at(text: str | None, tz: str = "Asia/Tokyo") -> datetime | None:
    """Parse ``YYYY/MM/DD [HH:MM[:SS]]`` (``-`` also accepted) in *tz*, or ISO-8601."""
    if not text:
        return None
    t = str(text).strip().replace("-", "/")
    zone = ZoneInfo(tz)
    m = _DATE_RE.match(t)
    try:
        if m:
            y, mo, d, h, mi, s = (int(x) if x else 0 for x in m.groups())
            return datetime(y, mo, d, h, mi, s, tzinfo=zone)
        parsed = datetime.fromisoformat(str(text).strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=zone)


def is_approved(status: str) -> bool:
    s = status.strip()
    s_lc = s.lower()
    return any(token in s or s_lc == token for token in APPROVED_TOKENS)


def format_amount(amount: float) -> str:
    return str(int(amount)) if float(amount).is_integer() else str(amount)


def _key(*parts: object) -> str:
    return _WS_RE.sub("_", ":".join("" if p is None else str(p) for p in parts))


# ---------------------------------------------------------------------------
# Data shapes
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class BatchRow:
    """One accepted row, already resolved to an actor."""

    kind: EventCategory  # APPROVAL or SALE
    actor: Actor
    approved_at: datetime
    maker: str | None = None
    record_id: str | None = None
    amount: float | None = None


@dataclass
class ImportSummary:
    approvals: int = 0
    sales: int = 0
    duplicates: int = 0
    skipped: int = 0
    errors: int = 0
    makers: int = 0
    maker_counts: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("maker_counts")
        return data


# ---------------------------------------------------------------------------
# Importer
# ---------------------------------------------------------------------------
class BatchImporter:
    """Normalizes spreadsheet text and applies the rows exactly once."""

    def __init__(self, pipeline: RewardPipeline, engine: Engine) -> None:
        self.pipeline = pipeline
        self.engine = engine
        self.config = pipeline.config

    # -- normalization ------------------------------------------------------
    def read_records(self, text: str) -> list[dict[str, str]]:
        text = text.lstrip("﻿")
        reader = csv.DictReader(io.StringIO(text))
        records = []
        for record in reader:
            cleaned = {
                norm_space(k): (v or "").strip()
                for k, v in record.items()
                if k is not None and not isinstance(v, list)
            }
            if any(cleaned.values()):
                records.append(cleaned)
        return records

    def _resolve_actor(self, record: dict[str, str]) -> Actor | None:
        keys = record.keys()
        spoken = None
        k_name = first_match_key(keys, NAME_COLUMNS)
        if k_name and record[k_name]:
            spoken = record[k_name]
        else:
            k_free = first_match_key(keys, FREE_TEXT_NAME_COLUMNS)
            if k_free and extract_spoken_name(record[k_free]):
                spoken = record[k_free]
        k_email = first_match_key(keys, EMAIL_COLUMNS)
        email = record[k_email].strip().lower() if k_email and record[k_email] else None

        actor = self.pipeline.resolver.resolve(
            {"spokenName": spoken, "actorEmail": email},
            order=("spoken_name", "email_field"),
        )
        return actor if actor.resolved else None

    def normalize(self, text: str) -> tuple[list[BatchRow], int, int]:
        """Return ``(rows, skipped, errors)`` for *text*."""
        rows: list[BatchRow] = []
        skipped = errors = 0
        for record in self.read_records(text):
            try:
                produced = self._normalize_record(record)
            except (TypeError, ValueError) as exc:
                logger.warning("Batch row error: %s", exc)
                errors += 1
                continue
            if not produced:
                skipped += 1
                continue
            rows.extend(produced)
        return rows, skipped, errors

    def _normalize_record(self, record: dict[str, str]) -> list[BatchRow]:
        keys = list(record.keys())
        actor = self._resolve_actor(record)
        if actor is None:
            return []
        if self.config.require_internal_actor and not self.pipeline.directory.is_internal(
            actor.display_name, actor.email
        ):
            return []

        k_status = first_match_key(keys, STATUS_COLUMNS)
        if k_status and not is_approved(record[k_status]):
            return []

        k_date = first_match_key(keys, APPROVED_AT_COLUMNS)
        approved_at = parse_approval_at(record[k_date] if k_date else None, self.config.timezone)
        if approved_at is None:
            return []

        k_maker = first_match_key(keys, MAKER_COLUMNS)
        maker = record[k_maker] or None if k_maker else None
        k_id = first_match_key(keys, ID_COLUMNS)
        record_id = record[k_id] or None if k_id else None

        k_amount = first_match_key(keys, AMOUNT_COLUMNS)
        amount = parse_amount(record[k_amount]) if k_amount else None
        if k_amount and REWARD_MARKER in k_amount:
            k_extra = first_match_key(keys, (EXTRA_REWARD_COLUMN,))
            if k_extra and k_extra != k_amount:
                extra = parse_amount(record[k_extra])
                if extra is not None:
                    amount = (amount or 0) + extra

        rows = [BatchRow(EventCategory.APPROVAL, actor, approved_at, maker, record_id)]
        if amount and amount > 0:
            rows.append(BatchRow(EventCategory.SALE, actor, approved_at, maker, record_id, amount))
        return rows

    # -- import keys --------------------------------------------------------
    def import_key(self, row: BatchRow) -> tuple[str, str]:
        day = local_day(row.approved_at, self.config.timezone)
        who = row.actor.email or row.actor.display_name
        if row.kind == EventCategory.SALE:
            return ImportKeyKind.SALE, _key(
                "sales", day, who, row.maker or "", row.record_id or "", format_amount(row.amount or 0)
            )
        return ImportKeyKind.APPROVAL, _key("appr", day, who, row.maker or "", row.record_id or "")

    # -- public API ---------------------------------------------------------
    def preview(self, text: str) -> dict:
        """Counts for *text* without claiming keys or dispatching anything."""
        rows, skipped, errors = self.normalize(text)
        approvals = [r for r in rows if r.kind == EventCategory.APPROVAL]
        sales = [r for r in rows if r.kind == EventCategory.SALE]
        maker_counts = Counter(r.maker for r in approvals if r.maker)
        sales_by_maker: dict[str, float] = {}
        for r in sales:
            m = r.maker or "(unknown)"
            sales_by_maker[m] = sales_by_maker.get(m, 0) + (r.amount or 0)
        return {
            "rows": len(rows),
            "approvals": len(approvals),
            "sales": len(sales),
            "skipped": skipped,
            "errors": errors,
            "makers": len(maker_counts),
            "days": sorted({local_day(r.approved_at, self.config.timezone) for r in rows}),
            "months": sorted({local_month(r.approved_at, self.config.timezone) for r in rows}),
            "maker_counts": dict(maker_counts),
            "sales_by_maker": sales_by_maker,
        }

    async def run(self, text: str) -> ImportSummary:
        """Apply every new row in *text*; rows seen in any earlier import are skipped."""
        rows, skipped, errors = self.normalize(text)
        summary = ImportSummary(skipped=skipped, errors=errors)
        event_log = self.pipeline.event_log
        touched: set[tuple[str, str, str | None]] = set()
        accepted_approvals: list[BatchRow] = []

        for row in rows:
            kind, key = self.import_key(row)
            if not await run_db(claim_key, self.engine, kind, key):
                summary.duplicates += 1
                continue

            day = local_day(row.approved_at, self.config.timezone)
            month = local_month(row.approved_at, self.config.timezone)
            record = {
                "day": day,
                "month": month,
                "email": row.actor.email,
                "name": row.actor.display_name,
                "maker": row.maker,
                "id": row.record_id,
            }
            metadata: dict = {"maker": row.maker}
            if row.kind == EventCategory.SALE:
                record["amount"] = row.amount
                metadata["amount"] = row.amount
                event_log.append(LogCategory.SALES, record)
                summary.sales += 1
                if row.actor.email:
                    touched.add((month, row.actor.email, row.maker))
            else:
                event_log.append(LogCategory.APPROVALS, record)
                summary.approvals += 1
                accepted_approvals.append(row)

            event = NormalizedEvent(
                source_kind=SourceKind.BATCH,
                category=row.kind,
                event_id=key,
                subject_id=row.record_id,
                occurred_at=row.approved_at,
                metadata=metadata,
            )
            await self.pipeline.award_batch_event(event, row.actor)

        maker_counts = Counter(r.maker for r in accepted_approvals if r.maker)
        summary.makers = len(maker_counts)
        summary.maker_counts = dict(maker_counts)
        if maker_counts:
            await self._award_top_maker(accepted_approvals, maker_counts)

        if touched:
            await self.pipeline.settle_sales(touched)

        logger.info(
            "Batch import: %d approvals, %d sales, %d duplicates, %d skipped, %d errors",
            summary.approvals, summary.sales, summary.duplicates, summary.skipped, summary.errors,
        )
        return summary

    async def _award_top_maker(self, approvals: list[BatchRow], counts: Counter) -> None:
        top_maker, count = counts.most_common(1)[0]
        first = next((r for r in approvals if r.maker == top_maker and r.actor.email), None)
        if first is None:
            return
        self.pipeline.event_log.append(LogCategory.MAKER_AWARDS, {
            "day": local_day(first.approved_at, self.config.timezone),
            "email": first.actor.email,
            "name": first.actor.display_name,
            "maker": top_maker,
            "count": count,
        })
        event = NormalizedEvent(
            source_kind=SourceKind.BATCH,
            category=EventCategory.MAKER_AWARD,
            occurred_at=first.approved_at,
            metadata={"maker": top_maker, "count": count},
        )
        await self.pipeline.award_batch_event(event, first.actor)
