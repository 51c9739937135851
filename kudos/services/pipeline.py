"""
kudos.services.pipeline — Event → reward → dispatch
====================================================

The orchestration layer around the pure engine:

    NormalizedEvent → seen-set → actor → reward rules → event log → dispatch

Sales go through the incremental ledger instead of the per-event rules:
the row is logged first, then the ledger settles the affected user (and,
when enabled, company) keys and pays only newly completed steps.

Every dispatch goes through the shared :class:`DispatchQueue`.  Failures are
swallowed at the queue and dead-lettered to ``dispatch_failures.jsonl``; the
event stays logged and seen so nothing is awarded twice on a retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import Engine

from kudos.config import KudosConfig
from kudos.constants import UNKNOWN_MAKER, local_day, local_month
from kudos.database.engine import claim_key, run_db
from kudos.database.models import ImportKeyKind
from kudos.engine.actors import Actor, ActorResolver
from kudos.engine.events import CallDirection, EventCategory, NormalizedEvent, SourceKind
from kudos.engine.labels import LabelBook, match_labels, pick_label_ids
from kudos.engine.ledger import IncrementalLedger, LedgerKey, LedgerOutcome
from kudos.engine.reward import RewardDelta, compute_reward
from kudos.engine.seen import SeenSet
from kudos.services.dispatch import DispatchQueue
from kudos.services.event_log import EventLog, LogCategory
from kudos.services.gamification import GamificationClient

logger = logging.getLogger(__name__)

REASON_TITLES: dict[str, str] = {
    "call.completed": "📞 Call",
    "call.duration": "⏱ Talk time",
    "call.missed": "📵 Missed call",
    "appointment": "🎯 Appointment",
    "label": "🏷 Outcome",
    "approval": "✅ Approval",
    "sale.small": "💴 Sale",
    "sale.steps": "💴 Sales milestone",
    "sale.company": "🏢 Company sales milestone",
    "daily_bonus": "🗓 Daily report bonus",
    "maker_award": "🏆 Maker award",
    "manual": "🛠 Manual adjustment",
}

_CATEGORY_LOG: dict[EventCategory, LogCategory] = {
    EventCategory.CALL: LogCategory.CALLS,
    EventCategory.APPOINTMENT: LogCategory.APPOINTMENTS,
    EventCategory.APPROVAL: LogCategory.APPROVALS,
    EventCategory.SALE: LogCategory.SALES,
    EventCategory.DAILY_BONUS: LogCategory.DAILY_BONUS,
    EventCategory.MAKER_AWARD: LogCategory.MAKER_AWARDS,
}


@dataclass
class PipelineResult:
    """What happened to one event."""

    identity: str | None
    duplicate: bool = False
    actor: Actor | None = None
    deltas: list[RewardDelta] = field(default_factory=list)
    dispatched: int = 0
    ledger: list[LedgerOutcome] = field(default_factory=list)

    @property
    def xp(self) -> int:
        return sum(d.xp for d in self.deltas)


class RewardPipeline:
    """Owns the per-process reward state and wires the components together."""

    def __init__(
        self,
        config: KudosConfig,
        *,
        resolver: ActorResolver,
        event_log: EventLog,
        labels: LabelBook,
        seen: SeenSet,
        queue: DispatchQueue,
        client: GamificationClient,
        ledger: IncrementalLedger,
        engine: Engine | None = None,
    ) -> None:
        self.config = config
        self.resolver = resolver
        self.directory = resolver.directory
        self.event_log = event_log
        self.labels = labels
        self.seen = seen
        self.queue = queue
        self.client = client
        self.ledger = ledger
        self.engine = engine

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------
    def submit_award(
        self, actor: Actor, delta: RewardDelta, notes: str = ""
    ) -> asyncio.Future | None:
        """Queue one award for *actor*; ``None`` when nothing is sent.

        Nothing is sent in dry-run mode, for zero XP, or when the actor has no
        gamification credential.  The queue position is fixed on return.
        """
        cred = self.directory.credential_for(actor.email)
        if delta.xp == 0:
            return None
        if cred is None or self.config.dry_run:
            logger.info(
                "%+d XP %s for %s not sent (%s)",
                delta.xp, delta.reason, actor.display_name,
                "dry run" if self.config.dry_run else "no credential",
            )
            return None

        title = f"{delta.badge_label or REASON_TITLES.get(delta.reason, delta.reason)} ({actor.display_name})"
        label = f"{delta.reason}:{actor.email}"

        def dead_letter(_label: str, exc: BaseException) -> None:
            self.event_log.append(LogCategory.DISPATCH_FAILURES, {
                "email": actor.email,
                "reason": delta.reason,
                "xp": delta.xp,
                "title": title,
                "error": f"{type(exc).__name__}: {exc}",
            })

        return self.queue.submit_safe(
            lambda: self.client.award(cred, delta.xp, title, notes or f"rule={delta.reason}"),
            label=label,
            on_failure=dead_letter,
        )

    async def _dispatch_all(self, actor: Actor, deltas: list[RewardDelta], notes: str = "") -> int:
        pending = [f for f in (self.submit_award(actor, d, notes) for d in deltas) if f is not None]
        if pending:
            await asyncio.gather(*pending)
        return len(pending)

    # -----------------------------------------------------------------------
    # Per-event path (webhooks)
    # -----------------------------------------------------------------------
    async def process_event(self, event: NormalizedEvent) -> PipelineResult:
        """Run one webhook event through the pipeline at most once."""
        identity = event.identity()
        if not self.seen.check_and_mark(identity):
            logger.info("Duplicate event %s ignored", identity)
            return PipelineResult(identity, duplicate=True)

        actor = self.resolver.resolve(event.raw)
        labels = self.labels.get(event.tenant) if event.category == EventCategory.APPOINTMENT else []
        deltas = compute_reward(event, self.config.rewards, labels)
        self._record(event, actor, deltas, labels)

        dispatched = await self._dispatch_all(actor, deltas, notes=f"source={event.source_kind}")
        return PipelineResult(identity, actor=actor, deltas=deltas, dispatched=dispatched)

    def _record(self, event: NormalizedEvent, actor: Actor, deltas: list[RewardDelta], labels) -> None:
        when = event.occurred_or_now
        base = {
            "day": local_day(when, self.config.timezone),
            "source": str(event.source_kind),
            "event_id": event.event_id,
            "actor": {"name": actor.display_name, "email": actor.email},
        }

        if event.category == EventCategory.CALL:
            if event.metadata.get("direction") == CallDirection.INBOUND:
                logger.info("Inbound call %s by %s logged without XP",
                            event.metadata.get("call_id"), actor.display_name)
            self.event_log.append(LogCategory.CALLS, {
                **base,
                "call_id": event.metadata.get("call_id"),
                "ms": event.metadata.get("duration_ms", 0),
                "direction": str(event.metadata.get("direction") or CallDirection.UNKNOWN),
                "status": event.metadata.get("status") or None,
                "xp": sum(d.xp for d in deltas),
            })
            return

        if event.category == EventCategory.APPOINTMENT:
            matched = match_labels(labels, event.outcome, pick_label_ids(event.raw))
            for label in matched:
                self.event_log.append(LogCategory.LABELS, {
                    **base,
                    "call_id": event.metadata.get("call_id"),
                    "label": label.to_dict(),
                    "outcome": event.outcome,
                })
            if deltas:
                self.event_log.append(LogCategory.APPOINTMENTS, {
                    **base,
                    "call_id": event.metadata.get("call_id"),
                    "outcome": event.outcome,
                    "xp": sum(d.xp for d in deltas),
                    "reasons": [d.reason for d in deltas],
                })
            elif not matched:
                logger.info("Non-appointment outcome %r (no label match)", event.outcome or "")
            return

        log_category = _CATEGORY_LOG.get(event.category)
        if log_category is not None:
            self.event_log.append(log_category, {**base, **event.metadata})

    # -----------------------------------------------------------------------
    # Sales ledger
    # -----------------------------------------------------------------------
    def user_sales_key(self, month: str, email: str, maker: str | None) -> LedgerKey:
        return LedgerKey("user", month, email, maker or UNKNOWN_MAKER)

    def company_sales_key(self, month: str) -> LedgerKey:
        return LedgerKey("company", month)

    async def settle_user_sales(self, month: str, email: str, maker: str | None) -> LedgerOutcome:
        """Pay newly completed sales steps for one actor and maker."""
        actor = Actor(self.directory.display_name_for(email), email, "email_field")

        def award(delta_steps: int, xp: int):
            future = self.submit_award(
                actor,
                RewardDelta(xp, "sale.steps"),
                notes=f"month={month} maker={maker or UNKNOWN_MAKER} steps=+{delta_steps}",
            )
            return [future] if future is not None else []

        return await self.ledger.settle(self.user_sales_key(month, email, maker), award)

    async def settle_company_sales(self, month: str) -> LedgerOutcome:
        """Pay newly completed company-wide steps to every credentialed member."""

        def award(delta_steps: int, xp: int):
            futures = []
            for email in self.directory.members():
                actor = Actor(self.directory.display_name_for(email), email, "email_field")
                future = self.submit_award(
                    actor,
                    RewardDelta(xp, "sale.company"),
                    notes=f"company_total month={month} steps=+{delta_steps}",
                )
                if future is not None:
                    futures.append(future)
            return futures

        return await self.ledger.settle(self.company_sales_key(month), award)

    async def settle_sales(self, touched: set[tuple[str, str, str | None]]) -> list[LedgerOutcome]:
        """Settle every ``(month, email, maker)`` touched by a batch."""
        outcomes = []
        for month, email, maker in sorted(touched, key=lambda t: (t[0], t[1], t[2] or "")):
            outcomes.append(await self.settle_user_sales(month, email, maker))
        if self.config.rewards.company_sales_to_all:
            for month in sorted({t[0] for t in touched}):
                outcomes.append(await self.settle_company_sales(month))
        return outcomes

    # -----------------------------------------------------------------------
    # Daily report bonus
    # -----------------------------------------------------------------------
    def is_daily_task(self, text: str | None) -> bool:
        t = (text or "").strip()
        return bool(t) and any(k in t for k in self.config.rewards.daily_task_keywords)

    async def award_daily_bonus(self, email: str, task_text: str, when: datetime | None = None) -> str:
        """Award the once-per-day report bonus.

        Returns ``"awarded"``, ``"duplicate"``, ``"dry_run"`` or ``"no_credential"``.
        """
        day = await self.claim_daily_bonus(email, when)
        if day is None:
            return "duplicate"
        return await self.deliver_daily_bonus(email, task_text, day)

    async def claim_daily_bonus(self, email: str, when: datetime | None = None) -> str | None:
        """Claim the local day's bonus for *email*; ``None`` when already claimed."""
        email = email.strip().lower()
        day = local_day(when, self.config.timezone)
        claim = f"{day}:{email}"
        if self.engine is not None:
            claimed = await run_db(claim_key, self.engine, ImportKeyKind.DAILY_BONUS, claim)
        else:
            claimed = self.seen.check_and_mark(f"daily:{claim}")
        return day if claimed else None

    def daily_bonus_status(self, email: str) -> str:
        if self.config.dry_run:
            return "dry_run"
        if self.directory.credential_for(email.strip().lower()) is None:
            return "no_credential"
        return "awarded"

    async def deliver_daily_bonus(self, email: str, task_text: str, day: str) -> str:
        """Log and dispatch a bonus whose day was already claimed."""
        email = email.strip().lower()
        actor = Actor(self.directory.display_name_for(email), email, "email_field")
        deltas = compute_reward(
            NormalizedEvent(source_kind=SourceKind.GAMIFICATION, category=EventCategory.DAILY_BONUS),
            self.config.rewards,
        )
        status = self.daily_bonus_status(email)

        self.event_log.append(LogCategory.DAILY_BONUS, {
            "day": day,
            "email": email,
            "task": task_text,
            "xp": sum(d.xp for d in deltas),
            "dry_run": status != "awarded",
        })
        await self._dispatch_all(actor, deltas, notes=f'task="{task_text}"')
        return status

    # -----------------------------------------------------------------------
    # Batch helpers
    # -----------------------------------------------------------------------
    async def award_batch_event(self, event: NormalizedEvent, actor: Actor) -> list[RewardDelta]:
        """Reward a batch-derived event whose dedup already happened upstream."""
        deltas = compute_reward(event, self.config.rewards)
        await self._dispatch_all(actor, deltas, notes=f"source={event.source_kind}")
        return deltas

    def month_of(self, when: datetime) -> str:
        return local_month(when, self.config.timezone)
