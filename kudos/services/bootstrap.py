"""
kudos.services.bootstrap — Application container
=================================================

Builds every long-lived component once and hands them out as a single
:class:`Services` object (stored on ``app.state.services``).  Nothing in
Kudos reaches for module-level singletons; tests build their own
container with an in-memory database and a fake HTTP transport.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from sqlalchemy import Engine

from kudos.config import IdentityMaps, KudosConfig, Secrets
from kudos.engine.actors import ActorDirectory, ActorResolver
from kudos.engine.labels import LabelBook
from kudos.engine.ledger import IncrementalLedger, LedgerStore
from kudos.engine.seen import SeenSet
from kudos.services.adjustment_service import AdjustmentService
from kudos.services.batch_import import BatchImporter
from kudos.services.dispatch import DispatchQueue
from kudos.services.event_log import EventLog
from kudos.services.gamification import GamificationClient
from kudos.services.idempotency import IdempotencyCache
from kudos.services.pipeline import RewardPipeline
from kudos.services.throttle import TokenBucketLimiter

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: KudosConfig
    secrets: Secrets
    engine: Engine
    queue: DispatchQueue
    pipeline: RewardPipeline
    importer: BatchImporter
    adjustments: AdjustmentService

    @property
    def ledger(self) -> IncrementalLedger:
        return self.pipeline.ledger

    @property
    def labels(self) -> LabelBook:
        return self.pipeline.labels

    async def close(self) -> None:
        """Let queued dispatches finish, then stop the consumer."""
        await self.queue.join()
        await self.queue.stop()


def build_services(
    config: KudosConfig,
    secrets: Secrets,
    maps: IdentityMaps,
    engine: Engine,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> Services:
    """Wire up the pipeline and its collaborators from configuration."""
    data_dir = config.data_dir
    directory = ActorDirectory.from_maps(maps, default_label=config.default_actor_label)
    event_log = EventLog(data_dir)
    queue = DispatchQueue(min_interval_seconds=config.dispatch_min_interval_ms / 1000.0)
    client = GamificationClient(
        base_url=config.gamification_base_url,
        client_id=config.gamification_client_id,
        timeout=config.gamification_timeout_seconds,
        transport=transport,
    )
    ledger = IncrementalLedger(
        LedgerStore(data_dir / "ledger" / "sales_steps.jsonl"),
        step_size=config.rewards.sales_step,
        per_step_xp=config.rewards.sales_xp_per_step,
        total_for=event_log.total_for,
    )
    pipeline = RewardPipeline(
        config,
        resolver=ActorResolver(directory),
        event_log=event_log,
        labels=LabelBook(data_dir),
        seen=SeenSet(ttl_seconds=config.dedupe_ttl_seconds),
        queue=queue,
        client=client,
        ledger=ledger,
        engine=engine,
    )
    adjustments = AdjustmentService(
        pipeline,
        engine,
        limiter=TokenBucketLimiter(
            capacity=config.adjustment_rate_capacity,
            refill_seconds=config.adjustment_refill_seconds,
        ),
        cache=IdempotencyCache(ttl_seconds=config.adjustment_idempotency_ttl_seconds),
    )

    logger.info(
        "Services ready: %d members with credentials, dry_run=%s, data_dir=%s",
        len(directory.members()), config.dry_run, data_dir,
    )
    return Services(
        config=config,
        secrets=secrets,
        engine=engine,
        queue=queue,
        pipeline=pipeline,
        importer=BatchImporter(pipeline, engine),
        adjustments=adjustments,
    )
