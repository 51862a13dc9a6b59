"""Orchestrator — wires the engine components and exposes the query surface.

Components are created in ``start()`` and torn down in reverse order in
``stop()``. The HTTP server and the CLI both talk to the engine only
through this class.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path

import aiosqlite

from conveyor.config import EngineConfig
from conveyor.definitions import PipelineDefinition
from conveyor.events import EventBus
from conveyor.executors import ActionRegistry
from conveyor.notifications import (
    ChannelKind,
    NotificationChannel,
    NotificationDispatcher,
    NotificationRouter,
    build_channels,
)
from conveyor.pipeline.models import JobGraph, PipelineRun
from conveyor.pipeline.scheduler import JobExecutor, Scheduler
from conveyor.promotion.engine import PromotionEngine
from conveyor.promotion.models import ChangeSet, Promotion, Stage, StageDefinition
from conveyor.rollback import DefaultRollbackPlanner, RollbackController
from conveyor.store import StateStore

logger = logging.getLogger(__name__)


class Orchestrator:
    """Owns every engine component for one process."""

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        executor: JobExecutor | None = None,
        channels: dict[ChannelKind, NotificationChannel] | None = None,
        definition: PipelineDefinition | None = None,
    ):
        self.config = config or EngineConfig()
        self.definition = definition
        self._executor = executor
        self._channels = channels

        # Components (initialized in start())
        self.db: aiosqlite.Connection | None = None
        self.store: StateStore | None = None
        self.bus: EventBus | None = None
        self.router: NotificationRouter | None = None
        self.dispatcher: NotificationDispatcher | None = None
        self.scheduler: Scheduler | None = None
        self.rollback: RollbackController | None = None
        self.promotions: PromotionEngine | None = None
        self.executor: JobExecutor | None = None

    async def start(self) -> None:
        cfg = self.config
        logger.info("Conveyor engine starting (db=%s)", cfg.store.path)

        if cfg.store.path != ":memory:":
            Path(cfg.store.path).parent.mkdir(parents=True, exist_ok=True)
        self.db = await aiosqlite.connect(cfg.store.path)
        self.store = StateStore(self.db)
        await self.store.initialize()

        self.bus = EventBus()
        channels = self._channels or build_channels(cfg.notifications.channels)
        self.router = NotificationRouter(channels, cfg.notifications)
        self.dispatcher = NotificationDispatcher(
            self.router, self.bus, flush_interval=cfg.notifications.flush_interval_seconds
        )
        self.dispatcher.start()

        if self._executor is None:
            registry = ActionRegistry()
            for plugin in cfg.plugins:
                registry.load_plugin(plugin)
            self.executor = registry
        else:
            self.executor = self._executor

        self.scheduler = Scheduler(self.store, self.bus, max_parallel=cfg.scheduler.max_parallel)
        self.rollback = RollbackController(
            self.store,
            self.scheduler,
            self.executor,
            self.bus,
            DefaultRollbackPlanner(cfg.rollback.commands),
        )
        self.promotions = PromotionEngine(
            self.store, self.scheduler, self.executor, self.bus, self.rollback
        )

        # Work left in flight by a previous process: runs first, then the
        # rollback actions and promotions that tracked them
        interrupted = await self.scheduler.recover()
        if interrupted:
            logger.warning("Canceled %d pipeline run(s) interrupted by a restart", interrupted)
        await self.rollback.recover()
        await self.promotions.recover()

        purged = await self.purge_expired()
        if purged:
            logger.info("Purged %d pipeline run(s) past retention", purged)
        logger.info("Conveyor engine started")

    async def stop(self) -> None:
        """Graceful shutdown: cancel in-flight work, flush notifications, close the db."""
        logger.info("Conveyor engine shutting down")
        if self.promotions:
            await self.promotions.shutdown()
        if self.rollback:
            await self.rollback.shutdown()
        if self.scheduler:
            await self.scheduler.shutdown()
        if self.dispatcher:
            await self.dispatcher.stop()
        if self.router:
            await self.router.flush()
            await self.router.close()
        if self.db:
            await self.db.close()
            self.db = None
        logger.info("Conveyor engine stopped")

    # ── Pipelines ────────────────────────────────────────────────────────────

    async def run_pipeline(self, graph: JobGraph, *, name: str = "pipeline") -> PipelineRun:
        """Run a job graph to completion outside any promotion."""
        return await self.scheduler.schedule(graph, self.executor, name=name)

    async def get_pipeline_run(self, run_id: str) -> PipelineRun | None:
        return await self.store.get_pipeline_run(run_id)

    async def list_recent_failures(self, window: timedelta) -> list[PipelineRun]:
        return await self.store.list_recent_failures(window)

    async def purge_expired(self) -> int:
        return await self.store.purge_older_than(self.config.store.retention_days)

    # ── Promotions ───────────────────────────────────────────────────────────

    async def start_promotion(
        self, change_set: ChangeSet, stages: list[StageDefinition] | None = None
    ) -> Promotion:
        """Start a promotion; defaults to the loaded definition's stages."""
        if stages is None:
            if self.definition is None or not self.definition.stages:
                raise ValueError("No promotion stages given and no definition with stages loaded")
            stages = self.definition.stages
        return await self.promotions.start_promotion(change_set, stages)

    async def get_promotion_status(self, change_set_id: str) -> Promotion | None:
        return await self.store.get_promotion_by_change_set(change_set_id)

    async def record_approval(self, stage_id: str, approver_id: str) -> Stage:
        return await self.promotions.record_approval(stage_id, approver_id)

    async def record_rejection(
        self, stage_id: str, approver_id: str, reason: str | None = None
    ) -> Stage:
        return await self.promotions.record_rejection(stage_id, approver_id, reason)

    async def resubmit_stage(self, promotion_id: str) -> Stage:
        return await self.promotions.resubmit_stage(promotion_id)

    async def cancel_stage(self, stage_id: str, reason: str = "canceled") -> Stage:
        return await self.promotions.cancel_stage(stage_id, reason)

    async def abandon_promotion(self, promotion_id: str, reason: str = "abandoned") -> Promotion:
        return await self.promotions.abandon(promotion_id, reason)

    async def wait_for_promotion(
        self, promotion_id: str, timeout: float | None = None
    ) -> Promotion:
        return await self.promotions.wait_for_promotion(promotion_id, timeout)
