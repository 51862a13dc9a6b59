"""Promotion engine — advances a change set through ordered environments.

Stage lifecycle:

    pending → running → advanced                          (auto gate)
    pending → running → awaiting_approval → advanced      (manual gates)
    running | awaiting_approval → halted                  (failure, rejection,
                                                           approval timeout, cancel)

Waiting for approval holds no task: the stage is parked in
``awaiting_approval`` and ``record_approval`` advances it once the quorum
of distinct approvers is reached. A halted stage never moves again;
``resubmit_stage`` creates a fresh attempt for the same position, keeping
the old one as history.

Key exports:
    PromotionEngine — start_promotion(), record_approval(), record_rejection(),
        resubmit_stage(), cancel_stage(), abandon(), wait_for_promotion(),
        recover(), shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from conveyor.errors import GateError
from conveyor.events import EventBus, NotificationEvent, Severity, SourceKind
from conveyor.pipeline.models import PipelineRunStatus
from conveyor.promotion.models import (
    Approval,
    ChangeSet,
    GateKind,
    Promotion,
    PromotionStatus,
    Stage,
    StageDefinition,
    StageStatus,
)

if TYPE_CHECKING:
    from conveyor.pipeline.scheduler import JobExecutor, Scheduler
    from conveyor.rollback import RollbackController
    from conveyor.store import StateStore

logger = logging.getLogger(__name__)


class PromotionEngine:
    def __init__(
        self,
        store: StateStore,
        scheduler: Scheduler,
        executor: JobExecutor,
        bus: EventBus | None = None,
        rollback: RollbackController | None = None,
    ):
        self._store = store
        self._scheduler = scheduler
        self._executor = executor
        self._bus = bus
        self._rollback = rollback

        # Promotions with work in flight or parked on a gate; settled ones are
        # dropped and reloaded from the store on demand
        self._promotions: dict[str, Promotion] = {}
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        # Set whenever a promotion has no stage run in flight
        self._settled: dict[str, asyncio.Event] = {}
        self._stage_tasks: dict[str, asyncio.Task] = {}
        self._stage_runs: dict[str, str] = {}
        self._timeouts: dict[str, asyncio.TimerHandle] = {}
        self._cancel_requests: dict[str, str] = {}
        self._background: set[asyncio.Task] = set()
        self._closing = False

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def start_promotion(
        self, change_set: ChangeSet, stages: list[StageDefinition]
    ) -> Promotion:
        """Create a promotion and start its first stage."""
        promotion = Promotion(
            id=uuid.uuid4().hex,
            change_set=change_set,
            stages=stages,
            created_at=_now(),
        )
        await self._store.create_promotion(promotion)
        self._promotions[promotion.id] = promotion
        self._settled[promotion.id] = asyncio.Event()
        logger.info(
            "Started promotion %s for change set %s through %s",
            promotion.id,
            change_set.id,
            " → ".join(s.name for s in stages),
        )

        async with self._lock(promotion.id):
            await self._start_stage(promotion, 0)
        return promotion.model_copy(deep=True)

    async def get_promotion(self, promotion_id: str) -> Promotion | None:
        return await self._store.get_promotion(promotion_id)

    async def wait_for_promotion(
        self, promotion_id: str, timeout: float | None = None
    ) -> Promotion:
        """Wait until no stage run is in flight, then return the persisted state.

        Returns when the promotion completed, halted, was abandoned, or is
        parked on an approval gate.
        """
        event = self._settled.get(promotion_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        promotion = await self._store.get_promotion(promotion_id)
        if promotion is None:
            msg = f"Unknown promotion: {promotion_id}"
            raise KeyError(msg)
        return promotion

    async def resubmit_stage(self, promotion_id: str) -> Stage:
        """Start a new attempt for the halted stage position."""
        async with self._lock(promotion_id):
            promotion = await self._load(promotion_id)
            current = promotion.current_stage()
            if promotion.status != PromotionStatus.HALTED or current is None:
                raise GateError(
                    current.id if current else promotion_id,
                    f"promotion {promotion_id} is {promotion.status.value}, not halted",
                )
            logger.info(
                "Resubmitting stage '%s' of promotion %s (attempt %d)",
                current.name,
                promotion_id,
                current.attempt + 1,
            )
            stage = await self._start_stage(promotion, current.order, attempt=current.attempt + 1)
            return stage.model_copy(deep=True)

    async def cancel_stage(self, stage_id: str, reason: str = "canceled") -> Stage:
        """Cancel a stage's pipeline run; the stage halts without rollback."""
        promotion_id = await self._promotion_id_for(stage_id)
        task: asyncio.Task | None = None
        async with self._lock(promotion_id):
            promotion, stage = await self._locate(promotion_id, stage_id)
            if stage.is_terminal:
                raise GateError(stage_id, f"stage '{stage.name}' already {stage.status.value}")
            if stage.status in (StageStatus.PENDING, StageStatus.RUNNING):
                task = self._stage_tasks.get(stage_id)
            if task is not None:
                self._cancel_requests[stage_id] = reason
                if stage.pipeline_run_id:
                    await self._scheduler.cancel(stage.pipeline_run_id, reason)
            else:
                # Parked on a gate, or its run did not survive a restart
                await self._halt(promotion, stage, reason, rollback=False)

        if task is not None:
            await asyncio.wait([task])
        return stage.model_copy(deep=True)

    async def abandon(self, promotion_id: str, reason: str = "abandoned") -> Promotion:
        """Stop a promotion for good. An in-flight stage is canceled."""
        async with self._lock(promotion_id):
            promotion = await self._load(promotion_id)
            if promotion.status in (PromotionStatus.COMPLETED, PromotionStatus.ABANDONED):
                current = promotion.current_stage()
                raise GateError(
                    current.id if current else promotion_id,
                    f"promotion {promotion_id} is already {promotion.status.value}",
                )
            promotion.status = PromotionStatus.ABANDONED
            promotion.reason = reason
            promotion.completed_at = _now()
            await self._store.update_promotion(promotion)
            logger.info("Abandoned promotion %s: %s", promotion_id, reason)

            stage = promotion.current_stage()
            if stage is not None and not stage.is_terminal:
                if stage.id in self._stage_tasks and stage.status != StageStatus.AWAITING_APPROVAL:
                    self._cancel_requests[stage.id] = reason
                    if stage.pipeline_run_id:
                        await self._scheduler.cancel(stage.pipeline_run_id, reason)
                else:
                    await self._halt(promotion, stage, reason, rollback=False)
            else:
                self._settle(promotion)
        return promotion.model_copy(deep=True)

    async def recover(self) -> int:
        """Reconcile promotions left active by a previous process.

        Stages that were running are halted (their runs did not survive),
        approval timeouts are re-armed with the time remaining, and a
        position that advanced without its successor being started is
        resumed. Returns the number of promotions touched.
        """
        recovered = 0
        for persisted in await self._store.list_promotions(PromotionStatus.ACTIVE):
            async with self._lock(persisted.id):
                promotion = await self._load(persisted.id)
                stage = promotion.current_stage()
                if stage is None or promotion.status != PromotionStatus.ACTIVE:
                    continue
                recovered += 1
                if stage.status in (StageStatus.PENDING, StageStatus.RUNNING):
                    await self._halt(
                        promotion, stage, "interrupted by engine restart", rollback=False
                    )
                elif stage.status == StageStatus.AWAITING_APPROVAL:
                    await self._rearm_timeout(promotion, stage)
                    self._settled_event(promotion.id).set()
                elif stage.status == StageStatus.ADVANCED:
                    await self._continue_after(promotion, stage)
                else:
                    promotion.status = PromotionStatus.HALTED
                    promotion.reason = f"stage '{stage.name}' halted: {stage.reason}"
                    await self._store.update_promotion(promotion)
                    self._settle(promotion)
        if recovered:
            logger.info("Recovered %d active promotion(s)", recovered)
        return recovered

    async def shutdown(self) -> None:
        """Halt in-flight stages and wait for their trackers to record it."""
        self._closing = True
        for handle in self._timeouts.values():
            handle.cancel()
        self._timeouts.clear()
        for task in self._background:
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        for stage_id, run_id in list(self._stage_runs.items()):
            self._cancel_requests.setdefault(stage_id, "engine shutting down")
            await self._scheduler.cancel(run_id, "engine shutting down")
        tasks = list(self._stage_tasks.values())
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Stage tracker failed during shutdown: %s", result)

    # ── Approvals ────────────────────────────────────────────────────────────

    async def record_approval(self, stage_id: str, approver_id: str) -> Stage:
        """Record one approval; the stage advances once its quorum is met.

        Raises:
            GateError: Unknown stage, stage not awaiting approval, or the
                approver already voted on this stage.
        """
        promotion_id = await self._promotion_id_for(stage_id)
        async with self._lock(promotion_id):
            promotion, stage = await self._locate(promotion_id, stage_id)
            self._check_votable(stage, approver_id)
            approval = Approval(stage_id=stage_id, approver_id=approver_id)
            await self._store.record_approval(approval)
            stage.approvals.append(approval)

            have = len(stage.approver_ids)
            need = stage.gate.required_approvals
            logger.info(
                "Approval by %s for stage '%s' (%s): %d/%d",
                approver_id,
                stage.name,
                stage_id,
                have,
                need,
            )
            if have >= need:
                approvers = ", ".join(sorted(stage.approver_ids))
                await self._advance(promotion, stage, f"approved by {approvers}")
            return stage.model_copy(deep=True)

    async def record_rejection(
        self, stage_id: str, approver_id: str, reason: str | None = None
    ) -> Stage:
        """Record a rejection; the stage halts and rollback is considered."""
        promotion_id = await self._promotion_id_for(stage_id)
        async with self._lock(promotion_id):
            promotion, stage = await self._locate(promotion_id, stage_id)
            self._check_votable(stage, approver_id)
            approval = Approval(
                stage_id=stage_id, approver_id=approver_id, approved=False, reason=reason
            )
            await self._store.record_approval(approval)
            stage.approvals.append(approval)
            message = f"rejected by {approver_id}"
            if reason:
                message += f": {reason}"
            await self._halt(promotion, stage, message, rollback=True)
            return stage.model_copy(deep=True)

    def _check_votable(self, stage: Stage, approver_id: str) -> None:
        if stage.status != StageStatus.AWAITING_APPROVAL:
            raise GateError(
                stage.id,
                f"stage '{stage.name}' is not awaiting approval (status: {stage.status.value})",
            )
        if any(a.approver_id == approver_id for a in stage.approvals):
            raise GateError(stage.id, f"{approver_id} already voted on stage '{stage.name}'")

    # ── Stage Execution ──────────────────────────────────────────────────────

    async def _start_stage(self, promotion: Promotion, order: int, attempt: int = 1) -> Stage:
        """Create a stage attempt and submit its pipeline run. Caller holds the lock."""
        definition = promotion.stages[order]
        stage = Stage(
            id=uuid.uuid4().hex,
            promotion_id=promotion.id,
            name=definition.name,
            order=order,
            attempt=attempt,
            gate=definition.gate,
            is_production=definition.is_production,
            rollback_eligible=definition.rollback_eligible,
            rollback_strategies=list(definition.rollback_strategies),
            created_at=_now(),
        )
        await self._store.create_stage(stage)
        promotion.attempts.append(stage)
        promotion.current_order = order
        promotion.status = PromotionStatus.ACTIVE
        promotion.reason = None
        await self._store.update_promotion(promotion)
        self._promotions[promotion.id] = promotion
        self._settled_event(promotion.id).clear()

        run = await self._scheduler.submit(
            definition.graph,
            self._executor,
            name=f"{promotion.change_set.id}:{definition.name}",
            parent_id=stage.id,
            context={
                "promotion_id": promotion.id,
                "change_set_id": promotion.change_set.id,
                "stage": definition.name,
                "is_production": definition.is_production,
            },
        )
        stage.pipeline_run_id = run.id
        await self._transition(stage, StageStatus.RUNNING)
        logger.info(
            "Stage '%s' (%d/%d, attempt %d) running for change set %s (run %s)",
            stage.name,
            order + 1,
            len(promotion.stages),
            attempt,
            promotion.change_set.id,
            run.id,
        )
        self._stage_runs[stage.id] = run.id
        self._stage_tasks[stage.id] = asyncio.create_task(
            self._await_stage_run(promotion, stage), name=f"stage-{stage.id[:12]}"
        )
        return stage

    async def _await_stage_run(self, promotion: Promotion, stage: Stage) -> None:
        try:
            try:
                run = await self._scheduler.wait(stage.pipeline_run_id)
            except Exception as e:
                logger.exception("Pipeline run for stage %s crashed", stage.id)
                async with self._lock(promotion.id):
                    if not stage.is_terminal:
                        await self._halt(promotion, stage, f"pipeline run error: {e}", rollback=False)
                return
            async with self._lock(promotion.id):
                if stage.is_terminal:
                    return
                cancel_reason = self._cancel_requests.pop(stage.id, None)
                if cancel_reason is not None:
                    await self._halt(promotion, stage, cancel_reason, rollback=False)
                elif run.status == PipelineRunStatus.SUCCEEDED:
                    if stage.gate.kind == GateKind.AUTO:
                        await self._advance(promotion, stage, "pipeline run succeeded")
                    else:
                        await self._await_approval(promotion, stage)
                elif run.status == PipelineRunStatus.CANCELED:
                    await self._halt(
                        promotion, stage, run.reason or "pipeline run canceled", rollback=False
                    )
                else:
                    await self._halt(
                        promotion,
                        stage,
                        f"pipeline run failed: {run.failure_reason()}",
                        rollback=True,
                    )
        finally:
            self._stage_tasks.pop(stage.id, None)
            self._stage_runs.pop(stage.id, None)
            self._cancel_requests.pop(stage.id, None)

    async def _await_approval(self, promotion: Promotion, stage: Stage) -> None:
        need = stage.gate.required_approvals
        await self._transition(
            stage, StageStatus.AWAITING_APPROVAL, f"waiting for {need} approval(s)"
        )
        self._publish(
            stage,
            Severity.INFO,
            f"Stage '{stage.name}' awaiting approval",
            stage.reason,
            {"required_approvals": need},
        )
        timeout = stage.gate.approval_timeout_seconds
        if timeout is not None:
            self._arm_timeout(promotion.id, stage.id, timeout)
        self._settled_event(promotion.id).set()

    def _arm_timeout(self, promotion_id: str, stage_id: str, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timeouts[stage_id] = loop.call_later(
            max(delay, 0.0), self._on_approval_timeout, promotion_id, stage_id
        )

    async def _rearm_timeout(self, promotion: Promotion, stage: Stage) -> None:
        timeout = stage.gate.approval_timeout_seconds
        if timeout is None or stage.id in self._timeouts:
            return
        since = await self._store.stage_status_since(stage.id, StageStatus.AWAITING_APPROVAL)
        remaining = timeout - ((_now() - since).total_seconds() if since else 0.0)
        logger.info(
            "Re-arming approval timeout for stage '%s' (%s): %.1fs left",
            stage.name,
            stage.id,
            max(remaining, 0.0),
        )
        self._arm_timeout(promotion.id, stage.id, remaining)

    def _on_approval_timeout(self, promotion_id: str, stage_id: str) -> None:
        self._timeouts.pop(stage_id, None)
        task = asyncio.create_task(self._expire_approval(promotion_id, stage_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _expire_approval(self, promotion_id: str, stage_id: str) -> None:
        async with self._lock(promotion_id):
            try:
                promotion = await self._load(promotion_id)
            except KeyError:
                return
            stage = _find_stage(promotion, stage_id)
            if stage is None or stage.status != StageStatus.AWAITING_APPROVAL:
                return
            error = GateError(
                stage_id,
                f"approval timed out after {stage.gate.approval_timeout_seconds:g}s "
                f"({len(stage.approver_ids)}/{stage.gate.required_approvals} approvals)",
            )
            logger.warning("Stage '%s' (%s): %s", stage.name, stage_id, error)
            await self._halt(promotion, stage, str(error), rollback=True)

    async def _advance(self, promotion: Promotion, stage: Stage, reason: str) -> None:
        self._cancel_timeout(stage.id)
        await self._transition(stage, StageStatus.ADVANCED, reason)
        self._publish(stage, Severity.INFO, f"Stage '{stage.name}' advanced", reason, {})
        await self._continue_after(promotion, stage)

    async def _continue_after(self, promotion: Promotion, stage: Stage) -> None:
        """Start the position after an advanced stage, or complete the promotion."""
        next_order = stage.order + 1
        if next_order < len(promotion.stages):
            if self._closing:
                logger.info(
                    "Not starting stage '%s' of promotion %s: engine shutting down",
                    promotion.stages[next_order].name,
                    promotion.id,
                )
                self._settled_event(promotion.id).set()
                return
            await self._start_stage(promotion, next_order)
            return

        promotion.status = PromotionStatus.COMPLETED
        promotion.completed_at = _now()
        await self._store.update_promotion(promotion)
        logger.info(
            "Promotion %s completed: change set %s reached '%s'",
            promotion.id,
            promotion.change_set.id,
            stage.name,
        )
        self._settle(promotion)

    async def _halt(
        self, promotion: Promotion, stage: Stage, reason: str, *, rollback: bool
    ) -> None:
        self._cancel_timeout(stage.id)
        await self._transition(stage, StageStatus.HALTED, reason)
        if promotion.status == PromotionStatus.ACTIVE:
            promotion.status = PromotionStatus.HALTED
            promotion.reason = f"stage '{stage.name}' halted: {reason}"
            await self._store.update_promotion(promotion)
        logger.error("Stage '%s' (%s) halted: %s", stage.name, stage.id, reason)

        severity = Severity.CRITICAL if stage.is_production else Severity.ERROR
        self._publish(
            stage,
            severity,
            f"Stage '{stage.name}' halted for change set {promotion.change_set.id}",
            reason,
            {"pipeline_run_id": stage.pipeline_run_id},
        )

        if rollback and self._rollback is not None:
            try:
                await self._rollback.on_stage_failure(
                    stage.model_copy(deep=True), promotion.change_set
                )
            except Exception:
                logger.exception("Rollback controller failed for stage %s", stage.id)
        self._settle(promotion)

    async def _transition(
        self, stage: Stage, status: StageStatus, reason: str | None = None
    ) -> None:
        stage.status = status
        stage.reason = reason
        if stage.is_terminal:
            stage.completed_at = _now()
        await self._store.append_stage_transition(stage)
        logger.debug("Stage '%s' (%s) -> %s", stage.name, stage.id, status.value)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _lock(self, promotion_id: str) -> asyncio.Lock:
        lock = self._locks.get(promotion_id)
        if lock is None:
            lock = self._locks[promotion_id] = asyncio.Lock()
        return lock

    def _settled_event(self, promotion_id: str) -> asyncio.Event:
        return self._settled.setdefault(promotion_id, asyncio.Event())

    def _settle(self, promotion: Promotion) -> None:
        """Wake waiters; a promotion no longer active is dropped from memory."""
        self._settled_event(promotion.id).set()
        if promotion.status == PromotionStatus.ACTIVE:
            return
        if self._running_stages(promotion):
            return
        self._promotions.pop(promotion.id, None)
        self._settled.pop(promotion.id, None)

    def _running_stages(self, promotion: Promotion) -> list[Stage]:
        return [s for s in promotion.attempts if s.id in self._stage_tasks and not s.is_terminal]

    def _cancel_timeout(self, stage_id: str) -> None:
        handle = self._timeouts.pop(stage_id, None)
        if handle is not None:
            handle.cancel()

    async def _load(self, promotion_id: str) -> Promotion:
        promotion = self._promotions.get(promotion_id)
        if promotion is None:
            promotion = await self._store.get_promotion(promotion_id)
            if promotion is None:
                msg = f"Unknown promotion: {promotion_id}"
                raise KeyError(msg)
            if promotion.status == PromotionStatus.ACTIVE:
                self._promotions[promotion_id] = promotion
        return promotion

    async def _promotion_id_for(self, stage_id: str) -> str:
        for promotion in self._promotions.values():
            if _find_stage(promotion, stage_id) is not None:
                return promotion.id
        persisted = await self._store.get_stage(stage_id)
        if persisted is None:
            raise GateError(stage_id, f"unknown stage: {stage_id}")
        return persisted.promotion_id

    async def _locate(self, promotion_id: str, stage_id: str) -> tuple[Promotion, Stage]:
        """Resolve a stage within its promotion. Caller holds the promotion lock."""
        try:
            promotion = await self._load(promotion_id)
        except KeyError:
            raise GateError(stage_id, f"unknown stage: {stage_id}") from None
        stage = _find_stage(promotion, stage_id)
        if stage is None:
            raise GateError(stage_id, f"unknown stage: {stage_id}")
        return promotion, stage

    def _publish(
        self,
        stage: Stage,
        severity: Severity,
        title: str,
        reason: str | None,
        payload: dict[str, Any],
    ) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            NotificationEvent(
                source_id=stage.position_key,
                source_kind=SourceKind.STAGE,
                severity=severity,
                title=title,
                reason=reason,
                is_production=stage.is_production,
                ordering_key=stage.position_key,
                payload={
                    "stage_id": stage.id,
                    "stage": stage.name,
                    "attempt": stage.attempt,
                    "status": stage.status.value,
                    **payload,
                },
            )
        )


def _find_stage(promotion: Promotion, stage_id: str) -> Stage | None:
    for stage in promotion.attempts:
        if stage.id == stage_id:
            return stage
    return None


def _now() -> datetime:
    return datetime.now(timezone.utc)
