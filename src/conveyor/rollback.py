"""Rollback controller — compensating runs after a stage halts.

Strategies are tried in the stage's preference order and the first one
whose preconditions hold is used; a strategy is never applied partially.

    redeploy_previous    — a previous successful deploy run exists for the stage
    destructive_removal  — the change set lists reversible deltas
    feature_flag_disable — the change set is guarded by a feature flag

The chosen strategy is planned into a job graph and scheduled like any other
pipeline run (``kind=rollback``), tracked as a ``RollbackAction``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from conveyor.errors import RollbackStrategyUnavailable
from conveyor.events import EventBus, NotificationEvent, Severity, SourceKind
from conveyor.pipeline.models import Job, JobGraph, PipelineRun, PipelineRunStatus, RunKind
from conveyor.promotion.models import (
    ChangeSet,
    RollbackAction,
    RollbackStatus,
    RollbackStrategy,
    Stage,
)

if TYPE_CHECKING:
    from conveyor.pipeline.scheduler import JobExecutor, Scheduler
    from conveyor.store import StateStore

logger = logging.getLogger(__name__)


# ── Planning ─────────────────────────────────────────────────────────────────


class RollbackPlanner(Protocol):
    def plan(
        self,
        strategy: RollbackStrategy,
        stage: Stage,
        change_set: ChangeSet,
        previous_run: PipelineRun | None,
    ) -> JobGraph:
        """Build the job graph that carries out ``strategy``."""
        ...


class DefaultRollbackPlanner:
    """Single-job rollback graphs.

    With a configured shell command the job runs it with the rollback
    details in its environment; otherwise it runs the
    ``rollback.<strategy>`` action.
    """

    def __init__(self, commands: dict[RollbackStrategy, str] | None = None):
        self._commands = dict(commands or {})

    def plan(
        self,
        strategy: RollbackStrategy,
        stage: Stage,
        change_set: ChangeSet,
        previous_run: PipelineRun | None,
    ) -> JobGraph:
        params: dict[str, Any] = {
            "strategy": strategy.value,
            "stage": stage.name,
            "stage_id": stage.id,
            "change_set_id": change_set.id,
        }
        if strategy == RollbackStrategy.REDEPLOY_PREVIOUS and previous_run is not None:
            params["previous_run_id"] = previous_run.id
            params["previous_context"] = previous_run.context
        elif strategy == RollbackStrategy.DESTRUCTIVE_REMOVAL:
            params["deltas"] = list(change_set.reversible_deltas)
        elif strategy == RollbackStrategy.FEATURE_FLAG_DISABLE:
            params["feature_flag"] = change_set.feature_flag

        command = self._commands.get(strategy)
        if command:
            env = {
                "CONVEYOR_ROLLBACK_STRATEGY": strategy.value,
                "CONVEYOR_STAGE": stage.name,
                "CONVEYOR_CHANGE_SET": change_set.id,
            }
            if "previous_run_id" in params:
                env["CONVEYOR_PREVIOUS_RUN_ID"] = params["previous_run_id"]
            if "deltas" in params:
                env["CONVEYOR_DELTAS"] = " ".join(params["deltas"])
            if params.get("feature_flag"):
                env["CONVEYOR_FEATURE_FLAG"] = params["feature_flag"]
            job = Job(id="rollback", action="shell", params={**params, "run": command, "env": env})
        else:
            job = Job(id="rollback", action=f"rollback.{strategy.value}", params=params)
        return JobGraph.from_jobs([job])


# ── Controller ───────────────────────────────────────────────────────────────


class RollbackController:
    def __init__(
        self,
        store: StateStore,
        scheduler: Scheduler,
        executor: JobExecutor,
        bus: EventBus | None = None,
        planner: RollbackPlanner | None = None,
    ):
        self._store = store
        self._scheduler = scheduler
        self._executor = executor
        self._bus = bus
        self._planner = planner or DefaultRollbackPlanner()
        self._tasks: dict[str, asyncio.Task] = {}
        self._runs: dict[str, str] = {}

    async def on_stage_failure(self, stage: Stage, change_set: ChangeSet) -> RollbackAction | None:
        """Start a compensating run for a halted stage, if one is possible.

        Returns the started action, or None when the stage is not
        rollback-eligible or no strategy is executable.
        """
        if not stage.rollback_eligible:
            logger.info("Stage %s (%s) is not rollback-eligible; notify only", stage.id, stage.name)
            return None

        try:
            strategy, previous_run = await self.select_strategy(stage, change_set)
        except RollbackStrategyUnavailable as e:
            logger.error("Rollback unavailable for stage %s: %s", stage.id, e)
            self._publish(
                stage,
                source_id=f"{stage.position_key}/rollback",
                severity=Severity.CRITICAL,
                title=f"Rollback unavailable for '{stage.name}': manual action required",
                reason=str(e),
                payload={"stage_id": stage.id, "tried": e.tried},
            )
            return None

        action = RollbackAction(
            id=uuid.uuid4().hex,
            target_stage_id=stage.id,
            strategy=strategy,
            created_at=_now(),
        )
        await self._store.create_rollback_action(action)

        graph = self._planner.plan(strategy, stage, change_set, previous_run)
        try:
            run = await self._scheduler.submit(
                graph,
                self._executor,
                name=f"rollback-{stage.name}",
                kind=RunKind.ROLLBACK,
                parent_id=action.id,
                context={
                    "stage": stage.name,
                    "change_set_id": change_set.id,
                    "strategy": strategy.value,
                    "is_production": stage.is_production,
                },
            )
        except Exception as e:
            logger.exception("Could not schedule rollback %s for stage %s", action.id, stage.id)
            action.status = RollbackStatus.FAILED
            action.reason = f"rollback run not scheduled: {e}"
            action.completed_at = _now()
            await self._store.update_rollback_action(action)
            self._publish(
                stage,
                source_id=action.id,
                severity=Severity.CRITICAL if stage.is_production else Severity.ERROR,
                title=f"Rollback of '{stage.name}' failed",
                reason=action.reason,
                payload={"stage_id": stage.id, "strategy": strategy.value, "status": "failed"},
            )
            return action.model_copy()
        action.pipeline_run_id = run.id
        action.status = RollbackStatus.RUNNING
        await self._store.update_rollback_action(action)

        logger.info(
            "Rollback %s started for stage %s (%s) using %s (run %s)",
            action.id,
            stage.id,
            stage.name,
            strategy.value,
            run.id,
        )
        self._publish(
            stage,
            source_id=action.id,
            severity=Severity.INFO,
            title=f"Rollback of '{stage.name}' started ({strategy.value})",
            reason=stage.reason,
            payload={"stage_id": stage.id, "strategy": strategy.value, "pipeline_run_id": run.id},
        )
        self._runs[action.id] = run.id
        self._tasks[action.id] = asyncio.create_task(
            self._track(action, stage), name=f"rollback-{action.id[:12]}"
        )
        return action.model_copy()

    async def select_strategy(
        self, stage: Stage, change_set: ChangeSet
    ) -> tuple[RollbackStrategy, PipelineRun | None]:
        """First strategy in preference order whose preconditions all hold."""
        tried: list[str] = []
        for strategy in stage.rollback_strategies:
            tried.append(strategy.value)
            if strategy == RollbackStrategy.REDEPLOY_PREVIOUS:
                previous = await self._store.latest_succeeded_run_for_stage(
                    stage.name, exclude_stage_id=stage.id
                )
                if previous is not None:
                    return strategy, previous
            elif strategy == RollbackStrategy.DESTRUCTIVE_REMOVAL:
                if change_set.reversible_deltas:
                    return strategy, None
            elif strategy == RollbackStrategy.FEATURE_FLAG_DISABLE:
                if change_set.feature_flag:
                    return strategy, None
            logger.debug("Rollback strategy %s not executable for stage %s", strategy.value, stage.id)
        raise RollbackStrategyUnavailable(stage.id, tried)

    async def wait_for_rollback(self, action_id: str) -> RollbackAction:
        task = self._tasks.get(action_id)
        if task is not None:
            await asyncio.shield(task)
        action = await self._store.get_rollback_action(action_id)
        if action is None:
            msg = f"Unknown rollback action: {action_id}"
            raise KeyError(msg)
        return action

    async def recover(self) -> int:
        """Fail rollback actions whose runs were lost with a previous process."""
        stale = await self._store.list_rollback_actions(
            [RollbackStatus.PENDING, RollbackStatus.RUNNING]
        )
        for action in stale:
            action.status = RollbackStatus.FAILED
            action.reason = "interrupted by engine restart"
            action.completed_at = _now()
            await self._store.update_rollback_action(action)
            logger.warning(
                "Rollback %s for stage %s interrupted by restart",
                action.id,
                action.target_stage_id,
            )
        return len(stale)

    async def shutdown(self) -> None:
        """Cancel in-flight rollback runs and wait until each outcome is recorded."""
        for run_id in list(self._runs.values()):
            await self._scheduler.cancel(run_id, "rollback controller shutting down")
        tasks = list(self._tasks.values())
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("Rollback tracker failed during shutdown: %s", result)

    async def _track(self, action: RollbackAction, stage: Stage) -> None:
        try:
            run = await self._scheduler.wait(action.pipeline_run_id)
            action.completed_at = _now()
            if run.status == PipelineRunStatus.SUCCEEDED:
                action.status = RollbackStatus.SUCCEEDED
                severity = Severity.INFO
                title = f"Rollback of '{stage.name}' succeeded"
            else:
                action.status = RollbackStatus.FAILED
                action.reason = run.reason or f"rollback run {run.status.value}"
                severity = Severity.CRITICAL if stage.is_production else Severity.ERROR
                title = f"Rollback of '{stage.name}' failed"
            await self._store.update_rollback_action(action)
            logger.log(
                logging.INFO if action.status == RollbackStatus.SUCCEEDED else logging.ERROR,
                "Rollback %s for stage %s finished: %s",
                action.id,
                stage.id,
                action.status.value,
            )
            self._publish(
                stage,
                source_id=action.id,
                severity=severity,
                title=title,
                reason=action.reason,
                payload={
                    "stage_id": stage.id,
                    "strategy": action.strategy.value,
                    "pipeline_run_id": run.id,
                    "status": action.status.value,
                },
            )
        finally:
            self._tasks.pop(action.id, None)
            self._runs.pop(action.id, None)

    def _publish(
        self,
        stage: Stage,
        *,
        source_id: str,
        severity: Severity,
        title: str,
        reason: str | None,
        payload: dict[str, Any],
    ) -> None:
        if self._bus is None:
            return
        self._bus.publish(
            NotificationEvent(
                source_id=source_id,
                source_kind=SourceKind.ROLLBACK,
                severity=severity,
                title=title,
                reason=reason,
                is_production=stage.is_production,
                ordering_key=stage.position_key,
                payload=payload,
            )
        )


def _now() -> datetime:
    return datetime.now(timezone.utc)
