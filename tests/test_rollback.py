"""Tests for rollback strategy selection, planning and compensating runs."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import aiosqlite
import pytest
import pytest_asyncio

from conveyor.errors import ExecutorError, RollbackStrategyUnavailable
from conveyor.events import EventBus, Severity, SourceKind
from conveyor.pipeline.models import Job, JobGraph, RunKind
from conveyor.pipeline.scheduler import JobContext, Scheduler
from conveyor.promotion.models import (
    ChangeSet,
    Promotion,
    RollbackAction,
    RollbackStatus,
    RollbackStrategy,
    Stage,
    StageDefinition,
    StageStatus,
)
from conveyor.rollback import DefaultRollbackPlanner, RollbackController
from conveyor.store import StateStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingExecutor:
    def __init__(self):
        self.jobs: list[Job] = []
        self.fail = False
        self.release: asyncio.Event | None = None

    async def execute(self, job: Job, context: JobContext) -> dict:
        self.jobs.append(job)
        if self.release is not None:
            await self.release.wait()
        if self.fail:
            raise ExecutorError(job.id, "rollback script exited with 3")
        return {}


@pytest_asyncio.fixture
async def db(tmp_path):
    async with aiosqlite.connect(str(tmp_path / "test_rollback.db")) as conn:
        conn.row_factory = aiosqlite.Row
        yield conn


@pytest_asyncio.fixture
async def store(db):
    s = StateStore(db)
    await s.initialize()
    await s.create_promotion(
        Promotion(
            id="promo-1",
            change_set=ChangeSet(id="cs-1"),
            stages=[StageDefinition(name="prod", graph=deploy_graph())],
            created_at=NOW,
        )
    )
    return s


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest_asyncio.fixture
async def scheduler(store, bus):
    sched = Scheduler(store, bus)
    yield sched
    await sched.shutdown()


@pytest_asyncio.fixture
async def controller(store, scheduler, executor, bus):
    ctl = RollbackController(store, scheduler, executor, bus)
    yield ctl
    await ctl.shutdown()


# ── Helpers ──────────────────────────────────────────────────────────────────


def deploy_graph() -> JobGraph:
    return JobGraph.from_jobs([Job(id="deploy", action="noop")])


async def make_stage(store: StateStore, stage_id: str = "stage-2", **overrides) -> Stage:
    defaults: dict = dict(
        id=stage_id,
        promotion_id="promo-1",
        name="prod",
        order=0,
        attempt=2,
        is_production=True,
        rollback_eligible=True,
        status=StageStatus.HALTED,
        reason="pipeline run failed: deploy: health check failed",
        created_at=NOW,
    )
    defaults.update(overrides)
    stage = Stage(**defaults)
    await store.create_stage(stage)
    return stage


async def record_previous_deploy(store: StateStore, scheduler: Scheduler, executor) -> str:
    """Run a successful deploy and attach it to an earlier stage attempt."""
    run = await scheduler.schedule(deploy_graph(), executor, name="cs-0:prod")
    await make_stage(store, "stage-1", attempt=1, pipeline_run_id=run.id, status=StageStatus.ADVANCED)
    executor.jobs.clear()
    return run.id


# ── Strategy Selection ───────────────────────────────────────────────────────


class TestSelectStrategy:
    @pytest.mark.asyncio
    async def test_redeploy_previous_when_prior_run_exists(self, controller, store, scheduler, executor):
        previous_id = await record_previous_deploy(store, scheduler, executor)
        stage = await make_stage(store)

        strategy, previous = await controller.select_strategy(stage, ChangeSet(id="cs-1"))
        assert strategy == RollbackStrategy.REDEPLOY_PREVIOUS
        assert previous.id == previous_id

    @pytest.mark.asyncio
    async def test_falls_through_preference_order(self, controller, store):
        stage = await make_stage(store)

        strategy, previous = await controller.select_strategy(
            stage, ChangeSet(id="cs-1", reversible_deltas=["db/migration-42"], feature_flag="f")
        )
        assert strategy == RollbackStrategy.DESTRUCTIVE_REMOVAL
        assert previous is None

        strategy, _ = await controller.select_strategy(stage, ChangeSet(id="cs-1", feature_flag="f"))
        assert strategy == RollbackStrategy.FEATURE_FLAG_DISABLE

    @pytest.mark.asyncio
    async def test_stage_preference_order_respected(self, controller, store):
        stage = await make_stage(
            store,
            rollback_strategies=[
                RollbackStrategy.FEATURE_FLAG_DISABLE,
                RollbackStrategy.DESTRUCTIVE_REMOVAL,
            ],
        )
        strategy, _ = await controller.select_strategy(
            stage, ChangeSet(id="cs-1", reversible_deltas=["svc"], feature_flag="f")
        )
        assert strategy == RollbackStrategy.FEATURE_FLAG_DISABLE

    @pytest.mark.asyncio
    async def test_nothing_executable(self, controller, store):
        stage = await make_stage(store)
        with pytest.raises(RollbackStrategyUnavailable) as exc:
            await controller.select_strategy(stage, ChangeSet(id="cs-1"))
        assert exc.value.tried == [
            "redeploy_previous",
            "destructive_removal",
            "feature_flag_disable",
        ]

    @pytest.mark.asyncio
    async def test_rejected_attempt_is_not_redeployed(self, controller, store, scheduler, executor):
        run = await scheduler.schedule(deploy_graph(), executor, name="cs-0:prod")
        await make_stage(
            store, "stage-1", attempt=1, pipeline_run_id=run.id, reason="rejected by alice"
        )
        stage = await make_stage(store)

        strategy, previous = await controller.select_strategy(
            stage, ChangeSet(id="cs-1", feature_flag="f")
        )
        assert strategy == RollbackStrategy.FEATURE_FLAG_DISABLE
        assert previous is None


# ── Compensating Runs ────────────────────────────────────────────────────────


class TestOnStageFailure:
    @pytest.mark.asyncio
    async def test_not_eligible_is_notify_only(self, controller, store, executor):
        stage = await make_stage(store, rollback_eligible=False)
        assert await controller.on_stage_failure(stage, ChangeSet(id="cs-1", feature_flag="f")) is None
        assert executor.jobs == []

    @pytest.mark.asyncio
    async def test_successful_rollback(self, controller, store, executor, bus):
        events = []
        bus.subscribe(events.append)
        stage = await make_stage(store)

        action = await controller.on_stage_failure(
            stage, ChangeSet(id="cs-1", reversible_deltas=["svc-a", "svc-b"])
        )
        assert action.status == RollbackStatus.RUNNING
        assert action.strategy == RollbackStrategy.DESTRUCTIVE_REMOVAL

        final = await controller.wait_for_rollback(action.id)
        assert final.status == RollbackStatus.SUCCEEDED
        assert final.completed_at is not None

        run = await store.get_pipeline_run(final.pipeline_run_id)
        assert run.kind == RunKind.ROLLBACK
        assert run.parent_id == action.id
        assert executor.jobs[0].action == "rollback.destructive_removal"
        assert executor.jobs[0].params["deltas"] == ["svc-a", "svc-b"]

        assert [a.id for a in await store.get_rollback_actions_for_stage("stage-2")] == [action.id]
        rollback_events = [e for e in events if e.source_kind == SourceKind.ROLLBACK]
        assert [e.severity for e in rollback_events] == [Severity.INFO, Severity.INFO]
        assert all(e.ordering_key == "promo-1/prod" for e in rollback_events)

    @pytest.mark.asyncio
    async def test_failed_rollback_escalates(self, controller, store, executor, bus):
        events = []
        bus.subscribe(events.append)
        executor.fail = True
        stage = await make_stage(store)

        action = await controller.on_stage_failure(stage, ChangeSet(id="cs-1", feature_flag="f"))
        final = await controller.wait_for_rollback(action.id)

        assert final.status == RollbackStatus.FAILED
        assert final.reason == "rollback: rollback script exited with 3"
        last = [e for e in events if e.source_kind == SourceKind.ROLLBACK][-1]
        assert last.severity == Severity.CRITICAL
        assert last.title == "Rollback of 'prod' failed"

    @pytest.mark.asyncio
    async def test_unavailable_escalates_without_action(self, controller, store, bus):
        events = []
        bus.subscribe(events.append)
        stage = await make_stage(store)

        assert await controller.on_stage_failure(stage, ChangeSet(id="cs-1")) is None
        assert await store.get_rollback_actions_for_stage("stage-2") == []
        assert len(events) == 1
        assert events[0].severity == Severity.CRITICAL
        assert events[0].source_id == "promo-1/prod/rollback"
        assert "manual action required" in events[0].title

    @pytest.mark.asyncio
    async def test_redeploy_carries_previous_run(self, controller, store, scheduler, executor):
        previous_id = await record_previous_deploy(store, scheduler, executor)
        stage = await make_stage(store)

        action = await controller.on_stage_failure(stage, ChangeSet(id="cs-1"))
        await controller.wait_for_rollback(action.id)

        job = executor.jobs[0]
        assert job.action == "rollback.redeploy_previous"
        assert job.params["previous_run_id"] == previous_id

    @pytest.mark.asyncio
    async def test_wait_for_unknown_action(self, controller):
        with pytest.raises(KeyError):
            await controller.wait_for_rollback("missing")

    @pytest.mark.asyncio
    async def test_submit_failure_records_failed_action(self, controller, store, scheduler, bus, monkeypatch):
        events = []
        bus.subscribe(events.append)

        async def broken_submit(*args, **kwargs):
            raise RuntimeError("database is locked")

        monkeypatch.setattr(scheduler, "submit", broken_submit)
        stage = await make_stage(store)

        action = await controller.on_stage_failure(stage, ChangeSet(id="cs-1", feature_flag="f"))

        assert action.status == RollbackStatus.FAILED
        assert action.reason == "rollback run not scheduled: database is locked"
        stored = await store.get_rollback_action(action.id)
        assert stored.status == RollbackStatus.FAILED
        assert stored.completed_at is not None
        assert events[-1].severity == Severity.CRITICAL


class TestDefaultRollbackPlanner:
    def make_stage(self) -> Stage:
        return Stage(id="stage-2", promotion_id="promo-1", name="prod", order=0)

    def test_action_per_strategy(self):
        graph = DefaultRollbackPlanner().plan(
            RollbackStrategy.FEATURE_FLAG_DISABLE,
            self.make_stage(),
            ChangeSet(id="cs-1", feature_flag="new-checkout"),
            None,
        )
        job = graph.jobs["rollback"]
        assert job.action == "rollback.feature_flag_disable"
        assert job.params["feature_flag"] == "new-checkout"
        assert job.params["stage_id"] == "stage-2"

    def test_configured_command_runs_in_shell(self):
        planner = DefaultRollbackPlanner(
            {RollbackStrategy.DESTRUCTIVE_REMOVAL: "./scripts/remove.sh"}
        )
        graph = planner.plan(
            RollbackStrategy.DESTRUCTIVE_REMOVAL,
            self.make_stage(),
            ChangeSet(id="cs-1", reversible_deltas=["svc-a", "svc-b"]),
            None,
        )
        job = graph.jobs["rollback"]
        assert job.action == "shell"
        assert job.params["run"] == "./scripts/remove.sh"
        assert job.params["env"]["CONVEYOR_DELTAS"] == "svc-a svc-b"
        assert job.params["env"]["CONVEYOR_STAGE"] == "prod"


# ── Shutdown and Recovery ────────────────────────────────────────────────────


class TestShutdownAndRecover:
    @pytest.mark.asyncio
    async def test_shutdown_records_outcome(self, controller, store, executor):
        executor.release = asyncio.Event()
        stage = await make_stage(store)
        action = await controller.on_stage_failure(stage, ChangeSet(id="cs-1", feature_flag="f"))
        while not executor.jobs:
            await asyncio.sleep(0.005)

        await controller.shutdown()

        stored = await store.get_rollback_action(action.id)
        assert stored.status == RollbackStatus.FAILED
        assert stored.reason == "rollback controller shutting down"
        assert stored.completed_at is not None
        run = await store.get_pipeline_run(stored.pipeline_run_id)
        assert run.completed_at is not None

    @pytest.mark.asyncio
    async def test_recover_fails_interrupted_actions(self, controller, store):
        await make_stage(store)
        for action_id, status in [
            ("rb-pending", RollbackStatus.PENDING),
            ("rb-running", RollbackStatus.RUNNING),
            ("rb-done", RollbackStatus.SUCCEEDED),
        ]:
            await store.create_rollback_action(
                RollbackAction(
                    id=action_id,
                    target_stage_id="stage-2",
                    strategy=RollbackStrategy.FEATURE_FLAG_DISABLE,
                    status=status,
                    created_at=NOW,
                )
            )

        assert await controller.recover() == 2

        for action_id in ("rb-pending", "rb-running"):
            stored = await store.get_rollback_action(action_id)
            assert stored.status == RollbackStatus.FAILED
            assert stored.reason == "interrupted by engine restart"
        assert (await store.get_rollback_action("rb-done")).status == RollbackStatus.SUCCEEDED
