"""End-to-end tests wiring scheduler, promotion, rollback and notifications together."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from conveyor.config import EngineConfig
from conveyor.definitions import parse_definition
from conveyor.errors import ExecutorError
from conveyor.executors import ActionRegistry
from conveyor.notifications import ChannelKind, DeliveryPayload
from conveyor.orchestrator import Orchestrator
from conveyor.pipeline.models import Job, PipelineRunStatus
from conveyor.pipeline.scheduler import JobContext
from conveyor.promotion.models import ChangeSet, PromotionStatus, RollbackStatus, StageStatus


class RecordingChannel:
    def __init__(self):
        self.name = "recording"
        self.deliveries: list[tuple[ChannelKind, DeliveryPayload]] = []

    async def deliver(self, kind: ChannelKind, payload: DeliveryPayload) -> None:
        self.deliveries.append((kind, payload))


DEFINITION = {
    "name": "shop",
    "jobs": {"deploy": {"action": "deploy"}},
    "stages": [
        "staging",
        {
            "name": "prod",
            "production": True,
            "rollback": {"eligible": True, "strategies": ["feature_flag_disable"]},
        },
    ],
}


@pytest.fixture
def failing_stages():
    return set()


@pytest.fixture
def flags_disabled():
    return []


@pytest.fixture
def blocked_stages():
    return set()


@pytest.fixture
def release():
    return asyncio.Event()


@pytest.fixture
def registry(failing_stages, flags_disabled, blocked_stages, release):
    registry = ActionRegistry()

    @registry.register("deploy")
    async def deploy(job: Job, ctx: JobContext) -> dict:
        if ctx.run_context.get("stage") in blocked_stages:
            await release.wait()
        if ctx.run_context.get("stage") in failing_stages:
            raise ExecutorError(job.id, "health check failed")
        return {"stage": ctx.run_context.get("stage")}

    @registry.register("rollback.feature_flag_disable")
    async def disable_flag(job: Job, ctx: JobContext) -> dict:
        flags_disabled.append(job.params["feature_flag"])
        return {}

    return registry


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest_asyncio.fixture
async def orchestrator(tmp_path, registry, channel):
    config = EngineConfig()
    config.store.path = str(tmp_path / "orchestrator.db")
    orch = Orchestrator(
        config,
        executor=registry,
        channels={kind: channel for kind in ChannelKind},
        definition=parse_definition(DEFINITION),
    )
    await orch.start()
    yield orch
    await orch.stop()


class TestOrchestrator:
    @pytest.mark.asyncio
    async def test_run_pipeline(self, orchestrator):
        graph = orchestrator.definition.graph
        run = await orchestrator.run_pipeline(graph, name="adhoc")
        assert run.status == PipelineRunStatus.SUCCEEDED
        assert run.job_runs["deploy"].output == {"stage": None}

        fetched = await orchestrator.get_pipeline_run(run.id)
        assert fetched.status == PipelineRunStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_promotion_uses_definition_stages(self, orchestrator):
        started = await orchestrator.start_promotion(ChangeSet(id="cs-1"))
        done = await orchestrator.wait_for_promotion(started.id, timeout=5)

        assert done.status == PromotionStatus.COMPLETED
        status = await orchestrator.get_promotion_status("cs-1")
        assert [s.name for s in status.attempts] == ["staging", "prod"]

    @pytest.mark.asyncio
    async def test_production_failure_rolls_back_and_pages(
        self, orchestrator, failing_stages, flags_disabled, channel
    ):
        failing_stages.add("prod")
        started = await orchestrator.start_promotion(
            ChangeSet(id="cs-9", feature_flag="new-checkout")
        )
        halted = await orchestrator.wait_for_promotion(started.id, timeout=5)
        assert halted.status == PromotionStatus.HALTED

        prod = halted.attempts[-1]
        actions = await orchestrator.store.get_rollback_actions_for_stage(prod.id)
        assert len(actions) == 1
        action = await orchestrator.rollback.wait_for_rollback(actions[0].id)
        assert action.status == RollbackStatus.SUCCEEDED
        assert flags_disabled == ["new-checkout"]

        await orchestrator.dispatcher.drain()
        paged = [p for kind, p in channel.deliveries if kind == ChannelKind.PAGER]
        assert any(p.source_id == f"{started.id}/prod" for p in paged)
        assert all(p.is_production for p in paged)

        failures = await orchestrator.list_recent_failures(timedelta(hours=1))
        assert [r.name for r in failures] == ["cs-9:prod"]

    @pytest.mark.asyncio
    async def test_start_without_stages(self, tmp_path):
        config = EngineConfig()
        config.store.path = str(tmp_path / "bare.db")
        orch = Orchestrator(config)
        await orch.start()
        try:
            with pytest.raises(ValueError, match="No promotion stages"):
                await orch.start_promotion(ChangeSet(id="cs-1"))
        finally:
            await orch.stop()

    @pytest.mark.asyncio
    async def test_restart_after_stop_mid_stage(self, tmp_path, registry, channel, blocked_stages):
        config = EngineConfig()
        config.store.path = str(tmp_path / "restart.db")

        def build() -> Orchestrator:
            return Orchestrator(
                config,
                executor=registry,
                channels={kind: channel for kind in ChannelKind},
                definition=parse_definition(DEFINITION),
            )

        blocked_stages.add("staging")
        first = build()
        await first.start()
        started = await first.start_promotion(ChangeSet(id="cs-3"))
        await first.stop()

        blocked_stages.clear()
        second = build()
        await second.start()
        try:
            halted = await second.get_promotion_status("cs-3")
            assert halted.status == PromotionStatus.HALTED
            stage = halted.attempts[0]
            assert stage.status == StageStatus.HALTED
            assert stage.reason == "engine shutting down"
            run = await second.get_pipeline_run(stage.pipeline_run_id)
            assert run.status == PipelineRunStatus.CANCELED

            await second.resubmit_stage(started.id)
            done = await second.wait_for_promotion(started.id, timeout=5)
            assert done.status == PromotionStatus.COMPLETED
        finally:
            await second.stop()
