"""Tests for the action registry and built-in actions."""

from __future__ import annotations

import asyncio

import pytest

from conveyor.errors import ExecutorError
from conveyor.executors import ActionRegistry, run_shell
from conveyor.pipeline.models import Job
from conveyor.pipeline.scheduler import JobContext


def make_context(**overrides) -> JobContext:
    defaults: dict = dict(pipeline_run_id="run-1", pipeline_name="web", attempt=1)
    defaults.update(overrides)
    return JobContext(**defaults)


def shell_job(command: str | None, **params) -> Job:
    if command is not None:
        params["run"] = command
    return Job(id="step", action="shell", params=params)


class TestActionRegistry:
    def test_builtins(self):
        assert ActionRegistry().list_actions() == ["noop", "shell"]
        assert ActionRegistry(builtins=False).list_actions() == []

    @pytest.mark.asyncio
    async def test_register_decorator(self):
        registry = ActionRegistry()

        @registry.register("deploy.helm")
        async def deploy(job: Job, ctx: JobContext) -> dict:
            return {"release": job.params["release"], "attempt": ctx.attempt}

        job = Job(id="deploy", action="deploy.helm", params={"release": "web-42"})
        result = await registry.execute(job, make_context(attempt=2))
        assert result == {"release": "web-42", "attempt": 2}
        assert registry.get("deploy.helm") is deploy

    @pytest.mark.asyncio
    async def test_none_result_becomes_empty_output(self):
        registry = ActionRegistry(builtins=False)

        async def quiet(job: Job, ctx: JobContext) -> None:
            return None

        registry.register_fn("quiet", quiet)
        assert await registry.execute(Job(id="q", action="quiet"), make_context()) == {}

    @pytest.mark.asyncio
    async def test_unknown_action(self):
        with pytest.raises(ExecutorError, match="unknown action 'terraform'") as exc:
            await ActionRegistry().execute(Job(id="infra", action="terraform"), make_context())
        assert exc.value.job_id == "infra"

    @pytest.mark.asyncio
    async def test_load_plugin(self, tmp_path, monkeypatch):
        (tmp_path / "acme_actions.py").write_text(
            "async def smoke(job, ctx):\n"
            "    return {'ok': True}\n"
            "\n"
            "def register_actions(registry):\n"
            "    registry.register_fn('acme.smoke', smoke)\n"
        )
        monkeypatch.syspath_prepend(str(tmp_path))

        registry = ActionRegistry()
        assert registry.load_plugin("acme_actions") == 1
        assert await registry.execute(Job(id="s", action="acme.smoke"), make_context()) == {
            "ok": True
        }

    def test_load_missing_plugin(self):
        with pytest.raises(ModuleNotFoundError):
            ActionRegistry().load_plugin("no_such_conveyor_plugin")


class TestShellAction:
    @pytest.mark.asyncio
    async def test_captures_output(self):
        result = await run_shell(shell_job("echo hello; echo oops >&2"), make_context())
        assert result == {"exit_code": 0, "stdout": "hello\n", "stderr": "oops\n"}

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails(self):
        with pytest.raises(ExecutorError) as exc:
            await run_shell(shell_job("echo partial; exit 3"), make_context())
        assert exc.value.reason == "command exited with 3"
        assert exc.value.output["exit_code"] == 3
        assert exc.value.output["stdout"] == "partial\n"

    @pytest.mark.asyncio
    async def test_requires_command(self):
        with pytest.raises(ExecutorError, match="requires a 'run' command"):
            await run_shell(shell_job(None), make_context())

    @pytest.mark.asyncio
    async def test_environment_and_cwd(self, tmp_path):
        job = shell_job(
            'echo "$CONVEYOR_JOB_ID $CONVEYOR_ATTEMPT $CONVEYOR_CTX_STAGE $REGION"; pwd',
            env={"REGION": "eu-west-1"},
            cwd=str(tmp_path),
        )
        result = await run_shell(job, make_context(attempt=2, run_context={"stage": "uat"}))
        lines = result["stdout"].splitlines()
        assert lines[0] == "step 2 uat eu-west-1"
        assert lines[1] == str(tmp_path)

    @pytest.mark.asyncio
    async def test_output_is_truncated_to_tail(self):
        result = await run_shell(shell_job("head -c 5000 /dev/zero | tr '\\0' x; printf END"), make_context())
        assert len(result["stdout"]) == 4000
        assert result["stdout"].endswith("END")

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self):
        registry = ActionRegistry()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(registry.execute(shell_job("sleep 5"), make_context()), 0.2)
