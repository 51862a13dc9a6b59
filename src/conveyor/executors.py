"""Job executors — the integration point for build, test and deploy logic.

``ActionRegistry`` maps a job's ``action`` name to an async function and is
itself a ``JobExecutor``, so it can be handed straight to the scheduler.

Usage::

    registry = ActionRegistry()

    @registry.register("deploy.helm")
    async def deploy(job: Job, ctx: JobContext) -> dict:
        ...

Built-in actions:
    shell — run ``params.run`` through the system shell
    noop  — succeed immediately with no output
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import os
from typing import Any, Awaitable, Callable

from conveyor.errors import ExecutorError
from conveyor.pipeline.models import Job
from conveyor.pipeline.scheduler import JobContext

logger = logging.getLogger(__name__)

ActionFn = Callable[[Job, JobContext], Awaitable[dict[str, Any] | None]]

# Keep only the tail of captured process output
_OUTPUT_TAIL = 4000


class ActionRegistry:
    """Registry mapping action names to job action functions."""

    def __init__(self, *, builtins: bool = True) -> None:
        self._actions: dict[str, ActionFn] = {}
        if builtins:
            self._register_builtin_actions()

    # ── Registration ─────────────────────────────────────────────────────────

    def register(self, name: str) -> Callable[[ActionFn], ActionFn]:
        """Decorator to register an action function under ``name``."""

        def decorator(fn: ActionFn) -> ActionFn:
            self._actions[name] = fn
            logger.debug("Registered action: %s", name)
            return fn

        return decorator

    def register_fn(self, name: str, fn: ActionFn) -> None:
        """Directly register an action function by name."""
        self._actions[name] = fn

    def load_plugin(self, module_path: str) -> int:
        """Load actions from a module exposing ``register_actions(registry)``.

        Returns:
            Number of actions registered from the module.
        """
        before = set(self._actions)
        module = importlib.import_module(module_path)
        if hasattr(module, "register_actions"):
            module.register_actions(self)
        added = set(self._actions) - before
        logger.info("Loaded %d action(s) from plugin %s", len(added), module_path)
        return len(added)

    def get(self, name: str) -> ActionFn | None:
        return self._actions.get(name)

    def list_actions(self) -> list[str]:
        return sorted(self._actions)

    def _register_builtin_actions(self) -> None:
        self._actions["shell"] = run_shell
        self._actions["noop"] = _noop

    # ── JobExecutor ──────────────────────────────────────────────────────────

    async def execute(self, job: Job, context: JobContext) -> dict[str, Any]:
        fn = self._actions.get(job.action)
        if fn is None:
            raise ExecutorError(job.id, f"unknown action '{job.action}'")
        logger.debug(
            "Executing job '%s' action=%s attempt=%d (pipeline %s)",
            job.id,
            job.action,
            context.attempt,
            context.pipeline_run_id,
        )
        return await fn(job, context) or {}


# ── Built-in Actions ─────────────────────────────────────────────────────────


async def _noop(job: Job, context: JobContext) -> dict[str, Any]:
    return {}


async def run_shell(job: Job, context: JobContext) -> dict[str, Any]:
    """Run ``job.params["run"]`` in a shell; non-zero exit fails the job.

    Optional params: ``cwd`` (working directory) and ``env`` (extra
    environment variables). The subprocess is killed if the job is
    cancelled or times out.
    """
    command = job.params.get("run")
    if not isinstance(command, str) or not command.strip():
        raise ExecutorError(job.id, "shell action requires a 'run' command")

    env = dict(os.environ)
    env.update({str(k): str(v) for k, v in (job.params.get("env") or {}).items()})
    env.update(
        {
            "CONVEYOR_PIPELINE_RUN_ID": context.pipeline_run_id,
            "CONVEYOR_PIPELINE_NAME": context.pipeline_name,
            "CONVEYOR_JOB_ID": job.id,
            "CONVEYOR_ATTEMPT": str(context.attempt),
        }
    )
    for key, value in context.run_context.items():
        if isinstance(value, (str, int, float, bool)):
            env[f"CONVEYOR_CTX_{key.upper()}"] = str(value)

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=job.params.get("cwd"),
        env=env,
    )
    try:
        stdout, stderr = await proc.communicate()
    except asyncio.CancelledError:
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        logger.info("Killed shell command for job '%s' (pid %s)", job.id, proc.pid)
        raise

    output = {
        "exit_code": proc.returncode,
        "stdout": stdout.decode(errors="replace")[-_OUTPUT_TAIL:],
        "stderr": stderr.decode(errors="replace")[-_OUTPUT_TAIL:],
    }
    if proc.returncode != 0:
        raise ExecutorError(job.id, f"command exited with {proc.returncode}", output=output)
    return output
