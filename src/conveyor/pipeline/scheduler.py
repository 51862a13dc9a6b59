"""Execution scheduler — drives a job graph to completion.

The scheduler owns a pipeline run while it executes. After every state
change it re-runs the condition evaluator under the run's lock, marks jobs
that can never run as skipped, and dispatches eligible jobs as asyncio tasks
bounded by ``max_parallel``. Executor errors and timeouts fail the job, not
the scheduler; the rest of the graph keeps running.

Key exports:
    Scheduler — submit(), wait(), schedule(), cancel(), shutdown()
    JobExecutor — Protocol for the external job action integration point
    JobContext — Per-attempt context handed to the executor
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from conveyor.errors import ExecutorError
from conveyor.events import EventBus, NotificationEvent, Severity, SourceKind
from conveyor.pipeline.conditions import ready_set
from conveyor.pipeline.models import (
    Job,
    JobGraph,
    JobRun,
    JobRunStatus,
    PipelineRun,
    PipelineRunStatus,
    RunKind,
)

if TYPE_CHECKING:
    from conveyor.store import StateStore

logger = logging.getLogger(__name__)

_UNSET: Any = object()


# ── Executor Protocol ────────────────────────────────────────────────────────


@dataclass
class JobContext:
    """Runtime context passed to the executor for one job attempt."""

    pipeline_run_id: str
    pipeline_name: str
    attempt: int
    run_context: dict[str, Any] = field(default_factory=dict)


class JobExecutor(Protocol):
    """The only way external job logic (build, test, deploy) enters the engine."""

    async def execute(self, job: Job, context: JobContext) -> dict[str, Any]:
        """Run the job's action. Returns its output; raises to fail the job.

        Must honour task cancellation.
        """
        ...


# ── Scheduler ────────────────────────────────────────────────────────────────


@dataclass
class _ActiveRun:
    run: PipelineRun
    executor: JobExecutor
    limit: asyncio.Semaphore | None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    tasks: dict[str, asyncio.Task] = field(default_factory=dict)
    cancel_reason: str | None = None
    driver: asyncio.Task | None = None


class Scheduler:
    """Executes pipeline runs concurrently, one driver task per run.

    Usage:
        scheduler = Scheduler(store, bus, max_parallel=4)
        run = await scheduler.schedule(graph, executor, name="build-and-test")
        assert run.status == PipelineRunStatus.SUCCEEDED
    """

    def __init__(
        self,
        store: StateStore,
        bus: EventBus | None = None,
        *,
        max_parallel: int | None = None,
    ):
        if max_parallel is not None and max_parallel < 1:
            msg = f"max_parallel must be >= 1, got {max_parallel}"
            raise ValueError(msg)
        self._store = store
        self._bus = bus
        self._max_parallel = max_parallel
        self._active: dict[str, _ActiveRun] = {}

    # ── Public API ───────────────────────────────────────────────────────────

    async def submit(
        self,
        graph: JobGraph,
        executor: JobExecutor,
        *,
        name: str = "pipeline",
        kind: RunKind = RunKind.DEPLOY,
        parent_id: str | None = None,
        context: dict[str, Any] | None = None,
        max_parallel: int | None = _UNSET,
    ) -> PipelineRun:
        """Create and persist a pipeline run, then start driving it.

        Returns a snapshot of the freshly created run; use ``wait()`` for
        the final state.
        """
        limit = self._max_parallel if max_parallel is _UNSET else max_parallel
        if limit is not None and limit < 1:
            msg = f"max_parallel must be >= 1, got {limit}"
            raise ValueError(msg)

        run_id = uuid.uuid4().hex
        run = PipelineRun(
            id=run_id,
            name=name,
            graph=graph,
            kind=kind,
            parent_id=parent_id,
            context=dict(context or {}),
            created_at=_now(),
            job_runs={
                job_id: JobRun(job_id=job_id, pipeline_run_id=run_id)
                for job_id in graph.topological_order()
            },
        )
        await self._store.create_pipeline_run(run)

        active = _ActiveRun(
            run=run,
            executor=executor,
            limit=asyncio.Semaphore(limit) if limit is not None else None,
        )
        self._active[run_id] = active
        logger.info(
            "Started pipeline run %s ('%s', %d jobs, kind=%s, max_parallel=%s)",
            run_id,
            name,
            len(graph.jobs),
            kind.value,
            limit or "unbounded",
        )
        snapshot = run.model_copy(deep=True)
        active.driver = asyncio.create_task(self._drive(active), name=f"pipeline-{run_id[:12]}")
        return snapshot

    async def wait(self, run_id: str) -> PipelineRun:
        """Wait for a run to finish and return its persisted final state."""
        active = self._active.get(run_id)
        if active is not None and active.driver is not None:
            await asyncio.shield(active.driver)
        run = await self._store.get_pipeline_run(run_id)
        if run is None:
            msg = f"Unknown pipeline run: {run_id}"
            raise KeyError(msg)
        return run

    async def schedule(
        self,
        graph: JobGraph,
        executor: JobExecutor,
        **kwargs: Any,
    ) -> PipelineRun:
        """Run a job graph to completion."""
        run = await self.submit(graph, executor, **kwargs)
        return await self.wait(run.id)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active

    async def cancel(self, run_id: str, reason: str = "canceled") -> bool:
        """Cancel a running pipeline. Returns True if a cancellation was issued.

        Pending and eligible jobs are marked canceled immediately; running
        executors receive a task cancellation.
        """
        active = self._active.get(run_id)
        if active is None:
            return False

        async with active.lock:
            if active.cancel_reason is not None:
                return False
            active.cancel_reason = reason
            for job_id, job_run in list(active.run.job_runs.items()):
                if job_run.status in (JobRunStatus.PENDING, JobRunStatus.ELIGIBLE):
                    await self._transition(
                        active, job_id, JobRunStatus.CANCELED, ended_at=_now(), reason=reason
                    )
            for task in active.tasks.values():
                task.cancel()

        logger.info("Pipeline run %s cancellation requested: %s", run_id, reason)
        return True

    async def shutdown(self) -> None:
        """Cancel every active run and wait for their drivers to finish."""
        drivers = [a.driver for a in self._active.values() if a.driver is not None]
        for run_id in list(self._active):
            await self.cancel(run_id, "scheduler shutting down")
        if drivers:
            await asyncio.gather(*drivers, return_exceptions=True)

    async def recover(self, reason: str = "interrupted by engine restart") -> int:
        """Close out runs a previous process left unfinished.

        Their drivers died with that process, so unfinished jobs are marked
        canceled and the run is stamped canceled. Returns the number of runs.
        """
        stale = [
            run
            for run in await self._store.list_unfinished_pipeline_runs()
            if run.id not in self._active
        ]
        for run in stale:
            ended = _now()
            for job_run in run.job_runs.values():
                if not job_run.is_terminal:
                    await self._store.append_job_transition(
                        job_run.model_copy(
                            update={
                                "status": JobRunStatus.CANCELED,
                                "ended_at": ended,
                                "reason": reason,
                            }
                        )
                    )
            await self._store.finish_pipeline_run(
                run.id, completed_at=ended, canceled=True, reason=reason
            )
            logger.warning("Pipeline run %s ('%s') canceled: %s", run.id, run.name, reason)
        return len(stale)

    # ── Driver Loop ──────────────────────────────────────────────────────────

    async def _drive(self, active: _ActiveRun) -> None:
        run = active.run
        try:
            while True:
                async with active.lock:
                    self._prune_finished(active)
                    if active.cancel_reason is None:
                        await self._advance(active)
                    if not active.tasks:
                        break
                    in_flight = list(active.tasks.values())
                await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            if active.cancel_reason is not None:
                async with active.lock:
                    await self._cancel_unfinished(active)
            await self._finish(active)
        except asyncio.CancelledError:
            for task in active.tasks.values():
                task.cancel()
            raise
        except Exception:
            logger.exception("Pipeline run %s driver crashed", run.id)
            raise
        finally:
            self._active.pop(run.id, None)

    def _prune_finished(self, active: _ActiveRun) -> None:
        for job_id, task in list(active.tasks.items()):
            if not task.done():
                continue
            del active.tasks[job_id]
            if not task.cancelled() and task.exception() is not None:
                logger.error(
                    "Job '%s' task crashed (pipeline %s)",
                    job_id,
                    active.run.id,
                    exc_info=task.exception(),
                )

    async def _cancel_unfinished(self, active: _ActiveRun) -> None:
        """Mark jobs still non-terminal after a cancellation as canceled."""
        for job_id, job_run in list(active.run.job_runs.items()):
            if not job_run.is_terminal:
                await self._transition(
                    active,
                    job_id,
                    JobRunStatus.CANCELED,
                    ended_at=_now(),
                    reason=active.cancel_reason,
                )

    async def _advance(self, active: _ActiveRun) -> None:
        """Apply the condition evaluator until no more jobs can be skipped."""
        run = active.run
        while True:
            to_run, to_skip = ready_set(run.graph, run.job_runs)
            for job_id in to_skip:
                job = run.graph.jobs[job_id]
                await self._transition(
                    active,
                    job_id,
                    JobRunStatus.SKIPPED,
                    ended_at=_now(),
                    reason=f"condition '{job.condition.value}' not satisfied by dependencies",
                )
            for job_id in to_run:
                await self._transition(active, job_id, JobRunStatus.ELIGIBLE)
                active.tasks[job_id] = asyncio.create_task(
                    self._run_job(active, run.graph.jobs[job_id]),
                    name=f"job-{run.id[:8]}-{job_id}",
                )
            if not to_skip:
                return

    async def _run_job(self, active: _ActiveRun, job: Job) -> None:
        # Cancellation may arrive in a semaphore or lock wait, not only in the executor
        try:
            await self._attempt(active, job)
        except asyncio.CancelledError:
            async with active.lock:
                if not active.run.job_runs[job.id].is_terminal:
                    await self._transition(
                        active,
                        job.id,
                        JobRunStatus.CANCELED,
                        ended_at=_now(),
                        reason=active.cancel_reason or "canceled",
                    )
            raise

    async def _attempt(self, active: _ActiveRun, job: Job) -> None:
        limit = active.limit if active.limit is not None else contextlib.nullcontext()
        async with limit:
            attempt = 0
            last_failure: str | None = None
            while True:
                attempt += 1
                async with active.lock:
                    if active.run.job_runs[job.id].is_terminal:
                        return
                    await self._transition(
                        active,
                        job.id,
                        JobRunStatus.RUNNING,
                        attempt=attempt,
                        started_at=_now(),
                        ended_at=None,
                        reason=f"retry after: {last_failure}" if last_failure else None,
                    )

                try:
                    output = await self._execute(active, job, attempt)
                except Exception as exc:
                    reason, output = _describe_failure(exc)
                    if attempt <= job.retries:
                        logger.warning(
                            "Job '%s' attempt %d/%d failed (pipeline %s): %s; retrying",
                            job.id,
                            attempt,
                            job.retries + 1,
                            active.run.id,
                            reason,
                        )
                        last_failure = reason
                        continue
                    async with active.lock:
                        await self._transition(
                            active,
                            job.id,
                            JobRunStatus.FAILED,
                            ended_at=_now(),
                            output=output,
                            reason=reason,
                        )
                    return

                async with active.lock:
                    await self._transition(
                        active,
                        job.id,
                        JobRunStatus.SUCCEEDED,
                        ended_at=_now(),
                        output=output,
                        reason=None,
                    )
                return

    async def _execute(self, active: _ActiveRun, job: Job, attempt: int) -> dict[str, Any]:
        ctx = JobContext(
            pipeline_run_id=active.run.id,
            pipeline_name=active.run.name,
            attempt=attempt,
            run_context=active.run.context,
        )
        call = active.executor.execute(job, ctx)
        if job.timeout_seconds is None:
            result = await call
        else:
            try:
                result = await asyncio.wait_for(call, timeout=job.timeout_seconds)
            except asyncio.TimeoutError:
                raise ExecutorError(job.id, f"timed out after {job.timeout_seconds:g}s") from None
        if result is None:
            return {}
        if not isinstance(result, dict):
            return {"result": result}
        return result

    async def _transition(
        self,
        active: _ActiveRun,
        job_id: str,
        status: JobRunStatus,
        **changes: Any,
    ) -> JobRun:
        """Record a job run state change. Caller must hold the run's lock."""
        run = active.run
        updated = run.job_runs[job_id].model_copy(update={"status": status, **changes})
        run.job_runs[job_id] = updated
        await self._store.append_job_transition(updated)
        logger.debug("Job '%s' -> %s (pipeline %s)", job_id, status.value, run.id)

        if status == JobRunStatus.FAILED:
            logger.error("Job '%s' failed (pipeline %s): %s", job_id, run.id, updated.reason)
            self._publish(
                run,
                source_id=f"{run.id}:{job_id}",
                severity=Severity.WARNING,
                title=f"Job '{job_id}' failed in '{run.name}'",
                reason=updated.reason,
                payload={"job_id": job_id, "attempt": updated.attempt},
            )
        return updated

    async def _finish(self, active: _ActiveRun) -> None:
        run = active.run
        run.completed_at = _now()
        run.canceled = active.cancel_reason is not None
        status = run.status
        if status == PipelineRunStatus.FAILED:
            run.reason = run.failure_reason()
        elif status == PipelineRunStatus.CANCELED:
            run.reason = active.cancel_reason
        await self._store.finish_pipeline_run(
            run.id,
            completed_at=run.completed_at,
            canceled=run.canceled,
            reason=run.reason,
        )

        counts: dict[str, int] = {}
        for job_run in run.job_runs.values():
            counts[job_run.status.value] = counts.get(job_run.status.value, 0) + 1
        logger.info(
            "Pipeline run %s ('%s') finished: %s %s",
            run.id,
            run.name,
            status.value,
            counts,
        )

        severity = {
            PipelineRunStatus.SUCCEEDED: Severity.INFO,
            PipelineRunStatus.FAILED: Severity.ERROR,
            PipelineRunStatus.CANCELED: Severity.WARNING,
        }.get(status, Severity.INFO)
        self._publish(
            run,
            source_id=run.id,
            severity=severity,
            title=f"Pipeline '{run.name}' {status.value}",
            reason=run.reason,
            payload={"status": status.value, "kind": run.kind.value, "jobs": counts},
        )

    def _publish(
        self,
        run: PipelineRun,
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
                source_kind=SourceKind.PIPELINE_RUN,
                severity=severity,
                title=title,
                reason=reason,
                is_production=bool(run.context.get("is_production", False)),
                ordering_key=run.id,
                payload={"pipeline_run_id": run.id, "parent_id": run.parent_id, **payload},
            )
        )


# ── Helpers ──────────────────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _describe_failure(exc: Exception) -> tuple[str, dict[str, Any]]:
    """Turn an executor exception into (reason, output)."""
    if isinstance(exc, ExecutorError):
        return exc.reason, exc.output
    return f"{type(exc).__name__}: {exc}", {}
