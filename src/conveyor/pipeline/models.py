"""Job graph and pipeline run models.

Key exports:
    Definition models: Job, JobGraph
    Runtime state models: JobRun, PipelineRun
    Enums: JobCondition, JobRunStatus, PipelineRunStatus, RunKind
    derive_status — computes a run's status from its job runs
"""

from __future__ import annotations

import re
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

from conveyor.errors import GraphError

# ── Enums ────────────────────────────────────────────────────────────────────


class JobCondition(str, Enum):
    """When a job runs relative to the outcome of its dependencies."""

    SUCCESS = "success"
    FAILURE = "failure"
    ALWAYS = "always"


class JobRunStatus(str, Enum):
    """Job run lifecycle states."""

    PENDING = "pending"
    ELIGIBLE = "eligible"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"


TERMINAL_JOB_STATUSES = frozenset(
    {
        JobRunStatus.SUCCEEDED,
        JobRunStatus.FAILED,
        JobRunStatus.SKIPPED,
        JobRunStatus.CANCELED,
    }
)


class PipelineRunStatus(str, Enum):
    """Pipeline run lifecycle states. Always derived, never stored."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class RunKind(str, Enum):
    """What a pipeline run was scheduled for."""

    DEPLOY = "deploy"
    ROLLBACK = "rollback"


JOB_ID_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9_.-]*$")


# ── Definition Models ────────────────────────────────────────────────────────


class Job(BaseModel):
    """A single unit of executable work. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    id: str
    depends_on: frozenset[str] = frozenset()
    condition: JobCondition = JobCondition.SUCCESS
    action: str = ""  # Opaque reference resolved by the executor
    params: dict[str, Any] = {}
    timeout_seconds: float | None = Field(None, gt=0)
    retries: int = Field(0, ge=0)
    required: bool = True  # False = failure does not fail the pipeline run

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_depends_on(cls, v: Any) -> Any:
        if v is None:
            return frozenset()
        if isinstance(v, str):
            return frozenset({v})
        return frozenset(v)

    @model_validator(mode="after")
    def validate_job(self) -> Job:
        if not JOB_ID_PATTERN.match(self.id):
            msg = f"Job ID '{self.id}' must match pattern {JOB_ID_PATTERN.pattern}"
            raise ValueError(msg)
        return self


class JobGraph(BaseModel):
    """The DAG of all jobs for one pipeline definition.

    Validated at construction: every dependency resolves to a job in the
    graph and there are no cycles. Violations raise ``GraphError``.
    """

    model_config = ConfigDict(frozen=True)

    jobs: dict[str, Job] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_graph(self) -> JobGraph:
        for key, job in self.jobs.items():
            if key != job.id:
                raise GraphError(f"Job keyed as '{key}' declares id '{job.id}'", jobs=[key])

        unknown: list[str] = []
        for job in self.jobs.values():
            for dep in sorted(job.depends_on):
                if dep not in self.jobs:
                    unknown.append(f"{job.id} -> {dep}")
        if unknown:
            raise GraphError(
                f"Unknown dependencies: {', '.join(unknown)}. Known jobs: {sorted(self.jobs)}",
                jobs=[u.split(" -> ")[0] for u in unknown],
            )

        order = _kahn_order(self.jobs)
        if len(order) != len(self.jobs):
            stuck = sorted(set(self.jobs) - set(order))
            raise GraphError(f"Job graph has a cycle. Stuck jobs: {stuck}", jobs=stuck)
        return self

    @classmethod
    def from_jobs(cls, jobs: Iterable[Job]) -> JobGraph:
        """Build a graph from a list of jobs, rejecting duplicate ids."""
        jobs = list(jobs)
        ids = [j.id for j in jobs]
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        if dupes:
            raise GraphError(f"Duplicate job IDs: {dupes}", jobs=dupes)
        return cls(jobs={j.id: j for j in jobs})

    def get(self, job_id: str) -> Job | None:
        return self.jobs.get(job_id)

    def roots(self) -> list[str]:
        """Jobs with no dependencies, sorted."""
        return sorted(j.id for j in self.jobs.values() if not j.depends_on)

    def dependents(self, job_id: str) -> list[str]:
        """Jobs that directly depend on ``job_id``, sorted."""
        return sorted(j.id for j in self.jobs.values() if job_id in j.depends_on)

    def topological_order(self) -> list[str]:
        """Deterministic topological order (ties broken by job id)."""
        return _kahn_order(self.jobs)


# ── Runtime State Models ─────────────────────────────────────────────────────


class JobRun(BaseModel):
    """Runtime state of one job within one pipeline run."""

    job_id: str
    pipeline_run_id: str
    status: JobRunStatus = JobRunStatus.PENDING
    attempt: int = 0
    started_at: datetime | None = None
    ended_at: datetime | None = None
    output: dict[str, Any] = {}
    reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class PipelineRun(BaseModel):
    """One execution of a job graph. Status is derived from the job runs."""

    id: str
    name: str = "pipeline"
    graph: JobGraph
    job_runs: dict[str, JobRun] = {}
    kind: RunKind = RunKind.DEPLOY
    parent_id: str | None = None  # Stage ID or rollback action ID
    context: dict[str, Any] = {}
    canceled: bool = False
    reason: str | None = None

    created_at: datetime | None = None
    completed_at: datetime | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> PipelineRunStatus:
        return derive_status(self.graph, self.job_runs, canceled=self.canceled)

    def failure_reason(self) -> str | None:
        """Human-readable reason for a non-successful run."""
        if self.reason:
            return self.reason
        failed = [r for r in self.job_runs.values() if r.status == JobRunStatus.FAILED]
        if not failed:
            return None
        parts = [f"{r.job_id}: {r.reason or 'failed'}" for r in sorted(failed, key=lambda r: r.job_id)]
        return "; ".join(parts)


# ── Helpers ──────────────────────────────────────────────────────────────────


def derive_status(
    graph: JobGraph,
    job_runs: dict[str, JobRun],
    *,
    canceled: bool = False,
) -> PipelineRunStatus:
    """Compute a pipeline run's status from its latest job run states.

    Running while any job is non-terminal. Canceled when the run was canceled
    and at least one job ended canceled. Failed when a required job failed.
    Otherwise succeeded: skipped jobs never count as failures.
    """
    for job_id in graph.jobs:
        run = job_runs.get(job_id)
        if run is None or not run.is_terminal:
            return PipelineRunStatus.RUNNING

    if canceled and any(r.status == JobRunStatus.CANCELED for r in job_runs.values()):
        return PipelineRunStatus.CANCELED

    for job_id, run in job_runs.items():
        job = graph.get(job_id)
        if run.status == JobRunStatus.FAILED and (job is None or job.required):
            return PipelineRunStatus.FAILED
    return PipelineRunStatus.SUCCEEDED


def _kahn_order(jobs: dict[str, Job]) -> list[str]:
    """Topological order via Kahn's algorithm. Shorter than ``jobs`` on a cycle."""
    indeg = {job_id: len(job.depends_on) for job_id, job in jobs.items()}
    children: dict[str, list[str]] = {job_id: [] for job_id in jobs}
    for job in jobs.values():
        for dep in job.depends_on:
            if dep in children:
                children[dep].append(job.id)

    queue = deque(sorted(j for j, d in indeg.items() if d == 0))
    order: list[str] = []
    while queue:
        node = queue.popleft()
        order.append(node)
        for child in sorted(children[node]):
            indeg[child] -= 1
            if indeg[child] == 0:
                queue.append(child)
    return order
