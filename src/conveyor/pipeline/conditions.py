"""Condition evaluator — decides which pending jobs may run.

All functions here are pure: they read the graph and the current job run
states and return the same answer for the same inputs. The scheduler calls
``ready_set`` after every state change.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping

from conveyor.pipeline.models import Job, JobCondition, JobGraph, JobRun, JobRunStatus


class Decision(str, Enum):
    """Outcome of evaluating one job against its dependencies."""

    WAIT = "wait"  # Some dependency is not terminal yet
    RUN = "run"  # Condition satisfied
    SKIP = "skip"  # Condition can never be satisfied


def decide(job: Job, runs: Mapping[str, JobRun]) -> Decision:
    """Evaluate a job's run condition against its dependencies' states.

    - ``success``: every dependency succeeded
    - ``failure``: at least one dependency failed
    - ``always``: every dependency is terminal, regardless of outcome

    A ``failure`` job without dependencies can never fire and is skipped.
    """
    statuses: list[JobRunStatus] = []
    for dep in sorted(job.depends_on):
        run = runs.get(dep)
        if run is None or not run.is_terminal:
            return Decision.WAIT
        statuses.append(run.status)

    match job.condition:
        case JobCondition.ALWAYS:
            return Decision.RUN
        case JobCondition.SUCCESS:
            if all(s == JobRunStatus.SUCCEEDED for s in statuses):
                return Decision.RUN
            return Decision.SKIP
        case JobCondition.FAILURE:
            if any(s == JobRunStatus.FAILED for s in statuses):
                return Decision.RUN
            return Decision.SKIP
    return Decision.SKIP


def eligible(job: Job, runs: Mapping[str, JobRun]) -> bool:
    """True if ``job`` may be dispatched now."""
    return decide(job, runs) == Decision.RUN


def ready_set(graph: JobGraph, runs: Mapping[str, JobRun]) -> tuple[list[str], list[str]]:
    """Compute (eligible job ids, job ids to skip) over all pending jobs.

    Only jobs whose run is still pending are considered. Both lists are
    sorted so repeated evaluation yields identical results.
    """
    to_run: list[str] = []
    to_skip: list[str] = []
    for job_id in sorted(graph.jobs):
        run = runs.get(job_id)
        if run is not None and run.status != JobRunStatus.PENDING:
            continue
        match decide(graph.jobs[job_id], runs):
            case Decision.RUN:
                to_run.append(job_id)
            case Decision.SKIP:
                to_skip.append(job_id)
    return to_run, to_skip
