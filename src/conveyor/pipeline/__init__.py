"""Job graphs, the condition evaluator, and the execution scheduler.

Key exports:
    Scheduler — Drives a JobGraph to completion as a PipelineRun
    JobExecutor, JobContext — Executor integration point
    Models: Job, JobGraph, JobRun, PipelineRun and their status enums
"""

from conveyor.pipeline.conditions import Decision, decide, eligible, ready_set
from conveyor.pipeline.models import (
    Job,
    JobCondition,
    JobGraph,
    JobRun,
    JobRunStatus,
    PipelineRun,
    PipelineRunStatus,
    RunKind,
    derive_status,
)
from conveyor.pipeline.scheduler import JobContext, JobExecutor, Scheduler

__all__ = [
    "Decision",
    "Job",
    "JobCondition",
    "JobContext",
    "JobExecutor",
    "JobGraph",
    "JobRun",
    "JobRunStatus",
    "PipelineRun",
    "PipelineRunStatus",
    "RunKind",
    "Scheduler",
    "decide",
    "derive_status",
    "eligible",
    "ready_set",
]
