"""Error taxonomy for the orchestration engine.

Only ``GraphError`` is ever raised to a caller submitting work. Every other
error is contained at the level it happens (job, stage, rollback, delivery)
and surfaced as state with a human-readable reason.
"""

from __future__ import annotations


class ConveyorError(Exception):
    """Base class for all engine errors."""


class GraphError(ConveyorError):
    """A job graph is malformed (unknown dependency, cycle, duplicate id)."""

    def __init__(self, message: str, *, jobs: list[str] | tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.jobs = tuple(jobs)


class ExecutorError(ConveyorError):
    """A job's external action failed."""

    def __init__(self, job_id: str, message: str, *, output: dict | None = None) -> None:
        super().__init__(f"[{job_id}] {message}")
        self.job_id = job_id
        self.reason = message
        self.output = output or {}


class GateError(ConveyorError):
    """An approval requirement was not met, was rejected, or timed out."""

    def __init__(self, stage_id: str, message: str) -> None:
        super().__init__(message)
        self.stage_id = stage_id


class RollbackStrategyUnavailable(ConveyorError):
    """No compensating action can be executed for a failed stage."""

    def __init__(self, stage_id: str, tried: list[str]) -> None:
        tried_str = ", ".join(tried) if tried else "none configured"
        super().__init__(
            f"No executable rollback strategy for stage {stage_id} (tried: {tried_str})"
        )
        self.stage_id = stage_id
        self.tried = list(tried)


class DeliveryError(ConveyorError):
    """A notification channel could not deliver a payload."""

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel}: {message}")
        self.channel = channel
