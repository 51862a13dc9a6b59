"""Pipeline definition files.

A small YAML format describing a job graph and the promotion stages it is
deployed through. Everything here is validated into core models before the
engine sees it; ``GraphError`` surfaces a malformed graph at load time.

Example::

    name: web
    jobs:
      build:
        run: make build
      test:
        needs: [build]
        run: make test
        timeout: 10m
        retries: 1
      report:
        needs: [test]
        if: failure
        action: noop
    stages:
      - name: dev
      - name: uat
        approval: {kind: manual_single, timeout: 4h}
      - name: prod
        production: true
        rollback: {eligible: true, strategies: [redeploy_previous]}
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from conveyor.config import parse_duration
from conveyor.pipeline.models import Job, JobCondition, JobGraph
from conveyor.promotion.models import (
    DEFAULT_ROLLBACK_STRATEGIES,
    GateKind,
    GatePolicy,
    RollbackStrategy,
    StageDefinition,
)

logger = logging.getLogger(__name__)

_JOB_KEYS = {
    "action",
    "run",
    "needs",
    "depends_on",
    "if",
    "condition",
    "timeout",
    "retries",
    "required",
    "allow_failure",
    "params",
    "env",
    "cwd",
}


class PipelineDefinition(BaseModel):
    """A loaded definition: the default job graph and its promotion stages."""

    name: str
    graph: JobGraph
    stages: list[StageDefinition] = Field(default_factory=list)


def load_definition(path: Path) -> PipelineDefinition:
    """Load and validate a pipeline definition file.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If the document is malformed.
        GraphError: If the job graph is invalid.
    """
    if not path.exists():
        raise FileNotFoundError(f"Pipeline definition not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    definition = parse_definition(raw, default_name=path.stem)
    logger.info(
        "Loaded pipeline definition '%s': %d jobs, %d stages",
        definition.name,
        len(definition.graph.jobs),
        len(definition.stages),
    )
    return definition


def parse_definition(raw: dict[str, Any], *, default_name: str = "pipeline") -> PipelineDefinition:
    if not isinstance(raw, dict):
        raise ValueError("Pipeline definition must be a mapping")
    if "jobs" not in raw:
        raise ValueError("Pipeline definition requires a 'jobs' mapping")
    graph = parse_graph(raw["jobs"])
    stages = parse_stages(raw.get("stages") or [], default_graph=graph)
    return PipelineDefinition(name=str(raw.get("name") or default_name), graph=graph, stages=stages)


def parse_graph(raw_jobs: dict[str, Any]) -> JobGraph:
    """Build a JobGraph from a ``jobs:`` mapping of job id → job spec."""
    if not isinstance(raw_jobs, dict) or not raw_jobs:
        raise ValueError("'jobs' must be a non-empty mapping of job id to job spec")
    return JobGraph.from_jobs([_parse_job(job_id, spec) for job_id, spec in raw_jobs.items()])


def _parse_job(job_id: str, spec: Any) -> Job:
    if isinstance(spec, str):
        spec = {"run": spec}
    elif spec is None:
        spec = {}
    if not isinstance(spec, dict):
        raise ValueError(f"Job '{job_id}' must be a mapping or a command string")

    unknown = sorted(set(spec) - _JOB_KEYS)
    if unknown:
        raise ValueError(f"Job '{job_id}' has unknown keys: {unknown}")

    params: dict[str, Any] = dict(spec.get("params") or {})
    for key in ("run", "env", "cwd"):
        if key in spec:
            params[key] = spec[key]

    action = spec.get("action") or ("shell" if "run" in spec else None)
    if action is None:
        raise ValueError(f"Job '{job_id}' needs an 'action' or a 'run' command")

    timeout = spec.get("timeout")
    required = spec.get("required", True)
    if spec.get("allow_failure"):
        required = False

    return Job(
        id=str(job_id),
        depends_on=spec.get("needs", spec.get("depends_on")),
        condition=JobCondition(spec.get("if", spec.get("condition", "success"))),
        action=action,
        params=params,
        timeout_seconds=parse_duration(timeout).total_seconds() if timeout is not None else None,
        retries=int(spec.get("retries", 0)),
        required=bool(required),
    )


def parse_stages(raw_stages: list[Any], *, default_graph: JobGraph) -> list[StageDefinition]:
    """Build stage definitions. Stages without their own ``jobs`` reuse the default graph."""
    if not isinstance(raw_stages, list):
        raise ValueError("'stages' must be a list")

    stages: list[StageDefinition] = []
    for index, spec in enumerate(raw_stages):
        if isinstance(spec, str):
            spec = {"name": spec}
        if not isinstance(spec, dict) or not spec.get("name"):
            raise ValueError(f"Stage #{index + 1} needs a 'name'")

        graph = parse_graph(spec["jobs"]) if spec.get("jobs") else default_graph
        rollback = spec.get("rollback") or {}
        strategies = rollback.get("strategies")
        stages.append(
            StageDefinition(
                name=str(spec["name"]),
                graph=graph,
                gate=_parse_gate(spec.get("approval")),
                is_production=bool(spec.get("production", False)),
                rollback_eligible=bool(rollback.get("eligible", False)),
                rollback_strategies=(
                    [RollbackStrategy(s) for s in strategies]
                    if strategies
                    else list(DEFAULT_ROLLBACK_STRATEGIES)
                ),
            )
        )

    names = [s.name for s in stages]
    dupes = sorted({n for n in names if names.count(n) > 1})
    if dupes:
        raise ValueError(f"Duplicate stage names: {dupes}")
    return stages


def _parse_gate(raw: Any) -> GatePolicy:
    """``approval:`` may be omitted, a gate kind string, or a mapping."""
    if raw is None:
        return GatePolicy()
    if isinstance(raw, str):
        return GatePolicy(kind=GateKind(raw))
    if not isinstance(raw, dict):
        raise ValueError(f"Invalid approval gate: {raw!r}")
    timeout = raw.get("timeout")
    return GatePolicy(
        kind=GateKind(raw.get("kind", GateKind.MANUAL_SINGLE.value)),
        quorum=int(raw.get("quorum", 1)),
        approval_timeout_seconds=(
            parse_duration(timeout).total_seconds() if timeout is not None else None
        ),
    )
