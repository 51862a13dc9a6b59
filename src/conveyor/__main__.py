"""Conveyor CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from conveyor.config import EngineConfig, load_config
from conveyor.definitions import PipelineDefinition, load_definition
from conveyor.errors import GraphError

# ── Default templates for `conveyor init` ────────────────────────────────────

_DEFAULT_CONFIG = """\
# conveyor.yaml — engine configuration

scheduler:
  max_parallel: 4

store:
  path: .conveyor/conveyor.db
  retention_days: 90

notifications:
  dedup_window: 1h
  flush_interval: 1m
  max_attempts: 3
  quiet_hours:
    enabled: false
    start: "08:00"
    end: "20:00"
    timezone: UTC
  channels: []
  # - kind: chat
  #   type: webhook
  #   url: https://chat.example.com/hooks/deployments

rollback:
  commands: {}
  # redeploy_previous: ./scripts/redeploy.sh

server:
  host: 127.0.0.1
  port: 8080
"""

_DEFAULT_PIPELINE = """\
# pipeline.yaml — jobs and promotion stages for {project_name}

name: {project_name}

jobs:
  build:
    run: echo "building"
  test:
    needs: [build]
    run: echo "testing"
    timeout: 10m
  report-failure:
    needs: [test]
    if: failure
    action: noop

stages:
  - name: dev
  - name: test
  - name: uat
    approval: manual_single
  - name: prod
    production: true
    rollback:
      eligible: true
"""


def _init_project(root: Path) -> None:
    """Write a starter conveyor.yaml and pipeline.yaml."""
    config_path = root / "conveyor.yaml"
    pipeline_path = root / "pipeline.yaml"
    for path in (config_path, pipeline_path):
        if path.exists():
            print(f"Error: {path} already exists", file=sys.stderr)
            sys.exit(1)

    root.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_DEFAULT_CONFIG)
    pipeline_path.write_text(_DEFAULT_PIPELINE.format(project_name=root.resolve().name))
    print(f"Created {config_path}")
    print(f"Created {pipeline_path}")


def _load_definition_or_exit(path: Path) -> PipelineDefinition:
    try:
        return load_definition(path)
    except (FileNotFoundError, ValueError, GraphError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _load_config_or_exit(path: Path | None) -> EngineConfig:
    try:
        return load_config(path)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _validate(args: argparse.Namespace) -> None:
    definition = _load_definition_or_exit(args.definition)
    graph = definition.graph
    print(f"Pipeline '{definition.name}': {len(graph.jobs)} jobs")
    for job_id in graph.topological_order():
        job = graph.jobs[job_id]
        needs = ", ".join(sorted(job.depends_on)) or "-"
        print(f"  {job_id:<24} needs: {needs:<24} if: {job.condition.value}")
    if definition.stages:
        print("Stages: " + " → ".join(s.name for s in definition.stages))
    print("OK")


async def _run(definition: PipelineDefinition, config: EngineConfig) -> bool:
    from conveyor.orchestrator import Orchestrator
    from conveyor.pipeline.models import PipelineRunStatus

    orchestrator = Orchestrator(config, definition=definition)
    await orchestrator.start()
    try:
        run = await orchestrator.run_pipeline(definition.graph, name=definition.name)
    finally:
        await orchestrator.stop()

    for job_id in definition.graph.topological_order():
        job_run = run.job_runs[job_id]
        line = f"  {job_id:<24} {job_run.status.value}"
        if job_run.reason:
            line += f"  ({job_run.reason})"
        print(line)
    print(f"Pipeline run {run.id}: {run.status.value}")
    return run.status == PipelineRunStatus.SUCCEEDED


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="conveyor",
        description="Conveyor — deployment pipeline orchestration engine",
    )
    subparsers = parser.add_subparsers(dest="command")

    # conveyor init
    init_parser = subparsers.add_parser("init", help="Write starter config and pipeline files")
    init_parser.add_argument(
        "--root",
        type=Path,
        default=Path.cwd(),
        help="Directory to write into (default: current directory)",
    )

    # conveyor validate
    validate_parser = subparsers.add_parser("validate", help="Validate a pipeline definition")
    validate_parser.add_argument("definition", type=Path, help="Path to pipeline.yaml")

    # conveyor run
    run_parser = subparsers.add_parser("run", help="Run a pipeline definition's job graph once")
    run_parser.add_argument("definition", type=Path, help="Path to pipeline.yaml")
    run_parser.add_argument(
        "--max-parallel",
        type=int,
        help="Maximum concurrently running jobs (default: from config, else unbounded)",
    )

    # conveyor serve
    serve_parser = subparsers.add_parser("serve", help="Start the query and approval server")
    serve_parser.add_argument(
        "--definition",
        type=Path,
        help="Pipeline definition whose stages new promotions use",
    )
    serve_parser.add_argument("--host", help="Host to bind to (default: from config)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: from config)")

    for sub in (run_parser, serve_parser):
        sub.add_argument(
            "--config",
            type=Path,
            help="Path to conveyor.yaml (default: built-in defaults)",
        )
        sub.add_argument(
            "--log-level",
            default="INFO",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="Logging level (default: INFO)",
        )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    if args.command == "init":
        _init_project(args.root)
        return

    if args.command == "validate":
        _validate(args)
        return

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    config = _load_config_or_exit(args.config)

    if args.command == "run":
        if args.max_parallel is not None:
            config.scheduler.max_parallel = args.max_parallel if args.max_parallel > 0 else None
        definition = _load_definition_or_exit(args.definition)
        ok = asyncio.run(_run(definition, config))
        sys.exit(0 if ok else 1)

    # serve
    definition = _load_definition_or_exit(args.definition) if args.definition else None

    import uvicorn

    from conveyor.orchestrator import Orchestrator
    from conveyor.server import create_app

    app = create_app(Orchestrator(config, definition=definition))
    uvicorn.run(
        app,
        host=args.host or config.server.host,
        port=args.port or config.server.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
