"""Tests for pipeline definition parsing."""

from __future__ import annotations

import pytest
import yaml

from conveyor.definitions import load_definition, parse_definition, parse_graph
from conveyor.errors import GraphError
from conveyor.pipeline.models import JobCondition
from conveyor.promotion.models import GateKind, RollbackStrategy

EXAMPLE = """
name: web
jobs:
  build:
    run: make build
  test:
    needs: [build]
    run: make test
    timeout: 10m
    retries: 1
  lint: make lint
  report:
    needs: [test]
    if: failure
    action: noop
stages:
  - dev
  - name: uat
    approval: {kind: manual_quorum, quorum: 2, timeout: 4h}
  - name: prod
    production: true
    approval: manual_single
    rollback: {eligible: true, strategies: [feature_flag_disable]}
    jobs:
      deploy:
        run: ./deploy.sh prod
"""


class TestParseDefinition:
    @pytest.fixture
    def definition(self):
        return parse_definition(yaml.safe_load(EXAMPLE))

    def test_jobs(self, definition):
        graph = definition.graph
        assert definition.name == "web"
        assert graph.topological_order() == ["build", "lint", "test", "report"]

        test = graph.jobs["test"]
        assert test.action == "shell"
        assert test.params == {"run": "make test"}
        assert test.depends_on == frozenset({"build"})
        assert test.timeout_seconds == 600
        assert test.retries == 1

        assert graph.jobs["lint"].params["run"] == "make lint"
        assert graph.jobs["report"].condition == JobCondition.FAILURE
        assert graph.jobs["report"].action == "noop"

    def test_stages(self, definition):
        dev, uat, prod = definition.stages
        assert dev.gate.kind == GateKind.AUTO
        assert dev.graph == definition.graph
        assert dev.rollback_eligible is False

        assert uat.gate.kind == GateKind.MANUAL_QUORUM
        assert uat.gate.required_approvals == 2
        assert uat.gate.approval_timeout_seconds == 4 * 3600

        assert prod.is_production is True
        assert prod.gate.kind == GateKind.MANUAL_SINGLE
        assert prod.rollback_eligible is True
        assert prod.rollback_strategies == [RollbackStrategy.FEATURE_FLAG_DISABLE]
        assert list(prod.graph.jobs) == ["deploy"]

    def test_allow_failure_and_env(self):
        graph = parse_graph(
            {
                "lint": {"run": "ruff .", "allow_failure": True, "env": {"CI": "1"}, "cwd": "src"},
            }
        )
        job = graph.jobs["lint"]
        assert job.required is False
        assert job.params == {"run": "ruff .", "env": {"CI": "1"}, "cwd": "src"}

    def test_default_name(self):
        definition = parse_definition({"jobs": {"build": "make"}}, default_name="api")
        assert definition.name == "api"
        assert definition.stages == []


class TestInvalidDefinitions:
    def test_missing_jobs(self):
        with pytest.raises(ValueError, match="requires a 'jobs' mapping"):
            parse_definition({"name": "web"})

    def test_empty_jobs(self):
        with pytest.raises(ValueError, match="non-empty mapping"):
            parse_graph({})

    def test_unknown_job_keys(self):
        with pytest.raises(ValueError, match=r"unknown keys: \['image'\]"):
            parse_graph({"build": {"run": "make", "image": "python:3.12"}})

    def test_job_without_action(self):
        with pytest.raises(ValueError, match="needs an 'action' or a 'run'"):
            parse_graph({"build": {"retries": 2}})

    def test_unknown_dependency_is_graph_error(self):
        with pytest.raises(GraphError, match="Unknown dependencies"):
            parse_graph({"deploy": {"run": "x", "needs": "package"}})

    def test_cycle_is_graph_error(self):
        with pytest.raises(GraphError, match="cycle"):
            parse_graph({"a": {"run": "x", "needs": "b"}, "b": {"run": "y", "needs": "a"}})

    def test_duplicate_stage_names(self):
        with pytest.raises(ValueError, match="Duplicate stage names"):
            parse_definition({"jobs": {"build": "make"}, "stages": ["dev", "dev"]})

    def test_stage_needs_name(self):
        with pytest.raises(ValueError, match="Stage #2 needs a 'name'"):
            parse_definition({"jobs": {"build": "make"}, "stages": ["dev", {"production": True}]})


class TestLoadDefinition:
    def test_load_from_file(self, tmp_path):
        path = tmp_path / "pipeline.yaml"
        path.write_text(EXAMPLE)
        definition = load_definition(path)
        assert definition.name == "web"
        assert len(definition.stages) == 3

    def test_name_defaults_to_file_stem(self, tmp_path):
        path = tmp_path / "billing.yaml"
        path.write_text("jobs:\n  build: make\n")
        assert load_definition(path).name == "billing"

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="Pipeline definition not found"):
            load_definition(tmp_path / "nope.yaml")
