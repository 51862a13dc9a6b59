"""Integration tests for the HTTP query and approval surface."""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from conveyor.config import EngineConfig
from conveyor.definitions import parse_definition
from conveyor.errors import ExecutorError
from conveyor.orchestrator import Orchestrator
from conveyor.pipeline.models import Job
from conveyor.pipeline.scheduler import JobContext
from conveyor.server import create_app


class ChangeSetExecutor:
    """Fails every job of the change sets listed in ``failing``."""

    def __init__(self):
        self.failing: set[str] = set()

    async def execute(self, job: Job, context: JobContext) -> dict:
        if context.run_context.get("change_set_id") in self.failing:
            raise ExecutorError(job.id, "smoke test failed")
        return {"ok": True}


DEFINITION = {
    "name": "web",
    "jobs": {"build": {"action": "build"}, "deploy": {"action": "deploy", "needs": ["build"]}},
    "stages": ["dev", {"name": "uat", "approval": "manual_single"}],
}


@pytest.fixture
def executor():
    return ChangeSetExecutor()


@pytest.fixture
def client(tmp_path, executor):
    config = EngineConfig()
    config.store.path = str(tmp_path / "server.db")
    orchestrator = Orchestrator(
        config, executor=executor, definition=parse_definition(DEFINITION)
    )
    with TestClient(create_app(orchestrator)) as c:
        yield c


def poll(client: TestClient, url: str, predicate, timeout: float = 5.0) -> dict:
    """GET ``url`` until ``predicate(body)`` holds."""
    deadline = time.monotonic() + timeout
    while True:
        resp = client.get(url)
        if resp.status_code == 200 and predicate(resp.json()):
            return resp.json()
        if time.monotonic() > deadline:
            raise AssertionError(f"{url} never satisfied predicate: {resp.text}")
        time.sleep(0.02)


def last_stage_is(status: str):
    return lambda body: body["attempts"] and body["attempts"][-1]["status"] == status


def start(client: TestClient, change_set_id: str) -> dict:
    resp = client.post("/promotions", json={"change_set": {"id": change_set_id}})
    assert resp.status_code == 201
    return resp.json()


class TestQueries:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "definition": "web"}

    def test_unknown_ids(self, client):
        assert client.get("/runs/nope").status_code == 404
        assert client.get("/promotions/nope").status_code == 404
        assert client.post("/stages/nope/approve", json={"approver_id": "a"}).status_code == 404
        assert client.post("/promotions/nope/resubmit").status_code == 404

    def test_pipeline_run_lookup(self, client):
        start(client, "cs-1")
        body = poll(client, "/promotions/cs-1", last_stage_is("awaiting_approval"))

        run_id = body["attempts"][0]["pipeline_run_id"]
        run = client.get(f"/runs/{run_id}").json()
        assert run["status"] == "succeeded"
        assert run["name"] == "cs-1:dev"
        assert set(run["job_runs"]) == {"build", "deploy"}

    def test_recent_failures(self, client, executor):
        executor.failing.add("cs-bad")
        start(client, "cs-bad")
        poll(client, "/promotions/cs-bad", lambda b: b["status"] == "halted")

        body = client.get("/failures", params={"window": "1h"}).json()
        assert body["count"] == 1
        assert body["runs"][0]["name"] == "cs-bad:dev"
        assert body["runs"][0]["reason"] == "build: smoke test failed"

    def test_bad_window(self, client):
        resp = client.get("/failures", params={"window": "whenever"})
        assert resp.status_code == 400


class TestApprovals:
    def test_approve_advances_to_completion(self, client):
        start(client, "cs-1")
        body = poll(client, "/promotions/cs-1", last_stage_is("awaiting_approval"))
        stage_id = body["attempts"][-1]["id"]

        resp = client.post(f"/stages/{stage_id}/approve", json={"approver_id": "alice"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "advanced"

        done = poll(client, "/promotions/cs-1", lambda b: b["status"] == "completed")
        assert [s["name"] for s in done["attempts"]] == ["dev", "uat"]

        again = client.post(f"/stages/{stage_id}/approve", json={"approver_id": "bob"})
        assert again.status_code == 409

    def test_reject(self, client):
        start(client, "cs-1")
        body = poll(client, "/promotions/cs-1", last_stage_is("awaiting_approval"))
        stage_id = body["attempts"][-1]["id"]

        resp = client.post(
            f"/stages/{stage_id}/reject", json={"approver_id": "bob", "reason": "not yet"}
        )
        assert resp.status_code == 200
        assert resp.json()["reason"] == "rejected by bob: not yet"
        assert client.get("/promotions/cs-1").json()["status"] == "halted"

    def test_empty_approver_rejected(self, client):
        start(client, "cs-1")
        body = poll(client, "/promotions/cs-1", last_stage_is("awaiting_approval"))
        stage_id = body["attempts"][-1]["id"]

        resp = client.post(f"/stages/{stage_id}/approve", json={"approver_id": ""})
        assert resp.status_code == 422


class TestPromotionControl:
    def test_resubmit_after_failure(self, client, executor):
        executor.failing.add("cs-1")
        promotion = start(client, "cs-1")
        poll(client, "/promotions/cs-1", lambda b: b["status"] == "halted")

        executor.failing.clear()
        resp = client.post(f"/promotions/{promotion['id']}/resubmit")
        assert resp.status_code == 200
        assert resp.json()["attempt"] == 2

        body = poll(client, "/promotions/cs-1", last_stage_is("awaiting_approval"))
        assert [(s["name"], s["status"]) for s in body["attempts"]] == [
            ("dev", "halted"),
            ("dev", "advanced"),
            ("uat", "awaiting_approval"),
        ]

    def test_resubmit_active_promotion_conflicts(self, client):
        promotion = start(client, "cs-1")
        poll(client, "/promotions/cs-1", last_stage_is("awaiting_approval"))
        assert client.post(f"/promotions/{promotion['id']}/resubmit").status_code == 409

    def test_cancel_awaiting_stage(self, client):
        start(client, "cs-1")
        body = poll(client, "/promotions/cs-1", last_stage_is("awaiting_approval"))
        stage_id = body["attempts"][-1]["id"]

        resp = client.post(f"/stages/{stage_id}/cancel", json={"reason": "superseded"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "halted"
        assert client.post(f"/stages/{stage_id}/cancel", json={}).status_code == 409

    def test_abandon(self, client):
        promotion = start(client, "cs-1")
        poll(client, "/promotions/cs-1", last_stage_is("awaiting_approval"))

        resp = client.post(f"/promotions/{promotion['id']}/abandon", json={"reason": "pulled"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "abandoned"
        assert client.post(f"/promotions/{promotion['id']}/abandon", json={}).status_code == 409
        assert client.post("/promotions/nope/abandon", json={}).status_code == 404


class TestWithoutDefinition:
    def test_start_requires_stages(self, tmp_path):
        config = EngineConfig()
        config.store.path = str(tmp_path / "bare.db")
        with TestClient(create_app(Orchestrator(config))) as c:
            resp = c.post("/promotions", json={"change_set": {"id": "cs-1"}})
            assert resp.status_code == 400
            assert c.get("/health").json()["definition"] is None
