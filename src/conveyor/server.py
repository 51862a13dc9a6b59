"""HTTP query and approval surface.

Read endpoints expose pipeline runs, promotion status, and recent failures;
write endpoints carry approval signals and promotion control. Unknown ids
map to 404, gate violations to 409.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from pydantic import BaseModel, Field

from conveyor.config import parse_duration
from conveyor.errors import GateError
from conveyor.orchestrator import Orchestrator
from conveyor.pipeline.models import PipelineRun
from conveyor.promotion.models import ChangeSet, Stage

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Request Models ───────────────────────────────────────────────────────────


class StartPromotionRequest(BaseModel):
    change_set: ChangeSet


class ApprovalRequest(BaseModel):
    approver_id: str = Field(min_length=1)


class RejectionRequest(BaseModel):
    approver_id: str = Field(min_length=1)
    reason: str | None = None


class CancelRequest(BaseModel):
    reason: str = "canceled"


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


# ── Queries ──────────────────────────────────────────────────────────────────


@router.get("/runs/{run_id}")
async def get_pipeline_run(run_id: str, orch: Orchestrator = Depends(get_orchestrator)):
    run = await orch.get_pipeline_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Pipeline run {run_id} not found")
    return run.model_dump(mode="json")


@router.get("/promotions/{change_set_id}")
async def get_promotion_status(change_set_id: str, orch: Orchestrator = Depends(get_orchestrator)):
    promotion = await orch.get_promotion_status(change_set_id)
    if promotion is None:
        raise HTTPException(
            status_code=404, detail=f"No promotion found for change set {change_set_id}"
        )
    return promotion.model_dump(mode="json")


@router.get("/failures")
async def list_recent_failures(
    window: str = Query("24h"),
    orch: Orchestrator = Depends(get_orchestrator),
):
    try:
        delta = parse_duration(window)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    runs = await orch.list_recent_failures(delta)
    return {"window": window, "count": len(runs), "runs": [_run_summary(r) for r in runs]}


# ── Promotion Control ────────────────────────────────────────────────────────


@router.post("/promotions", status_code=201)
async def start_promotion(
    body: StartPromotionRequest, orch: Orchestrator = Depends(get_orchestrator)
):
    try:
        promotion = await orch.start_promotion(body.change_set)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return promotion.model_dump(mode="json")


@router.post("/promotions/{promotion_id}/resubmit")
async def resubmit_stage(promotion_id: str, orch: Orchestrator = Depends(get_orchestrator)):
    try:
        stage = await orch.resubmit_stage(promotion_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Promotion {promotion_id} not found") from e
    except GateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _stage_body(stage)


@router.post("/promotions/{promotion_id}/abandon")
async def abandon_promotion(
    promotion_id: str, body: CancelRequest, orch: Orchestrator = Depends(get_orchestrator)
):
    try:
        promotion = await orch.abandon_promotion(promotion_id, body.reason)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=f"Promotion {promotion_id} not found") from e
    except GateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return promotion.model_dump(mode="json")


@router.post("/stages/{stage_id}/approve")
async def approve_stage(
    stage_id: str, body: ApprovalRequest, orch: Orchestrator = Depends(get_orchestrator)
):
    await _require_stage(orch, stage_id)
    try:
        stage = await orch.record_approval(stage_id, body.approver_id)
    except GateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _stage_body(stage)


@router.post("/stages/{stage_id}/reject")
async def reject_stage(
    stage_id: str, body: RejectionRequest, orch: Orchestrator = Depends(get_orchestrator)
):
    await _require_stage(orch, stage_id)
    try:
        stage = await orch.record_rejection(stage_id, body.approver_id, body.reason)
    except GateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _stage_body(stage)


@router.post("/stages/{stage_id}/cancel")
async def cancel_stage(
    stage_id: str, body: CancelRequest, orch: Orchestrator = Depends(get_orchestrator)
):
    await _require_stage(orch, stage_id)
    try:
        stage = await orch.cancel_stage(stage_id, body.reason)
    except GateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    return _stage_body(stage)


# ── Helpers ──────────────────────────────────────────────────────────────────


async def _require_stage(orch: Orchestrator, stage_id: str) -> None:
    if await orch.store.get_stage(stage_id) is None:
        raise HTTPException(status_code=404, detail=f"Stage {stage_id} not found")


def _stage_body(stage: Stage) -> dict[str, Any]:
    return stage.model_dump(mode="json")


def _run_summary(run: PipelineRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "name": run.name,
        "kind": run.kind.value,
        "status": run.status.value,
        "parent_id": run.parent_id,
        "reason": run.failure_reason(),
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }


# ── App ──────────────────────────────────────────────────────────────────────


def create_app(orchestrator: Orchestrator, *, manage_lifecycle: bool = True) -> FastAPI:
    """Create the FastAPI application around an orchestrator.

    With ``manage_lifecycle`` the app starts and stops the orchestrator in
    its lifespan; otherwise the caller owns it.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await orchestrator.start()
        yield
        if manage_lifecycle:
            await orchestrator.stop()

    app = FastAPI(
        title="Conveyor",
        version="0.1.0",
        description="Deployment pipeline orchestration engine",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.include_router(router)

    @app.get("/health")
    async def health():
        definition = orchestrator.definition
        return {"status": "ok", "definition": definition.name if definition else None}

    return app
