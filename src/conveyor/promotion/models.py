"""Environment promotion models — stage definitions, stage attempts, promotions.

Key exports:
    Definition models: ChangeSet, GatePolicy, StageDefinition
    Runtime state models: Stage, Approval, Promotion, RollbackAction
    Enums: GateKind, StageStatus, PromotionStatus, RollbackStrategy, RollbackStatus
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from conveyor.pipeline.models import JobGraph

# ── Enums ────────────────────────────────────────────────────────────────────


class GateKind(str, Enum):
    AUTO = "auto"
    MANUAL_SINGLE = "manual_single"
    MANUAL_QUORUM = "manual_quorum"


class StageStatus(str, Enum):
    """Stage lifecycle: pending → running → (awaiting_approval) → advanced | halted."""

    PENDING = "pending"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    ADVANCED = "advanced"
    HALTED = "halted"


TERMINAL_STAGE_STATUSES = frozenset({StageStatus.ADVANCED, StageStatus.HALTED})


class PromotionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    HALTED = "halted"  # A stage halted; resubmission may resume it
    ABANDONED = "abandoned"


class RollbackStrategy(str, Enum):
    REDEPLOY_PREVIOUS = "redeploy_previous"
    DESTRUCTIVE_REMOVAL = "destructive_removal"
    FEATURE_FLAG_DISABLE = "feature_flag_disable"


DEFAULT_ROLLBACK_STRATEGIES = [
    RollbackStrategy.REDEPLOY_PREVIOUS,
    RollbackStrategy.DESTRUCTIVE_REMOVAL,
    RollbackStrategy.FEATURE_FLAG_DISABLE,
]


class RollbackStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ── Definition Models ────────────────────────────────────────────────────────


class ChangeSet(BaseModel):
    """The unit of change being promoted through environments."""

    id: str
    description: str = ""
    reversible_deltas: list[str] = []  # Components that can be removed on rollback
    feature_flag: str | None = None  # Flag key guarding the change
    metadata: dict[str, Any] = {}


class GatePolicy(BaseModel):
    """Approval policy guarding advancement out of a stage."""

    kind: GateKind = GateKind.AUTO
    quorum: int = Field(1, ge=1)
    approval_timeout_seconds: float | None = Field(None, gt=0)

    @model_validator(mode="after")
    def validate_gate(self) -> GatePolicy:
        if self.kind == GateKind.MANUAL_SINGLE and self.quorum != 1:
            msg = "manual_single gates require exactly one approval"
            raise ValueError(msg)
        return self

    @property
    def required_approvals(self) -> int:
        return 0 if self.kind == GateKind.AUTO else self.quorum


class StageDefinition(BaseModel):
    """Template for one position in a promotion (one environment)."""

    name: str
    graph: JobGraph
    gate: GatePolicy = Field(default_factory=GatePolicy)
    is_production: bool = False
    rollback_eligible: bool = False
    rollback_strategies: list[RollbackStrategy] = Field(
        default_factory=lambda: list(DEFAULT_ROLLBACK_STRATEGIES)
    )


# ── Runtime State Models ─────────────────────────────────────────────────────


class Approval(BaseModel):
    stage_id: str
    approver_id: str
    approved: bool = True
    reason: str | None = None
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Stage(BaseModel):
    """One attempt to advance a change set through one environment."""

    id: str
    promotion_id: str
    name: str
    order: int
    attempt: int = 1
    gate: GatePolicy = Field(default_factory=GatePolicy)
    is_production: bool = False
    rollback_eligible: bool = False
    rollback_strategies: list[RollbackStrategy] = Field(
        default_factory=lambda: list(DEFAULT_ROLLBACK_STRATEGIES)
    )
    pipeline_run_id: str | None = None
    status: StageStatus = StageStatus.PENDING
    approvals: list[Approval] = []
    reason: str | None = None

    created_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STAGE_STATUSES

    @property
    def approver_ids(self) -> set[str]:
        return {a.approver_id for a in self.approvals if a.approved}

    @property
    def position_key(self) -> str:
        """Stable identifier for this stage position across attempts."""
        return f"{self.promotion_id}/{self.name}"


class Promotion(BaseModel):
    """The ordered sequence of stages a change set passes through."""

    id: str
    change_set: ChangeSet
    stages: list[StageDefinition] = Field(min_length=1)
    attempts: list[Stage] = []  # Audit trail, oldest first
    status: PromotionStatus = PromotionStatus.ACTIVE
    current_order: int = 0
    reason: str | None = None

    created_at: datetime | None = None
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def validate_unique_stage_names(self) -> Promotion:
        names = [s.name for s in self.stages]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            msg = f"Duplicate stage names: {dupes}"
            raise ValueError(msg)
        return self

    def current_stage(self) -> Stage | None:
        """Latest attempt at the current position."""
        for stage in reversed(self.attempts):
            if stage.order == self.current_order:
                return stage
        return None

    def attempts_at(self, order: int) -> list[Stage]:
        return [s for s in self.attempts if s.order == order]


class RollbackAction(BaseModel):
    """A compensating pipeline run triggered after a stage failure."""

    id: str
    target_stage_id: str
    strategy: RollbackStrategy
    pipeline_run_id: str | None = None
    status: RollbackStatus = RollbackStatus.PENDING
    reason: str | None = None

    created_at: datetime | None = None
    completed_at: datetime | None = None
