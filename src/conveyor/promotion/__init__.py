"""Environment promotion — ordered stages, approval gates, and the promotion engine.

Key exports:
    PromotionEngine — Drives a change set through its stages
    Models: ChangeSet, GatePolicy, StageDefinition, Stage, Promotion, RollbackAction
"""

from conveyor.promotion.engine import PromotionEngine
from conveyor.promotion.models import (
    DEFAULT_ROLLBACK_STRATEGIES,
    Approval,
    ChangeSet,
    GateKind,
    GatePolicy,
    Promotion,
    PromotionStatus,
    RollbackAction,
    RollbackStatus,
    RollbackStrategy,
    Stage,
    StageDefinition,
    StageStatus,
)

__all__ = [
    "DEFAULT_ROLLBACK_STRATEGIES",
    "Approval",
    "ChangeSet",
    "GateKind",
    "GatePolicy",
    "Promotion",
    "PromotionEngine",
    "PromotionStatus",
    "RollbackAction",
    "RollbackStatus",
    "RollbackStrategy",
    "Stage",
    "StageDefinition",
    "StageStatus",
]
