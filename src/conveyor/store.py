"""State store — SQLite persistence for pipeline runs, stages, promotions, rollbacks.

Job run and stage state is append-only: every transition inserts a row and
readers rebuild current state from the latest row per job/stage. Pipeline run
status is never stored; it is derived from the persisted job runs on read.

Key exports:
    StateStore — All CRUD operations for pipeline_runs, job_run_transitions,
        promotions, stages, stage_transitions, approvals, rollback_actions.
"""

from __future__ import annotations

import asyncio
import json
import logging
import weakref
from datetime import datetime, timedelta, timezone
from typing import Any

import aiosqlite

from conveyor.pipeline.models import (
    JobGraph,
    JobRun,
    JobRunStatus,
    PipelineRun,
    PipelineRunStatus,
    RunKind,
)
from conveyor.promotion.models import (
    Approval,
    ChangeSet,
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

logger = logging.getLogger(__name__)


class StateStore:
    """SQLite-backed source of truth for the orchestration engine.

    Takes an already-open aiosqlite connection. Call ``initialize()`` to
    create tables. Writes are serialized per pipeline run / stage so
    unrelated pipelines proceed in parallel.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db
        # Entries vanish once no writer holds or awaits the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    async def initialize(self) -> None:
        """Create all tables if they don't exist."""
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("State store tables initialized")

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ── Pipeline Runs ────────────────────────────────────────────────────────

    async def create_pipeline_run(self, run: PipelineRun) -> None:
        """Insert a new pipeline run and the initial state of each job run."""
        async with self._lock(run.id):
            await self._db.execute(
                """
                INSERT INTO pipeline_runs (
                    id, name, kind, parent_id, graph, context,
                    canceled, reason, created_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.id,
                    run.name,
                    run.kind.value,
                    run.parent_id,
                    run.graph.model_dump_json(),
                    json.dumps(run.context),
                    1 if run.canceled else 0,
                    run.reason,
                    _dt_to_str(run.created_at),
                    _dt_to_str(run.completed_at),
                ),
            )
            for job_run in run.job_runs.values():
                await self._insert_job_transition(job_run)
            await self._db.commit()

    async def append_job_transition(self, job_run: JobRun) -> None:
        """Record a job run state change."""
        async with self._lock(job_run.pipeline_run_id):
            await self._insert_job_transition(job_run)
            await self._db.commit()

    async def _insert_job_transition(self, job_run: JobRun) -> None:
        await self._db.execute(
            """
            INSERT INTO job_run_transitions (
                pipeline_run_id, job_id, status, attempt,
                started_at, ended_at, output, reason, recorded_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_run.pipeline_run_id,
                job_run.job_id,
                job_run.status.value,
                job_run.attempt,
                _dt_to_str(job_run.started_at),
                _dt_to_str(job_run.ended_at),
                json.dumps(job_run.output, default=str),
                job_run.reason,
                _dt_to_str(datetime.now(timezone.utc)),
            ),
        )

    async def finish_pipeline_run(
        self,
        run_id: str,
        *,
        completed_at: datetime,
        canceled: bool = False,
        reason: str | None = None,
    ) -> None:
        """Stamp a pipeline run as finished."""
        async with self._lock(run_id):
            await self._db.execute(
                "UPDATE pipeline_runs SET completed_at = ?, canceled = ?, reason = ? WHERE id = ?",
                (_dt_to_str(completed_at), 1 if canceled else 0, reason, run_id),
            )
            await self._db.commit()

    async def get_pipeline_run(self, run_id: str) -> PipelineRun | None:
        """Fetch a pipeline run, rebuilding job runs from their latest transitions."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return await self._hydrate_pipeline_run(row)

    async def get_job_run_history(self, run_id: str, job_id: str) -> list[JobRun]:
        """All recorded transitions for one job, oldest first."""
        cursor = await self._db.execute(
            "SELECT * FROM job_run_transitions WHERE pipeline_run_id = ? AND job_id = ? "
            "ORDER BY seq",
            (run_id, job_id),
        )
        rows = await cursor.fetchall()
        return [_row_to_job_run(r) for r in rows]

    async def get_pipeline_runs_by_parent(self, parent_id: str) -> list[PipelineRun]:
        cursor = await self._db.execute(
            "SELECT * FROM pipeline_runs WHERE parent_id = ? ORDER BY created_at",
            (parent_id,),
        )
        rows = await cursor.fetchall()
        return [await self._hydrate_pipeline_run(r) for r in rows]

    async def list_unfinished_pipeline_runs(self) -> list[PipelineRun]:
        """Runs never stamped as finished, e.g. left behind by a crashed process."""
        cursor = await self._db.execute(
            "SELECT * FROM pipeline_runs WHERE completed_at IS NULL ORDER BY created_at"
        )
        rows = await cursor.fetchall()
        return [await self._hydrate_pipeline_run(r) for r in rows]

    async def list_recent_failures(
        self, window: timedelta, *, now: datetime | None = None
    ) -> list[PipelineRun]:
        """Pipeline runs that finished as failed within ``window``, newest first."""
        now = now or datetime.now(timezone.utc)
        cursor = await self._db.execute(
            "SELECT * FROM pipeline_runs WHERE completed_at IS NOT NULL AND completed_at >= ? "
            "ORDER BY completed_at DESC",
            (_dt_to_str(now - window),),
        )
        rows = await cursor.fetchall()
        failures: list[PipelineRun] = []
        for row in rows:
            run = await self._hydrate_pipeline_run(row)
            if run.status == PipelineRunStatus.FAILED:
                failures.append(run)
        return failures

    async def _hydrate_pipeline_run(self, row: aiosqlite.Row) -> PipelineRun:
        cursor = await self._db.execute(
            """
            SELECT t.* FROM job_run_transitions t
            JOIN (
                SELECT job_id, MAX(seq) AS seq FROM job_run_transitions
                WHERE pipeline_run_id = ? GROUP BY job_id
            ) latest ON t.seq = latest.seq
            """,
            (row["id"],),
        )
        job_rows = await cursor.fetchall()
        job_runs = {r["job_id"]: _row_to_job_run(r) for r in job_rows}
        return PipelineRun(
            id=row["id"],
            name=row["name"],
            graph=JobGraph.model_validate_json(row["graph"]),
            job_runs=job_runs,
            kind=RunKind(row["kind"]),
            parent_id=row["parent_id"],
            context=json.loads(row["context"] or "{}"),
            canceled=bool(row["canceled"]),
            reason=row["reason"],
            created_at=_str_to_dt(row["created_at"]),
            completed_at=_str_to_dt(row["completed_at"]),
        )

    # ── Promotions ───────────────────────────────────────────────────────────

    async def create_promotion(self, promotion: Promotion) -> None:
        await self._db.execute(
            """
            INSERT INTO promotions (
                id, change_set_id, change_set, stages,
                status, current_order, reason, created_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                promotion.id,
                promotion.change_set.id,
                promotion.change_set.model_dump_json(),
                json.dumps([s.model_dump(mode="json") for s in promotion.stages]),
                promotion.status.value,
                promotion.current_order,
                promotion.reason,
                _dt_to_str(promotion.created_at),
                _dt_to_str(promotion.completed_at),
            ),
        )
        await self._db.commit()

    async def update_promotion(self, promotion: Promotion) -> None:
        """Update a promotion's mutable fields."""
        async with self._lock(promotion.id):
            await self._db.execute(
                """
                UPDATE promotions SET
                    status = ?, current_order = ?, reason = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    promotion.status.value,
                    promotion.current_order,
                    promotion.reason,
                    _dt_to_str(promotion.completed_at),
                    promotion.id,
                ),
            )
            await self._db.commit()

    async def get_promotion(self, promotion_id: str) -> Promotion | None:
        cursor = await self._db.execute("SELECT * FROM promotions WHERE id = ?", (promotion_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return await self._hydrate_promotion(row)

    async def get_promotion_by_change_set(self, change_set_id: str) -> Promotion | None:
        """Most recent promotion for a change set."""
        cursor = await self._db.execute(
            "SELECT * FROM promotions WHERE change_set_id = ? ORDER BY created_at DESC LIMIT 1",
            (change_set_id,),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return await self._hydrate_promotion(row)

    async def list_promotions(self, status: PromotionStatus) -> list[Promotion]:
        cursor = await self._db.execute(
            "SELECT * FROM promotions WHERE status = ? ORDER BY created_at", (status.value,)
        )
        rows = await cursor.fetchall()
        return [await self._hydrate_promotion(r) for r in rows]

    async def _hydrate_promotion(self, row: aiosqlite.Row) -> Promotion:
        stages = await self.get_stages_for_promotion(row["id"])
        return Promotion(
            id=row["id"],
            change_set=ChangeSet.model_validate_json(row["change_set"]),
            stages=[StageDefinition.model_validate(s) for s in json.loads(row["stages"])],
            attempts=stages,
            status=PromotionStatus(row["status"]),
            current_order=row["current_order"] or 0,
            reason=row["reason"],
            created_at=_str_to_dt(row["created_at"]),
            completed_at=_str_to_dt(row["completed_at"]),
        )

    # ── Stages ───────────────────────────────────────────────────────────────

    async def create_stage(self, stage: Stage) -> None:
        """Insert a stage attempt and its initial transition."""
        async with self._lock(stage.id):
            await self._db.execute(
                """
                INSERT INTO stages (
                    id, promotion_id, name, position, attempt, gate,
                    is_production, rollback_eligible, rollback_strategies,
                    pipeline_run_id, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stage.id,
                    stage.promotion_id,
                    stage.name,
                    stage.order,
                    stage.attempt,
                    stage.gate.model_dump_json(),
                    1 if stage.is_production else 0,
                    1 if stage.rollback_eligible else 0,
                    json.dumps([s.value for s in stage.rollback_strategies]),
                    stage.pipeline_run_id,
                    _dt_to_str(stage.created_at),
                ),
            )
            await self._insert_stage_transition(stage)
            await self._db.commit()

    async def append_stage_transition(self, stage: Stage) -> None:
        """Record a stage state change (and its pipeline run link)."""
        async with self._lock(stage.id):
            await self._db.execute(
                "UPDATE stages SET pipeline_run_id = ? WHERE id = ?",
                (stage.pipeline_run_id, stage.id),
            )
            await self._insert_stage_transition(stage)
            await self._db.commit()

    async def _insert_stage_transition(self, stage: Stage) -> None:
        await self._db.execute(
            "INSERT INTO stage_transitions (stage_id, status, reason, recorded_at) "
            "VALUES (?, ?, ?, ?)",
            (
                stage.id,
                stage.status.value,
                stage.reason,
                _dt_to_str(datetime.now(timezone.utc)),
            ),
        )

    async def get_stage(self, stage_id: str) -> Stage | None:
        cursor = await self._db.execute("SELECT * FROM stages WHERE id = ?", (stage_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return await self._hydrate_stage(row)

    async def get_stages_for_promotion(self, promotion_id: str) -> list[Stage]:
        """All stage attempts for a promotion, oldest first."""
        cursor = await self._db.execute(
            "SELECT * FROM stages WHERE promotion_id = ? ORDER BY position, attempt",
            (promotion_id,),
        )
        rows = await cursor.fetchall()
        return [await self._hydrate_stage(r) for r in rows]

    async def get_stage_history(self, stage_id: str) -> list[tuple[StageStatus, str | None]]:
        """Every recorded (status, reason) for a stage, oldest first."""
        cursor = await self._db.execute(
            "SELECT status, reason FROM stage_transitions WHERE stage_id = ? ORDER BY seq",
            (stage_id,),
        )
        rows = await cursor.fetchall()
        return [(StageStatus(r["status"]), r["reason"]) for r in rows]

    async def stage_status_since(self, stage_id: str, status: StageStatus) -> datetime | None:
        """When the stage last entered ``status``."""
        cursor = await self._db.execute(
            "SELECT recorded_at FROM stage_transitions WHERE stage_id = ? AND status = ? "
            "ORDER BY seq DESC LIMIT 1",
            (stage_id, status.value),
        )
        row = await cursor.fetchone()
        return _str_to_dt(row["recorded_at"]) if row else None

    async def latest_succeeded_run_for_stage(
        self, stage_name: str, *, exclude_stage_id: str | None = None
    ) -> PipelineRun | None:
        """Most recent known-good deploy run recorded for a stage position.

        Only attempts that advanced count: a run that succeeded but was then
        rejected or timed out at its approval gate never qualifies.
        """
        cursor = await self._db.execute(
            """
            SELECT s.id, s.pipeline_run_id FROM stages s
            JOIN stage_transitions t ON t.seq = (
                SELECT MAX(seq) FROM stage_transitions WHERE stage_id = s.id
            )
            WHERE s.name = ? AND s.pipeline_run_id IS NOT NULL AND t.status = ?
            ORDER BY s.created_at DESC, s.rowid DESC
            """,
            (stage_name, StageStatus.ADVANCED.value),
        )
        rows = await cursor.fetchall()
        for row in rows:
            if row["id"] == exclude_stage_id:
                continue
            run = await self.get_pipeline_run(row["pipeline_run_id"])
            if run and run.kind == RunKind.DEPLOY and run.status == PipelineRunStatus.SUCCEEDED:
                return run
        return None

    async def _hydrate_stage(self, row: aiosqlite.Row) -> Stage:
        cursor = await self._db.execute(
            "SELECT status, reason, recorded_at FROM stage_transitions WHERE stage_id = ? "
            "ORDER BY seq DESC LIMIT 1",
            (row["id"],),
        )
        latest = await cursor.fetchone()
        status = StageStatus(latest["status"]) if latest else StageStatus.PENDING
        completed_at = None
        if latest and status in (StageStatus.ADVANCED, StageStatus.HALTED):
            completed_at = _str_to_dt(latest["recorded_at"])

        return Stage(
            id=row["id"],
            promotion_id=row["promotion_id"],
            name=row["name"],
            order=row["position"],
            attempt=row["attempt"],
            gate=GatePolicy.model_validate_json(row["gate"]),
            is_production=bool(row["is_production"]),
            rollback_eligible=bool(row["rollback_eligible"]),
            rollback_strategies=[RollbackStrategy(s) for s in json.loads(row["rollback_strategies"])],
            pipeline_run_id=row["pipeline_run_id"],
            status=status,
            approvals=await self.get_approvals(row["id"]),
            reason=latest["reason"] if latest else None,
            created_at=_str_to_dt(row["created_at"]),
            completed_at=completed_at,
        )

    # ── Approvals ────────────────────────────────────────────────────────────

    async def record_approval(self, approval: Approval) -> None:
        """Record an approval or rejection for a stage."""
        async with self._lock(approval.stage_id):
            await self._db.execute(
                "INSERT INTO approvals (stage_id, approver_id, approved, reason, recorded_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    approval.stage_id,
                    approval.approver_id,
                    1 if approval.approved else 0,
                    approval.reason,
                    _dt_to_str(approval.recorded_at),
                ),
            )
            await self._db.commit()

    async def get_approvals(self, stage_id: str) -> list[Approval]:
        cursor = await self._db.execute(
            "SELECT * FROM approvals WHERE stage_id = ? ORDER BY id", (stage_id,)
        )
        rows = await cursor.fetchall()
        return [
            Approval(
                stage_id=r["stage_id"],
                approver_id=r["approver_id"],
                approved=bool(r["approved"]),
                reason=r["reason"],
                recorded_at=_str_to_dt(r["recorded_at"]) or datetime.now(timezone.utc),
            )
            for r in rows
        ]

    # ── Rollback Actions ─────────────────────────────────────────────────────

    async def create_rollback_action(self, action: RollbackAction) -> None:
        await self._db.execute(
            """
            INSERT INTO rollback_actions (
                id, target_stage_id, strategy, pipeline_run_id,
                status, reason, created_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                action.id,
                action.target_stage_id,
                action.strategy.value,
                action.pipeline_run_id,
                action.status.value,
                action.reason,
                _dt_to_str(action.created_at),
                _dt_to_str(action.completed_at),
            ),
        )
        await self._db.commit()

    async def update_rollback_action(self, action: RollbackAction) -> None:
        async with self._lock(action.id):
            await self._db.execute(
                """
                UPDATE rollback_actions SET
                    pipeline_run_id = ?, status = ?, reason = ?, completed_at = ?
                WHERE id = ?
                """,
                (
                    action.pipeline_run_id,
                    action.status.value,
                    action.reason,
                    _dt_to_str(action.completed_at),
                    action.id,
                ),
            )
            await self._db.commit()

    async def get_rollback_action(self, action_id: str) -> RollbackAction | None:
        cursor = await self._db.execute("SELECT * FROM rollback_actions WHERE id = ?", (action_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_rollback_action(row)

    async def get_rollback_actions_for_stage(self, stage_id: str) -> list[RollbackAction]:
        cursor = await self._db.execute(
            "SELECT * FROM rollback_actions WHERE target_stage_id = ? ORDER BY created_at",
            (stage_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_rollback_action(r) for r in rows]

    async def list_rollback_actions(self, statuses: list[RollbackStatus]) -> list[RollbackAction]:
        marks = ", ".join("?" for _ in statuses)
        cursor = await self._db.execute(
            f"SELECT * FROM rollback_actions WHERE status IN ({marks}) ORDER BY created_at",
            tuple(s.value for s in statuses),
        )
        rows = await cursor.fetchall()
        return [_row_to_rollback_action(r) for r in rows]

    # ── Retention ────────────────────────────────────────────────────────────

    async def purge_older_than(self, days: int, *, now: datetime | None = None) -> int:
        """Delete finished runs and promotions older than ``days``.

        Returns the number of pipeline runs removed.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = _dt_to_str(now - timedelta(days=days))
        cursor = await self._db.execute(
            "DELETE FROM pipeline_runs WHERE completed_at IS NOT NULL AND completed_at < ?",
            (cutoff,),
        )
        removed = cursor.rowcount
        await self._db.execute(
            "DELETE FROM promotions WHERE completed_at IS NOT NULL AND completed_at < ?",
            (cutoff,),
        )
        await self._db.commit()
        if removed:
            logger.info("Purged %d pipeline runs older than %d days", removed, days)
        return removed


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    kind TEXT NOT NULL DEFAULT 'deploy',
    parent_id TEXT,
    graph TEXT NOT NULL,
    context TEXT DEFAULT '{}',

    canceled INTEGER DEFAULT 0,
    reason TEXT,

    created_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_parent
    ON pipeline_runs(parent_id);
CREATE INDEX IF NOT EXISTS idx_pipeline_runs_completed
    ON pipeline_runs(completed_at);

CREATE TABLE IF NOT EXISTS job_run_transitions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    pipeline_run_id TEXT NOT NULL REFERENCES pipeline_runs(id) ON DELETE CASCADE,
    job_id TEXT NOT NULL,

    status TEXT NOT NULL,
    attempt INTEGER DEFAULT 0,
    started_at TEXT,
    ended_at TEXT,
    output TEXT DEFAULT '{}',
    reason TEXT,

    recorded_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_job_run_transitions_run
    ON job_run_transitions(pipeline_run_id, job_id);

CREATE TABLE IF NOT EXISTS promotions (
    id TEXT PRIMARY KEY,
    change_set_id TEXT NOT NULL,
    change_set TEXT NOT NULL,
    stages TEXT NOT NULL,

    status TEXT DEFAULT 'active',
    current_order INTEGER DEFAULT 0,
    reason TEXT,

    created_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_promotions_change_set
    ON promotions(change_set_id);

CREATE TABLE IF NOT EXISTS stages (
    id TEXT PRIMARY KEY,
    promotion_id TEXT NOT NULL REFERENCES promotions(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    position INTEGER NOT NULL,
    attempt INTEGER DEFAULT 1,
    gate TEXT NOT NULL,

    is_production INTEGER DEFAULT 0,
    rollback_eligible INTEGER DEFAULT 0,
    rollback_strategies TEXT DEFAULT '[]',

    pipeline_run_id TEXT,
    created_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_stages_name
    ON stages(name, created_at);

CREATE TABLE IF NOT EXISTS stage_transitions (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    stage_id TEXT NOT NULL REFERENCES stages(id) ON DELETE CASCADE,
    status TEXT NOT NULL,
    reason TEXT,
    recorded_at TEXT
);

CREATE TABLE IF NOT EXISTS approvals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    stage_id TEXT NOT NULL REFERENCES stages(id) ON DELETE CASCADE,
    approver_id TEXT NOT NULL,
    approved INTEGER NOT NULL,
    reason TEXT,
    recorded_at TEXT
);

CREATE TABLE IF NOT EXISTS rollback_actions (
    id TEXT PRIMARY KEY,
    target_stage_id TEXT NOT NULL REFERENCES stages(id) ON DELETE CASCADE,
    strategy TEXT NOT NULL,
    pipeline_run_id TEXT,

    status TEXT DEFAULT 'pending',
    reason TEXT,

    created_at TEXT,
    completed_at TEXT
);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_job_run(row: aiosqlite.Row) -> JobRun:
    output: Any = row["output"]
    if isinstance(output, str):
        output = json.loads(output)

    return JobRun(
        job_id=row["job_id"],
        pipeline_run_id=row["pipeline_run_id"],
        status=JobRunStatus(row["status"]),
        attempt=row["attempt"] or 0,
        started_at=_str_to_dt(row["started_at"]),
        ended_at=_str_to_dt(row["ended_at"]),
        output=output or {},
        reason=row["reason"],
    )


def _row_to_rollback_action(row: aiosqlite.Row) -> RollbackAction:
    return RollbackAction(
        id=row["id"],
        target_stage_id=row["target_stage_id"],
        strategy=RollbackStrategy(row["strategy"]),
        pipeline_run_id=row["pipeline_run_id"],
        status=RollbackStatus(row["status"]),
        reason=row["reason"],
        created_at=_str_to_dt(row["created_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )
