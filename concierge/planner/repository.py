"""Plan persistence: repository interface and SQLite backend."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

from concierge.planner.models import (
    Assumption,
    PlanStatus,
    StepStatus,
    StructuredPlan,
    StructuredStep,
)
from concierge.tools.base import RollbackAction
from concierge.utils.logging import get_logger

log = get_logger(__name__)


class PlanRepository(ABC):
    """Durable plan storage. Callers guarantee one active executor per plan."""

    @abstractmethod
    async def create(self, plan: StructuredPlan) -> StructuredPlan: ...

    @abstractmethod
    async def get_by_id(self, plan_id: str) -> StructuredPlan | None: ...

    @abstractmethod
    async def update_plan_status(self, plan_id: str, status: PlanStatus) -> None:
        """Set status; terminal statuses also stamp ``completed_at``."""
        ...

    @abstractmethod
    async def advance_current_step(self, plan_id: str, index: int) -> None:
        """Raise ``current_step_index`` to ``index``. Never lowers it."""
        ...

    @abstractmethod
    async def update_step(self, step: StructuredStep) -> None: ...

    @abstractmethod
    async def mark_step_running(self, step: StructuredStep) -> bool:
        """Move a pending step of a running plan to running.

        Returns False, writing nothing, when the step is no longer pending or
        the plan has left ``running`` (for example after a cancel).
        """
        ...

    @abstractmethod
    async def list_by_user(
        self, user_id: str, statuses: Iterable[PlanStatus] | None = None
    ) -> list[StructuredPlan]: ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS plans (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    goal TEXT NOT NULL,
    status TEXT NOT NULL,
    current_step_index INTEGER NOT NULL DEFAULT 0,
    requires_approval INTEGER NOT NULL DEFAULT 0,
    assumptions_json TEXT NOT NULL DEFAULT '[]',
    confidence REAL NOT NULL DEFAULT 1.0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_plans_user_status ON plans(user_id, status);

CREATE TABLE IF NOT EXISTS plan_steps (
    id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL REFERENCES plans(id),
    step_index INTEGER NOT NULL,
    tool_name TEXT NOT NULL,
    parameters_json TEXT NOT NULL DEFAULT '{}',
    depends_on_json TEXT NOT NULL DEFAULT '[]',
    depends_on_indices_json TEXT NOT NULL DEFAULT '[]',
    description TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    requires_approval INTEGER NOT NULL DEFAULT 0,
    result_json TEXT,
    error TEXT,
    retryable INTEGER NOT NULL DEFAULT 0,
    skip_reason TEXT,
    approval_id TEXT,
    rollback_action_json TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    rolled_back_at TEXT,
    UNIQUE(plan_id, step_index)
);
"""

_PLAN_COLUMNS = (
    "id, user_id, goal, status, current_step_index, requires_approval, "
    "assumptions_json, confidence, created_at, updated_at, completed_at"
)
_STEP_COLUMNS = (
    "id, plan_id, step_index, tool_name, parameters_json, depends_on_json, "
    "depends_on_indices_json, description, status, requires_approval, result_json, "
    "error, retryable, skip_reason, approval_id, rollback_action_json, created_at, "
    "started_at, completed_at, rolled_back_at"
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqlitePlanRepository(PlanRepository):
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def stop(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def create(self, plan: StructuredPlan) -> StructuredPlan:
        assert self._db is not None
        await self._db.execute(
            f"INSERT INTO plans ({_PLAN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                plan.id, plan.user_id, plan.goal, plan.status.value,
                plan.current_step_index, int(plan.requires_approval),
                json.dumps([asdict(a) for a in plan.assumptions]),
                plan.confidence,
                plan.created_at.isoformat(), plan.updated_at.isoformat(),
                _iso(plan.completed_at),
            ),
        )
        for step in plan.steps:
            await self._db.execute(
                f"INSERT INTO plan_steps ({_STEP_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._step_row(step),
            )
        await self._db.commit()
        log.debug("plan_created", plan_id=plan.id, steps=len(plan.steps))
        return plan

    async def get_by_id(self, plan_id: str) -> StructuredPlan | None:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_PLAN_COLUMNS} FROM plans WHERE id = ?", (plan_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return await self._hydrate(row)

    async def update_plan_status(self, plan_id: str, status: PlanStatus) -> None:
        assert self._db is not None
        now = datetime.now(timezone.utc).isoformat()
        completed_at = now if status.is_terminal else None
        await self._db.execute(
            "UPDATE plans SET status = ?, updated_at = ?, "
            "completed_at = ? WHERE id = ?",
            (status.value, now, completed_at, plan_id),
        )
        await self._db.commit()

    async def advance_current_step(self, plan_id: str, index: int) -> None:
        assert self._db is not None
        await self._db.execute(
            "UPDATE plans SET current_step_index = MAX(current_step_index, ?), "
            "updated_at = ? WHERE id = ?",
            (index, datetime.now(timezone.utc).isoformat(), plan_id),
        )
        await self._db.commit()

    async def update_step(self, step: StructuredStep) -> None:
        assert self._db is not None
        await self._db.execute(
            "UPDATE plan_steps SET status = ?, result_json = ?, error = ?, retryable = ?, "
            "skip_reason = ?, approval_id = ?, started_at = ?, completed_at = ?, "
            "rolled_back_at = ? WHERE id = ?",
            (
                step.status.value,
                json.dumps(step.result),
                step.error,
                int(step.retryable),
                step.skip_reason,
                step.approval_id,
                _iso(step.started_at),
                _iso(step.completed_at),
                _iso(step.rolled_back_at),
                step.id,
            ),
        )
        await self._db.commit()

    async def mark_step_running(self, step: StructuredStep) -> bool:
        assert self._db is not None
        started_at = datetime.now(timezone.utc)
        cursor = await self._db.execute(
            "UPDATE plan_steps SET status = ?, started_at = ? "
            "WHERE id = ? AND status = ? "
            "AND EXISTS (SELECT 1 FROM plans WHERE plans.id = plan_steps.plan_id AND plans.status = ?)",
            (
                StepStatus.RUNNING.value, started_at.isoformat(), step.id,
                StepStatus.PENDING.value, PlanStatus.RUNNING.value,
            ),
        )
        await self._db.commit()
        if cursor.rowcount != 1:
            return False
        step.status = StepStatus.RUNNING
        step.started_at = started_at
        return True

    async def list_by_user(
        self, user_id: str, statuses: Iterable[PlanStatus] | None = None
    ) -> list[StructuredPlan]:
        assert self._db is not None
        query = f"SELECT {_PLAN_COLUMNS} FROM plans WHERE user_id = ?"
        params: list[Any] = [user_id]
        if statuses is not None:
            values = [s.value for s in statuses]
            if not values:
                return []
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY created_at DESC"

        cursor = await self._db.execute(query, params)
        rows = await cursor.fetchall()
        return [await self._hydrate(row) for row in rows]

    # --- Row mapping ---

    @staticmethod
    def _step_row(step: StructuredStep) -> tuple[Any, ...]:
        return (
            step.id, step.plan_id, step.index, step.tool_name,
            json.dumps(step.parameters),
            json.dumps(step.depends_on),
            json.dumps(step.depends_on_indices),
            step.description, step.status.value, int(step.requires_approval),
            json.dumps(step.result), step.error, int(step.retryable),
            step.skip_reason, step.approval_id,
            json.dumps(asdict(step.rollback_action)) if step.rollback_action else None,
            step.created_at.isoformat(), _iso(step.started_at), _iso(step.completed_at),
            _iso(step.rolled_back_at),
        )

    async def _hydrate(self, row: Any) -> StructuredPlan:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_STEP_COLUMNS} FROM plan_steps WHERE plan_id = ? ORDER BY step_index",
            (row[0],),
        )
        step_rows = await cursor.fetchall()
        steps = [
            StructuredStep(
                id=s[0], plan_id=s[1], index=s[2], tool_name=s[3],
                parameters=json.loads(s[4]),
                depends_on=json.loads(s[5]),
                depends_on_indices=json.loads(s[6]),
                description=s[7],
                status=StepStatus(s[8]),
                requires_approval=bool(s[9]),
                result=json.loads(s[10]) if s[10] is not None else None,
                error=s[11],
                retryable=bool(s[12]),
                skip_reason=s[13],
                approval_id=s[14],
                rollback_action=RollbackAction(**json.loads(s[15])) if s[15] else None,
                created_at=datetime.fromisoformat(s[16]),
                started_at=_parse_dt(s[17]),
                completed_at=_parse_dt(s[18]),
                rolled_back_at=_parse_dt(s[19]),
            )
            for s in step_rows
        ]
        return StructuredPlan(
            id=row[0], user_id=row[1], goal=row[2],
            status=PlanStatus(row[3]),
            current_step_index=row[4],
            requires_approval=bool(row[5]),
            assumptions=[Assumption(**a) for a in json.loads(row[6])],
            confidence=row[7],
            created_at=datetime.fromisoformat(row[8]),
            updated_at=datetime.fromisoformat(row[9]),
            completed_at=_parse_dt(row[10]),
            steps=steps,
        )
