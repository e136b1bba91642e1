"""Approval requests gating risky plan steps."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite

from concierge.planner.models import new_id
from concierge.utils.logging import get_logger

log = get_logger(__name__)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


@dataclass
class ApprovalRequest:
    id: str
    user_id: str
    plan_id: str
    step_index: int
    tool_name: str
    risk_level: str
    expires_at: datetime
    parameters: dict[str, Any] = field(default_factory=dict)
    reasoning: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    decided_at: datetime | None = None
    decided_by: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class ApprovalStore(ABC):
    @abstractmethod
    async def create(
        self,
        user_id: str,
        plan_id: str,
        step_index: int,
        tool_name: str,
        parameters: dict[str, Any],
        risk_level: str,
        reasoning: str,
        expires_at: datetime,
    ) -> ApprovalRequest: ...

    @abstractmethod
    async def get(self, approval_id: str) -> ApprovalRequest | None: ...

    @abstractmethod
    async def update_status(
        self,
        approval_id: str,
        status: ApprovalStatus,
        decided_by: str | None = None,
    ) -> None: ...

    @abstractmethod
    async def list_pending_for_plan(self, plan_id: str) -> list[ApprovalRequest]: ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS approvals (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    plan_id TEXT NOT NULL,
    step_index INTEGER NOT NULL,
    tool_name TEXT NOT NULL,
    parameters_json TEXT NOT NULL DEFAULT '{}',
    risk_level TEXT NOT NULL,
    reasoning TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    decided_at TEXT,
    decided_by TEXT
);

CREATE INDEX IF NOT EXISTS idx_approvals_plan ON approvals(plan_id, status);
"""

_COLUMNS = (
    "id, user_id, plan_id, step_index, tool_name, parameters_json, risk_level, "
    "reasoning, status, expires_at, created_at, decided_at, decided_by"
)


class SqliteApprovalStore(ApprovalStore):
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

    async def create(
        self,
        user_id: str,
        plan_id: str,
        step_index: int,
        tool_name: str,
        parameters: dict[str, Any],
        risk_level: str,
        reasoning: str,
        expires_at: datetime,
    ) -> ApprovalRequest:
        assert self._db is not None
        request = ApprovalRequest(
            id=new_id(),
            user_id=user_id,
            plan_id=plan_id,
            step_index=step_index,
            tool_name=tool_name,
            parameters=parameters,
            risk_level=risk_level,
            reasoning=reasoning,
            expires_at=expires_at,
        )
        await self._db.execute(
            f"INSERT INTO approvals ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                request.id, user_id, plan_id, step_index, tool_name,
                json.dumps(parameters, default=str), risk_level, reasoning,
                request.status.value, expires_at.isoformat(),
                request.created_at.isoformat(), None, None,
            ),
        )
        await self._db.commit()
        log.info("approval_created", approval_id=request.id, plan_id=plan_id, step_index=step_index)
        return request

    async def get(self, approval_id: str) -> ApprovalRequest | None:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_COLUMNS} FROM approvals WHERE id = ?", (approval_id,)
        )
        row = await cursor.fetchone()
        return self._from_row(row) if row else None

    async def update_status(
        self,
        approval_id: str,
        status: ApprovalStatus,
        decided_by: str | None = None,
    ) -> None:
        assert self._db is not None
        await self._db.execute(
            "UPDATE approvals SET status = ?, decided_at = ?, decided_by = ? WHERE id = ?",
            (status.value, datetime.now(timezone.utc).isoformat(), decided_by, approval_id),
        )
        await self._db.commit()
        log.info("approval_decided", approval_id=approval_id, status=status.value)

    async def list_pending_for_plan(self, plan_id: str) -> list[ApprovalRequest]:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_COLUMNS} FROM approvals WHERE plan_id = ? AND status = ? "
            "ORDER BY step_index",
            (plan_id, ApprovalStatus.PENDING.value),
        )
        return [self._from_row(row) for row in await cursor.fetchall()]

    @staticmethod
    def _from_row(row: Any) -> ApprovalRequest:
        return ApprovalRequest(
            id=row[0],
            user_id=row[1],
            plan_id=row[2],
            step_index=row[3],
            tool_name=row[4],
            parameters=json.loads(row[5]),
            risk_level=row[6],
            reasoning=row[7],
            status=ApprovalStatus(row[8]),
            expires_at=datetime.fromisoformat(row[9]),
            created_at=datetime.fromisoformat(row[10]),
            decided_at=datetime.fromisoformat(row[11]) if row[11] else None,
            decided_by=row[12],
        )
