"""Planner data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from concierge.tools.base import RollbackAction


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex[:12]


class PlanStatus(str, Enum):
    PLANNED = "planned"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PlanStatus.COMPLETED, PlanStatus.FAILED, PlanStatus.CANCELLED)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self != StepStatus.PENDING and self != StepStatus.RUNNING


@dataclass
class Assumption:
    statement: str
    category: str = "intent"
    evidence: list[str] = field(default_factory=list)
    confidence: float = 1.0


@dataclass
class StructuredStep:
    id: str
    plan_id: str
    index: int
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    depends_on_indices: list[int] = field(default_factory=list)
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    requires_approval: bool = False
    result: Any = None
    error: str | None = None
    retryable: bool = False
    skip_reason: str | None = None
    approval_id: str | None = None
    rollback_action: RollbackAction | None = None
    created_at: datetime = field(default_factory=_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    rolled_back_at: datetime | None = None


@dataclass
class StructuredPlan:
    id: str
    user_id: str
    goal: str
    steps: list[StructuredStep]
    status: PlanStatus = PlanStatus.PLANNED
    current_step_index: int = 0
    requires_approval: bool = False
    assumptions: list[Assumption] = field(default_factory=list)
    confidence: float = 1.0
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None

    def get_step(self, index: int) -> StructuredStep | None:
        for step in self.steps:
            if step.index == index:
                return step
        return None

    def get_step_by_id(self, step_id: str) -> StructuredStep | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def steps_with_status(self, status: StepStatus) -> list[StructuredStep]:
        return [s for s in self.steps if s.status == status]


@dataclass
class StepDraft:
    """Input to ``new_plan``: one tool call, dependencies by index."""
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    description: str = ""
    depends_on_indices: list[int] = field(default_factory=list)
    requires_approval: bool = False
    rollback_action: RollbackAction | None = None


def new_plan(
    user_id: str,
    goal: str,
    drafts: list[StepDraft],
    assumptions: list[Assumption] | None = None,
    confidence: float = 1.0,
) -> StructuredPlan:
    """Build a plan with fresh ids; step indices follow list order."""
    plan_id = new_id()
    step_ids = [new_id() for _ in drafts]
    steps = [
        StructuredStep(
            id=step_ids[i],
            plan_id=plan_id,
            index=i,
            tool_name=draft.tool_name,
            parameters=dict(draft.parameters),
            depends_on=[step_ids[d] for d in draft.depends_on_indices if 0 <= d < len(drafts)],
            depends_on_indices=list(draft.depends_on_indices),
            description=draft.description,
            requires_approval=draft.requires_approval,
            rollback_action=draft.rollback_action,
        )
        for i, draft in enumerate(drafts)
    ]
    return StructuredPlan(
        id=plan_id,
        user_id=user_id,
        goal=goal,
        steps=steps,
        requires_approval=any(s.requires_approval for s in steps),
        assumptions=list(assumptions or []),
        confidence=confidence,
    )


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class PlanningErrorCode(str, Enum):
    PLAN_NOT_FOUND = "plan_not_found"
    STEP_NOT_FOUND = "step_not_found"
    PLAN_NOT_PAUSED = "plan_not_paused"
    PLAN_ALREADY_COMPLETED = "plan_already_completed"
    PLAN_ALREADY_FAILED = "plan_already_failed"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    VALIDATION_FAILED = "validation_failed"
    APPROVAL_NOT_FOUND = "approval_not_found"
    APPROVAL_EXPIRED = "approval_expired"
    APPROVAL_NOT_PENDING = "approval_not_pending"
    NOT_RETRYABLE = "not_retryable"


class PlanningError(Exception):
    """Caller-side misuse of the executor (unknown plan, illegal transition, ...)."""

    def __init__(
        self,
        code: PlanningErrorCode,
        message: str,
        plan_id: str | None = None,
        step_index: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.plan_id = plan_id
        self.step_index = step_index

    def __repr__(self) -> str:
        return f"PlanningError({self.code.value}, {str(self)!r})"


# ---------------------------------------------------------------------------
# State helpers
# ---------------------------------------------------------------------------

def dependency_indices(plan: StructuredPlan, step: StructuredStep) -> list[int]:
    """Union of ``depends_on_indices`` and the indices of steps named in ``depends_on``."""
    indices = set(step.depends_on_indices)
    for step_id in step.depends_on:
        dep = plan.get_step_by_id(step_id)
        if dep is not None:
            indices.add(dep.index)
    return sorted(indices)


def dependencies_met(plan: StructuredPlan, step: StructuredStep) -> bool:
    """True when every step ``step`` depends on exists and has completed."""
    for index in dependency_indices(plan, step):
        dep = plan.get_step(index)
        if dep is None or dep.status != StepStatus.COMPLETED:
            return False
    return True


def next_pending_step(plan: StructuredPlan) -> StructuredStep | None:
    pending = plan.steps_with_status(StepStatus.PENDING)
    return min(pending, key=lambda s: s.index, default=None)


def next_executable_step(plan: StructuredPlan) -> StructuredStep | None:
    """Lowest-index pending step whose dependencies have all completed."""
    for step in sorted(plan.steps_with_status(StepStatus.PENDING), key=lambda s: s.index):
        if dependencies_met(plan, step):
            return step
    return None


def step_awaiting_approval(plan: StructuredPlan) -> StructuredStep | None:
    if plan.status != PlanStatus.PAUSED:
        return None
    for step in plan.steps:
        if step.status == StepStatus.PENDING and step.approval_id:
            return step
    return None


def can_plan_continue(plan: StructuredPlan) -> bool:
    if plan.status.is_terminal:
        return False
    return any(s.status == StepStatus.PENDING for s in plan.steps)
