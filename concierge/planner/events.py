"""Plan execution events and the per-plan emitter."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Literal
from uuid import uuid4

from concierge.utils.logging import get_logger

log = get_logger(__name__)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class PlanEventType(str, Enum):
    PLAN_STARTED = "plan_started"
    STEP_STARTING = "step_starting"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    PLAN_PAUSED = "plan_paused"
    PLAN_RESUMED = "plan_resumed"
    PLAN_COMPLETED = "plan_completed"
    PLAN_FAILED = "plan_failed"
    PLAN_CANCELLED = "plan_cancelled"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RECEIVED = "approval_received"


SkipReason = Literal["dependency_failed", "user_cancelled", "plan_cancelled"]
PauseReason = Literal["approval_needed", "user_requested"]
ResumeReason = Literal["approval_granted", "approval_rejected", "user_requested", "retry", "recovery"]
ApprovalDecision = Literal["approved", "rejected"]


@dataclass(frozen=True, kw_only=True)
class PlanEvent:
    type: PlanEventType
    plan_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: uuid4().hex[:12])


@dataclass(frozen=True, kw_only=True)
class PlanStarted(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.PLAN_STARTED, init=False)
    goal: str
    total_steps: int
    requires_approval: bool


@dataclass(frozen=True, kw_only=True)
class StepStarting(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.STEP_STARTING, init=False)
    step_index: int
    tool_name: str
    description: str
    requires_approval: bool = False


@dataclass(frozen=True, kw_only=True)
class StepCompleted(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.STEP_COMPLETED, init=False)
    step_index: int
    tool_name: str
    description: str
    duration_ms: int
    result_summary: str | None = None


@dataclass(frozen=True, kw_only=True)
class StepFailed(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.STEP_FAILED, init=False)
    step_index: int
    tool_name: str
    description: str
    error: str
    retryable: bool
    duration_ms: int


@dataclass(frozen=True, kw_only=True)
class StepSkipped(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.STEP_SKIPPED, init=False)
    step_index: int
    tool_name: str
    description: str
    reason: SkipReason


@dataclass(frozen=True, kw_only=True)
class PlanPaused(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.PLAN_PAUSED, init=False)
    step_index: int
    reason: PauseReason
    approval_id: str | None = None
    tool_name: str | None = None
    risk_level: str | None = None


@dataclass(frozen=True, kw_only=True)
class PlanResumed(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.PLAN_RESUMED, init=False)
    step_index: int
    resume_reason: ResumeReason


@dataclass(frozen=True, kw_only=True)
class PlanCompleted(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.PLAN_COMPLETED, init=False)
    goal: str
    successful_steps: int
    total_steps: int
    total_duration_ms: int


@dataclass(frozen=True, kw_only=True)
class PlanFailed(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.PLAN_FAILED, init=False)
    goal: str
    failed_step_index: int
    error: str
    completed_steps: int
    total_steps: int


@dataclass(frozen=True, kw_only=True)
class PlanCancelled(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.PLAN_CANCELLED, init=False)
    goal: str
    cancelled_at_step: int
    completed_steps: int
    total_steps: int
    cancelled_by: Literal["user", "system"]


@dataclass(frozen=True, kw_only=True)
class ApprovalRequested(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.APPROVAL_REQUESTED, init=False)
    step_index: int
    approval_id: str
    tool_name: str
    description: str
    risk_level: str
    expires_at: datetime


@dataclass(frozen=True, kw_only=True)
class ApprovalReceived(PlanEvent):
    type: PlanEventType = field(default=PlanEventType.APPROVAL_RECEIVED, init=False)
    step_index: int
    approval_id: str
    decision: ApprovalDecision
    decided_by: str | None = None


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def create_plan_started_event(goal: str, total_steps: int, requires_approval: bool) -> PlanStarted:
    return PlanStarted(goal=goal, total_steps=total_steps, requires_approval=requires_approval)


def create_step_starting_event(
    step_index: int, tool_name: str, description: str, requires_approval: bool = False
) -> StepStarting:
    return StepStarting(
        step_index=step_index,
        tool_name=tool_name,
        description=description,
        requires_approval=requires_approval,
    )


def create_step_completed_event(
    step_index: int,
    tool_name: str,
    description: str,
    duration_ms: int,
    result_summary: str | None = None,
) -> StepCompleted:
    return StepCompleted(
        step_index=step_index,
        tool_name=tool_name,
        description=description,
        duration_ms=duration_ms,
        result_summary=result_summary,
    )


def create_step_failed_event(
    step_index: int,
    tool_name: str,
    description: str,
    error: str,
    retryable: bool,
    duration_ms: int,
) -> StepFailed:
    return StepFailed(
        step_index=step_index,
        tool_name=tool_name,
        description=description,
        error=error,
        retryable=retryable,
        duration_ms=duration_ms,
    )


def create_step_skipped_event(
    step_index: int, tool_name: str, description: str, reason: SkipReason
) -> StepSkipped:
    return StepSkipped(
        step_index=step_index, tool_name=tool_name, description=description, reason=reason,
    )


def create_plan_paused_event(
    step_index: int,
    reason: PauseReason,
    approval_id: str | None = None,
    tool_name: str | None = None,
    risk_level: str | None = None,
) -> PlanPaused:
    return PlanPaused(
        step_index=step_index,
        reason=reason,
        approval_id=approval_id,
        tool_name=tool_name,
        risk_level=risk_level,
    )


def create_plan_resumed_event(step_index: int, resume_reason: ResumeReason) -> PlanResumed:
    return PlanResumed(step_index=step_index, resume_reason=resume_reason)


def create_plan_completed_event(
    goal: str, successful_steps: int, total_steps: int, total_duration_ms: int
) -> PlanCompleted:
    return PlanCompleted(
        goal=goal,
        successful_steps=successful_steps,
        total_steps=total_steps,
        total_duration_ms=total_duration_ms,
    )


def create_plan_failed_event(
    goal: str, failed_step_index: int, error: str, completed_steps: int, total_steps: int
) -> PlanFailed:
    return PlanFailed(
        goal=goal,
        failed_step_index=failed_step_index,
        error=error,
        completed_steps=completed_steps,
        total_steps=total_steps,
    )


def create_plan_cancelled_event(
    goal: str,
    cancelled_at_step: int,
    completed_steps: int,
    total_steps: int,
    cancelled_by: Literal["user", "system"] = "user",
) -> PlanCancelled:
    return PlanCancelled(
        goal=goal,
        cancelled_at_step=cancelled_at_step,
        completed_steps=completed_steps,
        total_steps=total_steps,
        cancelled_by=cancelled_by,
    )


def create_approval_requested_event(
    step_index: int,
    approval_id: str,
    tool_name: str,
    description: str,
    risk_level: str,
    expires_at: datetime,
) -> ApprovalRequested:
    return ApprovalRequested(
        step_index=step_index,
        approval_id=approval_id,
        tool_name=tool_name,
        description=description,
        risk_level=risk_level,
        expires_at=expires_at,
    )


def create_approval_received_event(
    step_index: int,
    approval_id: str,
    decision: ApprovalDecision,
    decided_by: str | None = None,
) -> ApprovalReceived:
    return ApprovalReceived(
        step_index=step_index,
        approval_id=approval_id,
        decision=decision,
        decided_by=decided_by,
    )


def summarize_result(result: Any, limit: int = 100) -> str:
    """Short display form of a step result for step_completed events."""
    if result is None:
        return "No result"
    if isinstance(result, str):
        text = result
    elif isinstance(result, (dict, list, tuple)):
        text = json.dumps(result, default=str)
    else:
        text = str(result)
    return text[:limit] + "..." if len(text) > limit else text


# ---------------------------------------------------------------------------
# Emitter
# ---------------------------------------------------------------------------

SyncSubscriber = Callable[[PlanEvent], None]
AsyncSubscriber = Callable[[PlanEvent], Awaitable[None]]


class Subscription:
    """Handle returned by subscribe; ``unsubscribe()`` may be called repeatedly."""

    def __init__(self, handler: Callable[..., Any], registry: list[Subscription]) -> None:
        self.handler = handler
        self._registry = registry
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        if self in self._registry:
            self._registry.remove(self)


class PlanEventEmitter:
    """Ordered, awaited fan-out of one plan's events.

    Sync subscribers run in registration order and finish before ``emit``
    returns. Async subscribers then run concurrently and ``emit`` awaits them
    all. Delivery iterates over a snapshot, so unsubscribing mid-emit only
    affects later events.
    """

    def __init__(self, plan_id: str, max_history: int | None = None) -> None:
        self.plan_id = plan_id
        self._sync: list[Subscription] = []
        self._async: list[Subscription] = []
        self._history: deque[PlanEvent] = deque(maxlen=max_history)

    def subscribe(self, handler: SyncSubscriber) -> Subscription:
        sub = Subscription(handler, self._sync)
        self._sync.append(sub)
        return sub

    def subscribe_async(self, handler: AsyncSubscriber) -> Subscription:
        sub = Subscription(handler, self._async)
        self._async.append(sub)
        return sub

    @property
    def subscriber_count(self) -> int:
        return len(self._sync) + len(self._async)

    async def emit(self, event: PlanEvent) -> PlanEvent:
        stamped = replace(event, plan_id=self.plan_id, timestamp=datetime.now(timezone.utc))
        self._history.append(stamped)

        for sub in list(self._sync):
            try:
                sub.handler(stamped)
            except Exception:
                log.exception(
                    "event_subscriber_error",
                    plan_id=self.plan_id,
                    event_type=stamped.type.value,
                )

        pending = list(self._async)
        if pending:
            await asyncio.gather(*(self._deliver_async(sub, stamped) for sub in pending))
        return stamped

    async def _deliver_async(self, sub: Subscription, event: PlanEvent) -> None:
        try:
            await sub.handler(event)
        except Exception:
            log.exception(
                "event_subscriber_error",
                plan_id=self.plan_id,
                event_type=event.type.value,
            )

    def get_history(self) -> list[PlanEvent]:
        return list(self._history)

    def get_last_event(self, event_type: PlanEventType) -> PlanEvent | None:
        for event in reversed(self._history):
            if event.type == event_type:
                return event
        return None

    def clear(self) -> None:
        for sub in list(self._sync) + list(self._async):
            sub.unsubscribe()
