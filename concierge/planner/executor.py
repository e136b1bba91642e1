"""Plan execution state machine: dependency walk, approval gating, resume and cancel."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Literal

from concierge.config import ExecutorConfig
from concierge.planner.approvals import ApprovalStatus, ApprovalStore
from concierge.planner.events import (
    PlanEventEmitter,
    create_approval_received_event,
    create_approval_requested_event,
    create_plan_cancelled_event,
    create_plan_completed_event,
    create_plan_failed_event,
    create_plan_paused_event,
    create_plan_resumed_event,
    create_plan_started_event,
    create_step_completed_event,
    create_step_failed_event,
    create_step_skipped_event,
    create_step_starting_event,
    summarize_result,
)
from concierge.planner.models import (
    PlanningError,
    PlanningErrorCode,
    PlanStatus,
    StepStatus,
    StructuredPlan,
    StructuredStep,
    dependencies_met,
    next_pending_step,
    step_awaiting_approval,
)
from concierge.planner.recovery import is_transient_error, retryable_failure, steps_to_retry
from concierge.planner.references import resolve_step_outputs
from concierge.planner.repository import PlanRepository
from concierge.planner.rollback import (
    RollbackAnalysis,
    RollbackError,
    RollbackResult,
    analyze_rollback,
    resolve_rollback_parameters,
    rollback_action_for,
    rollbackable_steps,
)
from concierge.planner.validator import blocking_issues, validate_plan
from concierge.tools.base import BaseTool, RollbackAction, ToolError
from concierge.utils.logging import get_logger

log = get_logger(__name__)

StepOutcome = Literal["completed", "failed", "paused", "not_started"]


@dataclass
class PlanExecutionResult:
    plan: StructuredPlan
    success: bool
    paused: bool = False
    pending_approval_id: str | None = None
    stopped_at_step: int = 0
    completed_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    duration_ms: int = 0
    step_results: dict[int, Any] = field(default_factory=dict)
    error: str | None = None
    cancelled: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class PlanExecutor:
    """Runs persisted plans one step at a time.

    Approval gating returns control to the caller with ``paused=True``;
    ``resume_plan`` and ``resume_plan_after_rejection`` are the re-entry
    points. Cancellation is observed between steps.
    """

    def __init__(
        self,
        repository: PlanRepository,
        tools: dict[str, BaseTool],
        approvals: ApprovalStore,
        config: ExecutorConfig | None = None,
    ) -> None:
        self._repository = repository
        self._tools = tools
        self._approvals = approvals
        self._config = config or ExecutorConfig()
        self._emitters: dict[str, PlanEventEmitter] = {}

    # --- Emitters ---

    def get_plan_event_emitter(self, plan_id: str) -> PlanEventEmitter:
        """Live emitter for ``plan_id``, created on demand so callers can subscribe early."""
        emitter = self._emitters.get(plan_id)
        if emitter is None:
            emitter = PlanEventEmitter(plan_id, max_history=self._config.max_event_history)
            self._emitters[plan_id] = emitter
        return emitter

    def _release_emitter(self, plan_id: str) -> None:
        emitter = self._emitters.pop(plan_id, None)
        if emitter is not None:
            emitter.clear()

    # --- Entry points ---

    async def execute_plan(
        self, plan_id: str, context: dict[str, Any] | None = None
    ) -> PlanExecutionResult:
        started = time.monotonic()
        plan = await self._load(plan_id)

        if plan.status == PlanStatus.COMPLETED:
            raise PlanningError(
                PlanningErrorCode.PLAN_ALREADY_COMPLETED, "Plan has already completed", plan_id,
            )
        if plan.status == PlanStatus.FAILED:
            raise PlanningError(
                PlanningErrorCode.PLAN_ALREADY_FAILED,
                "Plan has already failed; use resume_plan to retry",
                plan_id,
            )
        if plan.status in (PlanStatus.CANCELLED, PlanStatus.PAUSED):
            raise PlanningError(
                PlanningErrorCode.INVALID_STATE_TRANSITION,
                f"Cannot execute plan with status: {plan.status.value}",
                plan_id,
            )

        issues = blocking_issues(validate_plan(plan))
        if issues:
            raise PlanningError(
                PlanningErrorCode.VALIDATION_FAILED,
                "Plan failed validation: " + "; ".join(i.message for i in issues),
                plan_id,
            )

        emitter = self.get_plan_event_emitter(plan_id)

        if plan.status == PlanStatus.PLANNED:
            await self._repository.update_plan_status(plan_id, PlanStatus.RUNNING)
            log.info("plan_started", plan_id=plan_id, steps=len(plan.steps))
            await emitter.emit(create_plan_started_event(
                plan.goal, len(plan.steps), plan.requires_approval,
            ))
        else:
            await self._recover_interrupted(plan, emitter)

        return await self._run(plan_id, context or {}, started)

    async def resume_plan(
        self,
        plan_id: str,
        approval_id: str | None = None,
        *,
        decided_by: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> PlanExecutionResult:
        """Continue after an approval, or retry a plan whose failures are all retryable."""
        started = time.monotonic()
        plan = await self._load(plan_id)

        if approval_id is None:
            return await self._retry(plan, context or {}, started)

        step = await self._step_awaiting(plan, approval_id)
        approval = await self._approvals.get(approval_id)
        if approval is None:
            raise PlanningError(
                PlanningErrorCode.APPROVAL_NOT_FOUND,
                f"Approval {approval_id} not found",
                plan_id, step.index,
            )
        if approval.status != ApprovalStatus.PENDING:
            raise PlanningError(
                PlanningErrorCode.APPROVAL_NOT_PENDING,
                f"Approval {approval_id} is {approval.status.value}",
                plan_id, step.index,
            )
        if approval.is_expired():
            await self._approvals.update_status(approval_id, ApprovalStatus.EXPIRED)
            raise PlanningError(
                PlanningErrorCode.APPROVAL_EXPIRED,
                f"Approval {approval_id} expired at {approval.expires_at.isoformat()}",
                plan_id, step.index,
            )

        await self._approvals.update_status(approval_id, ApprovalStatus.APPROVED, decided_by)
        emitter = self.get_plan_event_emitter(plan_id)
        await emitter.emit(create_approval_received_event(
            step.index, approval_id, "approved", decided_by,
        ))
        await self._repository.update_plan_status(plan_id, PlanStatus.RUNNING)
        log.info("plan_resumed", plan_id=plan_id, step_index=step.index, reason="approval_granted")
        await emitter.emit(create_plan_resumed_event(step.index, "approval_granted"))

        return await self._run(plan_id, context or {}, started, approved_step=step.index)

    async def resume_plan_after_rejection(
        self,
        plan_id: str,
        approval_id: str,
        *,
        decided_by: str | None = None,
        context: dict[str, Any] | None = None,
    ) -> PlanExecutionResult:
        started = time.monotonic()
        plan = await self._load(plan_id)
        step = await self._step_awaiting(plan, approval_id)

        approval = await self._approvals.get(approval_id)
        if approval is None:
            raise PlanningError(
                PlanningErrorCode.APPROVAL_NOT_FOUND,
                f"Approval {approval_id} not found",
                plan_id, step.index,
            )
        if approval.status not in (ApprovalStatus.PENDING, ApprovalStatus.EXPIRED):
            raise PlanningError(
                PlanningErrorCode.APPROVAL_NOT_PENDING,
                f"Approval {approval_id} is {approval.status.value}",
                plan_id, step.index,
            )

        await self._approvals.update_status(approval_id, ApprovalStatus.REJECTED, decided_by)
        emitter = self.get_plan_event_emitter(plan_id)
        await emitter.emit(create_approval_received_event(
            step.index, approval_id, "rejected", decided_by,
        ))

        if self._config.rejection_policy == "skip":
            await self._skip_step(step, "user_cancelled", emitter)
        else:
            await self._fail_step(
                plan, step, "Approval rejected", retryable=False,
                started=time.monotonic(), emitter=emitter,
            )

        await self._repository.advance_current_step(plan_id, step.index + 1)
        await self._repository.update_plan_status(plan_id, PlanStatus.RUNNING)
        log.info("plan_resumed", plan_id=plan_id, step_index=step.index, reason="approval_rejected")
        await emitter.emit(create_plan_resumed_event(step.index, "approval_rejected"))
        return await self._run(plan_id, context or {}, started)

    async def cancel_plan(
        self, plan_id: str, cancelled_by: Literal["user", "system"] = "user"
    ) -> StructuredPlan:
        plan = await self._load(plan_id)

        if plan.status == PlanStatus.COMPLETED:
            raise PlanningError(
                PlanningErrorCode.PLAN_ALREADY_COMPLETED, "Cannot cancel a completed plan", plan_id,
            )
        if plan.status == PlanStatus.FAILED:
            raise PlanningError(
                PlanningErrorCode.PLAN_ALREADY_FAILED, "Cannot cancel a failed plan", plan_id,
            )
        if plan.status == PlanStatus.CANCELLED:
            raise PlanningError(
                PlanningErrorCode.INVALID_STATE_TRANSITION, "Plan is already cancelled", plan_id,
            )

        await self._cancel(plan, cancelled_by)
        return await self._load(plan_id)

    async def _cancel(self, plan: StructuredPlan, cancelled_by: Literal["user", "system"]) -> None:
        plan_id = plan.id
        for approval in await self._approvals.list_pending_for_plan(plan_id):
            await self._approvals.update_status(approval.id, ApprovalStatus.REJECTED, cancelled_by)

        emitter = self.get_plan_event_emitter(plan_id)
        completed = len(plan.steps_with_status(StepStatus.COMPLETED))
        for step in plan.steps_with_status(StepStatus.PENDING):
            await self._skip_step(step, "plan_cancelled", emitter)

        await self._repository.update_plan_status(plan_id, PlanStatus.CANCELLED)
        log.info("plan_cancelled", plan_id=plan_id, completed_steps=completed, by=cancelled_by)
        await emitter.emit(create_plan_cancelled_event(
            plan.goal, plan.current_step_index, completed, len(plan.steps), cancelled_by,
        ))
        self._release_emitter(plan_id)

    async def get_pending_plans(self, user_id: str) -> list[StructuredPlan]:
        return await self._repository.list_by_user(
            user_id, [PlanStatus.PAUSED, PlanStatus.PLANNED],
        )

    async def get_interrupted_plans(self, user_id: str) -> list[StructuredPlan]:
        return await self._repository.list_by_user(user_id, [PlanStatus.RUNNING])

    # --- Rollback ---

    async def analyze_rollback(self, plan_id: str) -> RollbackAnalysis:
        return analyze_rollback(await self._load(plan_id), self._tools)

    async def rollback_plan(
        self,
        plan_id: str,
        *,
        step_ids: Iterable[str] | None = None,
        dry_run: bool = False,
        continue_on_error: bool = True,
        context: dict[str, Any] | None = None,
    ) -> RollbackResult:
        """Undo completed steps, latest first, then cancel the plan.

        Steps without a rollback action are left as they are. With ``dry_run``
        nothing is executed or written; the result lists what would be undone.
        A plan that is still running must be cancelled first.
        """
        started = time.monotonic()
        plan = await self._load(plan_id)
        if plan.status == PlanStatus.RUNNING:
            raise PlanningError(
                PlanningErrorCode.INVALID_STATE_TRANSITION, "Cannot roll back a running plan", plan_id,
            )

        steps = rollbackable_steps(plan, self._tools)
        if step_ids is not None:
            wanted = set(step_ids)
            steps = [s for s in steps if s.id in wanted]

        result = RollbackResult(plan_id=plan_id, dry_run=dry_run, total_rollbackable=len(steps))
        log.info("plan_rollback_started", plan_id=plan_id, steps=len(steps), dry_run=dry_run)

        for step in steps:
            action = rollback_action_for(step, self._tools)
            assert action is not None
            if not dry_run:
                try:
                    await self._rollback_step(plan, step, action, context or {})
                except Exception as exc:
                    message = str(exc) or type(exc).__name__
                    log.warning(
                        "step_rollback_failed",
                        plan_id=plan_id, step_index=step.index, tool=action.tool_name, error=message,
                    )
                    result.success = False
                    result.failed_steps.append(step.id)
                    result.errors.append(RollbackError(step.id, step.index, action.tool_name, message))
                    if not continue_on_error:
                        break
                    continue
            result.rolled_back_steps.append(step.id)
            result.rolled_back_count += 1

        if result.rolled_back_count and not dry_run and plan.status != PlanStatus.CANCELLED:
            await self._cancel(await self._load(plan_id), "system")

        result.duration_ms = _elapsed_ms(started)
        log.info(
            "plan_rollback_finished",
            plan_id=plan_id, success=result.success, rolled_back=result.rolled_back_count,
            failed=len(result.failed_steps), duration_ms=result.duration_ms,
        )
        return result

    async def _rollback_step(
        self,
        plan: StructuredPlan,
        step: StructuredStep,
        action: RollbackAction,
        context: dict[str, Any],
    ) -> None:
        tool = self._tools.get(action.tool_name)
        if tool is None:
            raise ToolError(f"Rollback tool not found: {action.tool_name}")

        params = resolve_rollback_parameters(action.parameters, step)
        result = await tool.execute(params, {
            **context,
            "plan_id": plan.id,
            "step_index": step.index,
            "user_id": plan.user_id,
            "rollback": True,
        })
        if not result.success:
            raise ToolError(f"Rollback execution failed: {result.error or 'unknown error'}")

        step.status = StepStatus.ROLLED_BACK
        step.rolled_back_at = _now()
        await self._repository.update_step(step)
        log.info("step_rolled_back", plan_id=plan.id, step_index=step.index, tool=action.tool_name)

    # --- Run loop ---

    async def _run(
        self,
        plan_id: str,
        context: dict[str, Any],
        started: float,
        approved_step: int | None = None,
    ) -> PlanExecutionResult:
        emitter = self.get_plan_event_emitter(plan_id)
        last_index = 0
        stop_error: str | None = None

        while True:
            # Reloaded every step so a concurrent cancel_plan is seen at the boundary.
            plan = await self._load(plan_id)
            if plan.status == PlanStatus.CANCELLED:
                log.info("plan_execution_stopped", plan_id=plan_id, reason="cancelled")
                return self._result(plan, started, last_index, cancelled=True)

            step = next_pending_step(plan)
            if step is None:
                break
            last_index = step.index

            if not dependencies_met(plan, step):
                await self._skip_step(step, "dependency_failed", emitter)
                continue

            outcome = await self._execute_step(
                plan, step, context, emitter, approved=step.index == approved_step,
            )
            if outcome == "paused":
                plan = await self._load(plan_id)
                return self._result(
                    plan, started, step.index,
                    paused=True, pending_approval_id=plan.get_step(step.index).approval_id,
                )
            if outcome == "not_started":
                plan = await self._load(plan_id)
                return self._result(
                    plan, started, step.index, cancelled=plan.status == PlanStatus.CANCELLED,
                )
            if outcome == "failed" and self._config.stop_on_failure:
                stop_error = f"Stopped after step {step.index} failed"
                break

        return await self._finish(plan_id, emitter, started, last_index, stop_error)

    async def _finish(
        self,
        plan_id: str,
        emitter: PlanEventEmitter,
        started: float,
        last_index: int,
        stop_error: str | None,
    ) -> PlanExecutionResult:
        plan = await self._load(plan_id)
        failed = sorted(plan.steps_with_status(StepStatus.FAILED), key=lambda s: s.index)
        completed = len(plan.steps_with_status(StepStatus.COMPLETED))
        duration_ms = _elapsed_ms(started)

        if failed or stop_error:
            first = failed[0] if failed else plan.get_step(last_index)
            error = (first.error if first else None) or stop_error or "Unknown error"
            failed_index = first.index if first else last_index
            await self._repository.update_plan_status(plan_id, PlanStatus.FAILED)
            log.warning("plan_failed", plan_id=plan_id, step_index=failed_index, error=error)
            await emitter.emit(create_plan_failed_event(
                plan.goal, failed_index, error, completed, len(plan.steps),
            ))
            self._release_emitter(plan_id)
            plan = await self._load(plan_id)
            return self._result(plan, started, last_index, error=error)

        await self._repository.update_plan_status(plan_id, PlanStatus.COMPLETED)
        log.info("plan_completed", plan_id=plan_id, steps=completed, duration_ms=duration_ms)
        await emitter.emit(create_plan_completed_event(
            plan.goal, completed, len(plan.steps), duration_ms,
        ))
        self._release_emitter(plan_id)
        plan = await self._load(plan_id)
        return self._result(plan, started, last_index)

    async def _execute_step(
        self,
        plan: StructuredPlan,
        step: StructuredStep,
        context: dict[str, Any],
        emitter: PlanEventEmitter,
        approved: bool = False,
    ) -> StepOutcome:
        started = time.monotonic()

        resolution = resolve_step_outputs(step, plan)
        if not resolution.success:
            message = "Failed to resolve step outputs: " + "; ".join(
                e.message for e in resolution.errors
            )
            await self._fail_step(plan, step, message, False, started, emitter)
            return "failed"

        tool = self._tools.get(step.tool_name)
        if tool is None:
            await self._fail_step(
                plan, step, f"Unknown tool: {step.tool_name}", False, started, emitter,
            )
            return "failed"

        if (step.requires_approval or tool.requires_approval) and not approved:
            await self._request_approval(plan, step, tool, resolution.resolved_params, emitter)
            return "paused"

        await emitter.emit(create_step_starting_event(
            step.index, step.tool_name, step.description, step.requires_approval,
        ))
        # A subscriber may have cancelled the plan while step_starting was delivered.
        if not await self._repository.mark_step_running(step):
            log.info("step_not_started", plan_id=plan.id, step_index=step.index)
            return "not_started"

        tool_context = {
            **context,
            "plan_id": plan.id,
            "step_index": step.index,
            "user_id": plan.user_id,
        }
        log.debug(
            "step_executing",
            plan_id=plan.id, step_index=step.index, tool=step.tool_name,
            parameters=resolution.resolved_params,
        )
        try:
            result = await tool.execute(resolution.resolved_params, tool_context)
        except ToolError as exc:
            await self._fail_step(plan, step, str(exc), exc.retryable, started, emitter)
            return "failed"
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            log.exception("tool_execution_error", plan_id=plan.id, step_index=step.index)
            await self._fail_step(
                plan, step, message, is_transient_error(message), started, emitter,
            )
            return "failed"

        if not result.success:
            message = result.error or "Tool reported failure"
            await self._fail_step(
                plan, step, message,
                result.retryable or is_transient_error(message),
                started, emitter,
            )
            return "failed"

        try:
            json.dumps(result.output)
        except (TypeError, ValueError) as exc:
            await self._fail_step(
                plan, step, f"Tool output is not JSON-serializable: {exc}", False, started, emitter,
            )
            return "failed"

        duration_ms = _elapsed_ms(started)
        step.status = StepStatus.COMPLETED
        step.result = result.output
        step.error = None
        step.completed_at = _now()
        await self._repository.update_step(step)
        await self._repository.advance_current_step(plan.id, step.index + 1)
        log.info(
            "step_completed",
            plan_id=plan.id, step_index=step.index, tool=step.tool_name, duration_ms=duration_ms,
        )
        await emitter.emit(create_step_completed_event(
            step.index, step.tool_name, step.description, duration_ms,
            summarize_result(result.output),
        ))
        return "completed"

    async def _request_approval(
        self,
        plan: StructuredPlan,
        step: StructuredStep,
        tool: BaseTool,
        params: dict[str, Any],
        emitter: PlanEventEmitter,
    ) -> None:
        risk_level = tool.risk_level or self._config.default_risk_level
        expires_at = _now() + timedelta(hours=self._config.approval_expiry.hours_for(risk_level))
        approval = await self._approvals.create(
            user_id=plan.user_id,
            plan_id=plan.id,
            step_index=step.index,
            tool_name=step.tool_name,
            parameters=params,
            risk_level=risk_level,
            reasoning=step.description,
            expires_at=expires_at,
        )

        step.approval_id = approval.id
        await self._repository.update_step(step)
        await self._repository.update_plan_status(plan.id, PlanStatus.PAUSED)
        log.info(
            "plan_paused",
            plan_id=plan.id, step_index=step.index, approval_id=approval.id, risk=risk_level,
        )
        await emitter.emit(create_approval_requested_event(
            step.index, approval.id, step.tool_name, step.description, risk_level, expires_at,
        ))
        await emitter.emit(create_plan_paused_event(
            step.index, "approval_needed", approval.id, step.tool_name, risk_level,
        ))

    # --- Step transitions ---

    async def _fail_step(
        self,
        plan: StructuredPlan,
        step: StructuredStep,
        error: str,
        retryable: bool,
        started: float,
        emitter: PlanEventEmitter,
    ) -> None:
        duration_ms = _elapsed_ms(started)
        step.status = StepStatus.FAILED
        step.error = error
        step.retryable = retryable
        step.completed_at = _now()
        await self._repository.update_step(step)
        log.warning(
            "step_failed",
            plan_id=plan.id, step_index=step.index, error=error, retryable=retryable,
        )
        await emitter.emit(create_step_failed_event(
            step.index, step.tool_name, step.description, error, retryable, duration_ms,
        ))

    async def _skip_step(
        self,
        step: StructuredStep,
        reason: Literal["dependency_failed", "user_cancelled", "plan_cancelled"],
        emitter: PlanEventEmitter,
    ) -> None:
        step.status = StepStatus.SKIPPED
        step.skip_reason = reason
        step.completed_at = _now()
        await self._repository.update_step(step)
        log.info("step_skipped", plan_id=step.plan_id, step_index=step.index, reason=reason)
        await emitter.emit(create_step_skipped_event(
            step.index, step.tool_name, step.description, reason,
        ))

    # --- Recovery ---

    async def _recover_interrupted(self, plan: StructuredPlan, emitter: PlanEventEmitter) -> None:
        """A plan found ``running`` was cut off mid-run: fail in-flight steps, then continue."""
        interrupted = plan.steps_with_status(StepStatus.RUNNING)
        started = time.monotonic()
        for step in interrupted:
            await self._fail_step(plan, step, "Execution interrupted", True, started, emitter)

        resume_at = min((s.index for s in interrupted), default=plan.current_step_index)
        log.info("plan_resumed", plan_id=plan.id, step_index=resume_at, reason="recovery")
        await emitter.emit(create_plan_resumed_event(resume_at, "recovery"))

    async def _retry(
        self, plan: StructuredPlan, context: dict[str, Any], started: float
    ) -> PlanExecutionResult:
        if plan.status != PlanStatus.FAILED:
            raise PlanningError(
                PlanningErrorCode.NOT_RETRYABLE,
                f"Only failed plans can be retried (status: {plan.status.value})",
                plan.id,
            )
        if not retryable_failure(plan):
            raise PlanningError(
                PlanningErrorCode.NOT_RETRYABLE,
                "Plan has failures that are not retryable",
                plan.id,
            )

        to_retry = steps_to_retry(plan)
        for step in to_retry:
            step.status = StepStatus.PENDING
            step.result = None
            step.error = None
            step.retryable = False
            step.skip_reason = None
            step.approval_id = None
            step.started_at = None
            step.completed_at = None
            await self._repository.update_step(step)

        await self._repository.update_plan_status(plan.id, PlanStatus.RUNNING)
        emitter = self.get_plan_event_emitter(plan.id)
        log.info("plan_resumed", plan_id=plan.id, step_index=to_retry[0].index, reason="retry")
        await emitter.emit(create_plan_resumed_event(to_retry[0].index, "retry"))
        return await self._run(plan.id, context, started)

    # --- Helpers ---

    async def _load(self, plan_id: str) -> StructuredPlan:
        plan = await self._repository.get_by_id(plan_id)
        if plan is None:
            raise PlanningError(PlanningErrorCode.PLAN_NOT_FOUND, f"Plan {plan_id} not found", plan_id)
        return plan

    async def _step_awaiting(self, plan: StructuredPlan, approval_id: str) -> StructuredStep:
        if plan.status != PlanStatus.PAUSED:
            raise PlanningError(
                PlanningErrorCode.PLAN_NOT_PAUSED,
                f"Plan is not paused (status: {plan.status.value})",
                plan.id,
            )
        step = step_awaiting_approval(plan)
        if step is not None and step.approval_id == approval_id:
            return step
        raise PlanningError(
            PlanningErrorCode.STEP_NOT_FOUND,
            f"No step found awaiting approval {approval_id}",
            plan.id,
        )

    def _result(
        self,
        plan: StructuredPlan,
        started: float,
        stopped_at: int,
        *,
        paused: bool = False,
        pending_approval_id: str | None = None,
        error: str | None = None,
        cancelled: bool = False,
    ) -> PlanExecutionResult:
        completed = plan.steps_with_status(StepStatus.COMPLETED)
        return PlanExecutionResult(
            plan=plan,
            success=plan.status == PlanStatus.COMPLETED,
            paused=paused,
            pending_approval_id=pending_approval_id,
            stopped_at_step=stopped_at,
            completed_steps=len(completed),
            failed_steps=len(plan.steps_with_status(StepStatus.FAILED)),
            skipped_steps=len(plan.steps_with_status(StepStatus.SKIPPED)),
            duration_ms=_elapsed_ms(started),
            step_results={s.index: s.result for s in completed},
            error=error,
            cancelled=cancelled,
        )
