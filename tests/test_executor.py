"""Tests for the plan executor state machine."""

from datetime import datetime, timedelta, timezone

import pytest

from concierge.config import ApprovalExpiryConfig, ExecutorConfig
from concierge.planner.approvals import ApprovalStatus, SqliteApprovalStore
from concierge.planner.events import PlanEventType
from concierge.planner.executor import PlanExecutor
from concierge.planner.models import (
    PlanningError,
    PlanningErrorCode,
    PlanStatus,
    StepDraft,
    StepStatus,
    new_plan,
)
from concierge.planner.repository import SqlitePlanRepository
from concierge.tools.base import BaseTool, RollbackAction, ToolError, ToolResult


class FakeTool(BaseTool):
    def __init__(self, name, *, output=None, raises=None, result=None, risk_level=None, on_call=None,
                 rollback=None):
        self._name = name
        self._output = output
        self._raises = raises
        self._result = result
        self._risk_level = risk_level
        self._on_call = on_call
        self._rollback = rollback
        self.calls = []

    @property
    def name(self):
        return self._name

    @property
    def description(self):
        return f"Fake {self._name}"

    @property
    def parameters(self):
        return {"type": "object"}

    @property
    def risk_level(self):
        return self._risk_level

    @property
    def rollback_action(self):
        return self._rollback

    async def execute(self, params, context):
        self.calls.append((params, context))
        if self._on_call:
            await self._on_call()
        if self._raises:
            raise self._raises
        if self._result is not None:
            return self._result
        return ToolResult(success=True, output=self._output if self._output is not None else params)


@pytest.fixture
async def repo(tmp_path):
    r = SqlitePlanRepository(tmp_path / "plans.db")
    await r.start()
    yield r
    await r.stop()


@pytest.fixture
async def approvals(tmp_path):
    s = SqliteApprovalStore(tmp_path / "approvals.db")
    await s.start()
    yield s
    await s.stop()


def _executor(repo, approvals, *tools, **config):
    return PlanExecutor(repo, {t.name: t for t in tools}, approvals, ExecutorConfig(**config))


async def _store(repo, *drafts, goal="Tidy up the week"):
    plan = new_plan("u1", goal, list(drafts))
    await repo.create(plan)
    return plan


def _types(emitter):
    return [e.type.value for e in emitter.get_history()]


class TestExecutePlan:
    async def test_runs_steps_and_passes_outputs(self, repo, approvals):
        find = FakeTool("find_email", output={"id": "msg_1", "from": "sarah@example.com"})
        reply = FakeTool("reply")
        executor = _executor(repo, approvals, find, reply)
        plan = await _store(
            repo,
            StepDraft(tool_name="find_email", parameters={"q": "invoice"}),
            StepDraft(
                tool_name="reply",
                parameters={"message_id": "{{step.0.output.id}}", "body": "Thanks {{step.0.output.from}}"},
                depends_on_indices=[0],
            ),
        )
        emitter = executor.get_plan_event_emitter(plan.id)

        result = await executor.execute_plan(plan.id, {"timezone": "UTC"})

        assert result.success
        assert result.completed_steps == 2
        assert result.step_results[0] == {"id": "msg_1", "from": "sarah@example.com"}
        params, context = reply.calls[0]
        assert params == {"message_id": "msg_1", "body": "Thanks sarah@example.com"}
        assert context == {"timezone": "UTC", "plan_id": plan.id, "step_index": 1, "user_id": "u1"}
        assert _types(emitter) == [
            "plan_started",
            "step_starting", "step_completed",
            "step_starting", "step_completed",
            "plan_completed",
        ]
        completed = emitter.get_last_event(PlanEventType.PLAN_COMPLETED)
        assert completed.successful_steps == 2 and completed.total_steps == 2

        stored = await repo.get_by_id(plan.id)
        assert stored.status == PlanStatus.COMPLETED
        assert stored.completed_at is not None
        assert stored.current_step_index == 2

    async def test_failed_dependency_skips_dependent(self, repo, approvals):
        broken = FakeTool("create_event", raises=ToolError("calendar rejected the event"))
        invite = FakeTool("invite")
        executor = _executor(repo, approvals, broken, invite)
        plan = await _store(
            repo,
            StepDraft(tool_name="create_event"),
            StepDraft(tool_name="invite", depends_on_indices=[0]),
        )
        emitter = executor.get_plan_event_emitter(plan.id)

        result = await executor.execute_plan(plan.id)

        assert not result.success
        assert result.failed_steps == 1 and result.skipped_steps == 1
        assert invite.calls == []
        stored = await repo.get_by_id(plan.id)
        assert stored.status == PlanStatus.FAILED
        assert stored.get_step(1).status == StepStatus.SKIPPED
        assert stored.get_step(1).skip_reason == "dependency_failed"
        assert stored.get_step(1).started_at is None
        assert not any(
            e.type == PlanEventType.STEP_STARTING and e.step_index == 1 for e in emitter.get_history()
        )
        failed = emitter.get_last_event(PlanEventType.PLAN_FAILED)
        assert failed.failed_step_index == 0
        assert failed.error == "calendar rejected the event"

    async def test_skips_cascade_through_chain(self, repo, approvals):
        executor = _executor(
            repo, approvals,
            FakeTool("a", raises=ToolError("nope")), FakeTool("b"), FakeTool("c"), FakeTool("d"),
        )
        plan = await _store(
            repo,
            StepDraft(tool_name="a"),
            StepDraft(tool_name="b", depends_on_indices=[0]),
            StepDraft(tool_name="c", depends_on_indices=[1]),
            StepDraft(tool_name="d"),
        )

        await executor.execute_plan(plan.id)

        stored = await repo.get_by_id(plan.id)
        assert [s.status for s in stored.steps] == [
            StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.SKIPPED, StepStatus.COMPLETED,
        ]
        assert stored.get_step(2).skip_reason == "dependency_failed"
        assert stored.status == PlanStatus.FAILED

    async def test_stop_on_failure(self, repo, approvals):
        other = FakeTool("b")
        executor = _executor(repo, approvals, FakeTool("a", raises=ToolError("nope")), other, stop_on_failure=True)
        plan = await _store(repo, StepDraft(tool_name="a"), StepDraft(tool_name="b"))

        result = await executor.execute_plan(plan.id)

        assert result.plan.status == PlanStatus.FAILED
        assert result.plan.get_step(1).status == StepStatus.PENDING
        assert other.calls == []

    async def test_output_resolution_failure(self, repo, approvals):
        second = FakeTool("b")
        executor = _executor(repo, approvals, FakeTool("a", output={"x": 1}), second)
        plan = await _store(
            repo,
            StepDraft(tool_name="a"),
            StepDraft(tool_name="b", parameters={"v": "{{step.0.output.missing}}"}),
        )

        await executor.execute_plan(plan.id)

        step = (await repo.get_by_id(plan.id)).get_step(1)
        assert step.status == StepStatus.FAILED
        assert step.error.startswith("Failed to resolve step outputs")
        assert step.retryable is False
        assert second.calls == []

    async def test_unknown_tool(self, repo, approvals):
        executor = _executor(repo, approvals)
        plan = await _store(repo, StepDraft(tool_name="teleport"))

        result = await executor.execute_plan(plan.id)

        assert result.error == "Unknown tool: teleport"
        assert result.plan.get_step(0).retryable is False

    @pytest.mark.parametrize("tool,retryable", [
        (FakeTool("t", raises=ConnectionError("connection refused")), True),
        (FakeTool("t", raises=ValueError("bad input")), False),
        (FakeTool("t", raises=ToolError("try later", retryable=True)), True),
        (FakeTool("t", result=ToolResult(success=False, error="quota", retryable=True)), True),
        (FakeTool("t", result=ToolResult(success=False, error="503 Service Unavailable")), True),
        (FakeTool("t", result=ToolResult(success=False, error="bad input")), False),
    ])
    async def test_retryable_classification(self, repo, approvals, tool, retryable):
        executor = _executor(repo, approvals, tool)
        plan = await _store(repo, StepDraft(tool_name="t"))
        emitter = executor.get_plan_event_emitter(plan.id)

        await executor.execute_plan(plan.id)

        failed = emitter.get_last_event(PlanEventType.STEP_FAILED)
        assert failed.retryable is retryable
        assert (await repo.get_by_id(plan.id)).get_step(0).retryable is retryable

    async def test_async_subscriber_sees_events_in_order(self, repo, approvals):
        executor = _executor(repo, approvals, FakeTool("a"))
        plan = await _store(repo, StepDraft(tool_name="a"))
        seen = []

        async def record(event):
            seen.append(event.type.value)

        executor.get_plan_event_emitter(plan.id).subscribe_async(record)
        await executor.execute_plan(plan.id)

        assert seen == ["plan_started", "step_starting", "step_completed", "plan_completed"]

    async def test_unserializable_output_fails_step(self, repo, approvals):
        executor = _executor(repo, approvals, FakeTool("get_deadline", output={"due": datetime.now(timezone.utc)}))
        plan = await _store(repo, StepDraft(tool_name="get_deadline"))
        emitter = executor.get_plan_event_emitter(plan.id)

        result = await executor.execute_plan(plan.id)

        assert not result.success
        step = result.plan.get_step(0)
        assert step.status == StepStatus.FAILED
        assert "JSON-serializable" in step.error
        assert step.retryable is False
        assert step.result is None
        assert result.plan.status == PlanStatus.FAILED
        assert _types(emitter)[-2:] == ["step_failed", "plan_failed"]


class TestExecuteErrors:
    async def test_missing_plan(self, repo, approvals):
        with pytest.raises(PlanningError) as exc_info:
            await _executor(repo, approvals).execute_plan("nope")
        assert exc_info.value.code == PlanningErrorCode.PLAN_NOT_FOUND

    async def test_already_completed(self, repo, approvals):
        executor = _executor(repo, approvals, FakeTool("a"))
        plan = await _store(repo, StepDraft(tool_name="a"))
        await executor.execute_plan(plan.id)
        with pytest.raises(PlanningError) as exc_info:
            await executor.execute_plan(plan.id)
        assert exc_info.value.code == PlanningErrorCode.PLAN_ALREADY_COMPLETED

    async def test_already_failed(self, repo, approvals):
        executor = _executor(repo, approvals)
        plan = await _store(repo, StepDraft(tool_name="missing"))
        await executor.execute_plan(plan.id)
        with pytest.raises(PlanningError) as exc_info:
            await executor.execute_plan(plan.id)
        assert exc_info.value.code == PlanningErrorCode.PLAN_ALREADY_FAILED

    async def test_non_topological_plan_rejected(self, repo, approvals):
        executor = _executor(repo, approvals, FakeTool("a"), FakeTool("b"))
        plan = await _store(
            repo,
            StepDraft(tool_name="a", depends_on_indices=[1]),
            StepDraft(tool_name="b"),
        )
        with pytest.raises(PlanningError) as exc_info:
            await executor.execute_plan(plan.id)
        assert exc_info.value.code == PlanningErrorCode.VALIDATION_FAILED
        assert (await repo.get_by_id(plan.id)).status == PlanStatus.PLANNED


class TestApprovalGating:
    async def test_pause_and_approve(self, repo, approvals):
        delete = FakeTool("delete_event", output={"deleted": True}, risk_level="high")
        executor = _executor(repo, approvals, delete)
        plan = await _store(repo, StepDraft(tool_name="delete_event", description="Delete standup"))
        emitter = executor.get_plan_event_emitter(plan.id)

        paused = await executor.execute_plan(plan.id)

        assert paused.paused and not paused.success
        assert delete.calls == []
        stored = await repo.get_by_id(plan.id)
        assert stored.status == PlanStatus.PAUSED
        step = stored.get_step(0)
        assert step.status == StepStatus.PENDING
        assert step.approval_id == paused.pending_approval_id
        approval = await approvals.get(paused.pending_approval_id)
        assert approval.status == ApprovalStatus.PENDING
        assert approval.risk_level == "high"
        assert timedelta(hours=3, minutes=59) < approval.expires_at - approval.created_at <= timedelta(hours=4)
        assert _types(emitter) == ["plan_started", "approval_requested", "plan_paused"]

        result = await executor.resume_plan(plan.id, paused.pending_approval_id, decided_by="u1")

        assert result.success
        assert len(delete.calls) == 1
        assert (await approvals.get(paused.pending_approval_id)).status == ApprovalStatus.APPROVED
        assert _types(emitter)[3:] == [
            "approval_received", "plan_resumed", "step_starting", "step_completed", "plan_completed",
        ]
        resumed = emitter.get_last_event(PlanEventType.PLAN_RESUMED)
        assert resumed.resume_reason == "approval_granted"

    async def test_step_flag_uses_default_risk(self, repo, approvals):
        executor = _executor(repo, approvals, FakeTool("send"))
        plan = await _store(repo, StepDraft(tool_name="send", requires_approval=True))

        paused = await executor.execute_plan(plan.id)

        approval = await approvals.get(paused.pending_approval_id)
        assert approval.risk_level == "medium"
        assert approval.expires_at - approval.created_at > timedelta(hours=11)

    async def test_expired_approval(self, repo, approvals):
        executor = _executor(
            repo, approvals, FakeTool("wipe", risk_level="critical"),
            approval_expiry=ApprovalExpiryConfig(critical=0),
        )
        plan = await _store(repo, StepDraft(tool_name="wipe"))
        paused = await executor.execute_plan(plan.id)

        with pytest.raises(PlanningError) as exc_info:
            await executor.resume_plan(plan.id, paused.pending_approval_id)

        assert exc_info.value.code == PlanningErrorCode.APPROVAL_EXPIRED
        assert (await approvals.get(paused.pending_approval_id)).status == ApprovalStatus.EXPIRED

    async def test_resume_errors(self, repo, approvals):
        executor = _executor(repo, approvals, FakeTool("wipe", risk_level="high"))
        plan = await _store(repo, StepDraft(tool_name="wipe"))

        with pytest.raises(PlanningError) as exc_info:
            await executor.resume_plan(plan.id, "whatever")
        assert exc_info.value.code == PlanningErrorCode.PLAN_NOT_PAUSED

        paused = await executor.execute_plan(plan.id)
        with pytest.raises(PlanningError) as exc_info:
            await executor.resume_plan(plan.id, "other-approval")
        assert exc_info.value.code == PlanningErrorCode.STEP_NOT_FOUND

        await approvals.update_status(paused.pending_approval_id, ApprovalStatus.APPROVED)
        with pytest.raises(PlanningError) as exc_info:
            await executor.resume_plan(plan.id, paused.pending_approval_id)
        assert exc_info.value.code == PlanningErrorCode.APPROVAL_NOT_PENDING

    async def test_rejection_skips_step(self, repo, approvals):
        delete = FakeTool("delete", risk_level="high")
        notify = FakeTool("notify")
        log_it = FakeTool("log")
        executor = _executor(repo, approvals, delete, notify, log_it)
        plan = await _store(
            repo,
            StepDraft(tool_name="delete"),
            StepDraft(tool_name="notify", depends_on_indices=[0]),
            StepDraft(tool_name="log"),
        )
        emitter = executor.get_plan_event_emitter(plan.id)
        paused = await executor.execute_plan(plan.id)

        result = await executor.resume_plan_after_rejection(plan.id, paused.pending_approval_id, decided_by="u1")

        assert delete.calls == [] and notify.calls == []
        assert len(log_it.calls) == 1
        assert result.plan.get_step(0).skip_reason == "user_cancelled"
        assert result.plan.get_step(1).skip_reason == "dependency_failed"
        assert result.plan.status == PlanStatus.COMPLETED
        assert (await approvals.get(paused.pending_approval_id)).status == ApprovalStatus.REJECTED
        received = emitter.get_last_event(PlanEventType.APPROVAL_RECEIVED)
        assert received.decision == "rejected" and received.decided_by == "u1"
        resumed = emitter.get_last_event(PlanEventType.PLAN_RESUMED)
        assert resumed.resume_reason == "approval_rejected"
        assert resumed.step_index == 0

    async def test_rejection_fails_step(self, repo, approvals):
        executor = _executor(
            repo, approvals, FakeTool("delete", risk_level="high"), FakeTool("log"),
            rejection_policy="fail",
        )
        plan = await _store(repo, StepDraft(tool_name="delete"), StepDraft(tool_name="log"))
        paused = await executor.execute_plan(plan.id)

        result = await executor.resume_plan_after_rejection(plan.id, paused.pending_approval_id)

        step = result.plan.get_step(0)
        assert step.status == StepStatus.FAILED
        assert step.error == "Approval rejected"
        assert result.plan.get_step(1).status == StepStatus.COMPLETED
        assert result.plan.status == PlanStatus.FAILED

        with pytest.raises(PlanningError) as exc_info:
            await executor.resume_plan(plan.id)
        assert exc_info.value.code == PlanningErrorCode.NOT_RETRYABLE


class TestCancel:
    async def test_cancel_completed_rejected(self, repo, approvals):
        executor = _executor(repo, approvals, FakeTool("a"))
        plan = await _store(repo, StepDraft(tool_name="a"))
        await executor.execute_plan(plan.id)
        with pytest.raises(PlanningError) as exc_info:
            await executor.cancel_plan(plan.id)
        assert exc_info.value.code == PlanningErrorCode.PLAN_ALREADY_COMPLETED

    async def test_cancel_twice_rejected(self, repo, approvals):
        executor = _executor(repo, approvals)
        plan = await _store(repo, StepDraft(tool_name="a"))
        await executor.cancel_plan(plan.id)
        with pytest.raises(PlanningError) as exc_info:
            await executor.cancel_plan(plan.id)
        assert exc_info.value.code == PlanningErrorCode.INVALID_STATE_TRANSITION

    async def test_cancel_running_plan(self, repo, approvals):
        executor = _executor(repo, approvals)
        plan = await _store(repo, StepDraft(tool_name="a"), StepDraft(tool_name="b"))
        await repo.update_plan_status(plan.id, PlanStatus.RUNNING)
        emitter = executor.get_plan_event_emitter(plan.id)

        cancelled = await executor.cancel_plan(plan.id, cancelled_by="system")

        assert cancelled.status == PlanStatus.CANCELLED
        assert all(s.skip_reason == "plan_cancelled" for s in cancelled.steps)
        assert _types(emitter).count("plan_cancelled") == 1
        assert emitter.get_last_event(PlanEventType.PLAN_CANCELLED).cancelled_by == "system"

    async def test_cancel_paused_rejects_approval(self, repo, approvals):
        executor = _executor(repo, approvals, FakeTool("wipe", risk_level="high"))
        plan = await _store(repo, StepDraft(tool_name="wipe"))
        paused = await executor.execute_plan(plan.id)

        await executor.cancel_plan(plan.id)

        assert (await approvals.get(paused.pending_approval_id)).status == ApprovalStatus.REJECTED
        with pytest.raises(PlanningError) as exc_info:
            await executor.execute_plan(plan.id)
        assert exc_info.value.code == PlanningErrorCode.INVALID_STATE_TRANSITION

    async def test_cancel_observed_at_step_boundary(self, repo, approvals):
        holder = {}

        async def cancel_mid_step():
            await holder["executor"].cancel_plan(holder["plan_id"])

        slow = FakeTool("slow", on_call=cancel_mid_step)
        after = FakeTool("after")
        executor = _executor(repo, approvals, slow, after)
        plan = await _store(repo, StepDraft(tool_name="slow"), StepDraft(tool_name="after"))
        holder.update(executor=executor, plan_id=plan.id)
        emitter = executor.get_plan_event_emitter(plan.id)

        result = await executor.execute_plan(plan.id)

        assert result.cancelled and not result.success
        assert after.calls == []
        assert result.plan.get_step(0).status == StepStatus.COMPLETED
        assert result.plan.get_step(1).skip_reason == "plan_cancelled"
        types = _types(emitter)
        assert types.count("plan_cancelled") == 1
        assert "plan_completed" not in types and "plan_failed" not in types

    async def test_cancel_during_step_starting_prevents_call(self, repo, approvals):
        first = FakeTool("a")
        second = FakeTool("b")
        executor = _executor(repo, approvals, first, second)
        plan = await _store(repo, StepDraft(tool_name="a"), StepDraft(tool_name="b"))
        emitter = executor.get_plan_event_emitter(plan.id)

        async def cancel_before_second(event):
            if event.type == PlanEventType.STEP_STARTING and event.step_index == 1:
                await executor.cancel_plan(plan.id)

        emitter.subscribe_async(cancel_before_second)

        result = await executor.execute_plan(plan.id)

        assert len(first.calls) == 1
        assert second.calls == []
        assert result.cancelled and not result.success
        assert result.plan.status == PlanStatus.CANCELLED
        step = result.plan.get_step(1)
        assert step.status == StepStatus.SKIPPED
        assert step.skip_reason == "plan_cancelled"
        assert step.started_at is None
        types = _types(emitter)
        assert types.count("plan_cancelled") == 1
        assert "step_completed" not in types[types.index("plan_cancelled"):]
        assert "plan_completed" not in types and "plan_failed" not in types


class TestRecovery:
    async def test_interrupted_plan_recovers_then_retries(self, repo, approvals):
        first = FakeTool("a", output="ok")
        second = FakeTool("b")
        executor = _executor(repo, approvals, first, second)
        plan = await _store(repo, StepDraft(tool_name="a"), StepDraft(tool_name="b", depends_on_indices=[0]))
        await repo.update_plan_status(plan.id, PlanStatus.RUNNING)
        step = plan.get_step(0)
        step.status = StepStatus.RUNNING
        await repo.update_step(step)

        assert [p.id for p in await executor.get_interrupted_plans("u1")] == [plan.id]
        emitter = executor.get_plan_event_emitter(plan.id)

        result = await executor.execute_plan(plan.id)

        assert first.calls == []
        assert result.plan.status == PlanStatus.FAILED
        interrupted = result.plan.get_step(0)
        assert interrupted.error == "Execution interrupted"
        assert interrupted.retryable is True
        assert result.plan.get_step(1).skip_reason == "dependency_failed"
        assert emitter.get_last_event(PlanEventType.PLAN_RESUMED).resume_reason == "recovery"

        retry_emitter = executor.get_plan_event_emitter(plan.id)
        retried = await executor.resume_plan(plan.id)

        assert retried.success
        assert len(first.calls) == 1 and len(second.calls) == 1
        assert retry_emitter.get_last_event(PlanEventType.PLAN_RESUMED).resume_reason == "retry"
        stored = await repo.get_by_id(plan.id)
        assert stored.status == PlanStatus.COMPLETED
        assert stored.get_step(0).error is None

    async def test_retry_requires_failed_plan(self, repo, approvals):
        executor = _executor(repo, approvals)
        plan = await _store(repo, StepDraft(tool_name="a"))
        with pytest.raises(PlanningError) as exc_info:
            await executor.resume_plan(plan.id)
        assert exc_info.value.code == PlanningErrorCode.NOT_RETRYABLE

    async def test_pending_plans(self, repo, approvals):
        executor = _executor(repo, approvals, FakeTool("wipe", risk_level="high"), FakeTool("a"))
        planned = await _store(repo, StepDraft(tool_name="a"))
        paused = await _store(repo, StepDraft(tool_name="wipe"))
        done = await _store(repo, StepDraft(tool_name="a"))
        await executor.execute_plan(paused.id)
        await executor.execute_plan(done.id)

        pending = await executor.get_pending_plans("u1")

        assert {p.id for p in pending} == {planned.id, paused.id}
        assert await executor.get_interrupted_plans("u1") == []


def _recording(order, name, **kwargs):
    async def record():
        order.append(name)

    return FakeTool(name, on_call=record, **kwargs)


class TestRollback:
    async def _completed_plan(self, repo, approvals, *, delete_task=None, order=None):
        order = [] if order is None else order
        tools = [
            FakeTool("create_task", output={"id": "task_9"}),
            FakeTool("create_calendar_event", output={"eventId": "evt_3"}),
            FakeTool("send_email"),
            delete_task or _recording(order, "delete_task"),
            _recording(order, "delete_calendar_event"),
        ]
        executor = _executor(repo, approvals, *tools)
        plan = await _store(
            repo,
            StepDraft(tool_name="create_task", parameters={"title": "Prep"}),
            StepDraft(tool_name="create_calendar_event", parameters={"title": "Sync"}),
            StepDraft(tool_name="send_email", parameters={"to": "sarah@example.com"}),
        )
        await executor.execute_plan(plan.id)
        return executor, plan, {t.name: t for t in tools}

    async def test_undoes_completed_steps_latest_first(self, repo, approvals):
        order = []
        executor, plan, tools = await self._completed_plan(repo, approvals, order=order)

        result = await executor.rollback_plan(plan.id, context={"timezone": "UTC"})

        assert result.success and not result.dry_run
        assert result.total_rollbackable == 2 and result.rolled_back_count == 2
        assert order == ["delete_calendar_event", "delete_task"]
        assert result.rolled_back_steps == [plan.get_step(1).id, plan.get_step(0).id]
        params, context = tools["delete_task"].calls[0]
        assert params == {"taskId": "task_9"}
        assert context["rollback"] is True and context["timezone"] == "UTC"
        assert tools["delete_calendar_event"].calls[0][0] == {"eventId": "evt_3"}

        stored = await repo.get_by_id(plan.id)
        assert [s.status for s in stored.steps] == [
            StepStatus.ROLLED_BACK, StepStatus.ROLLED_BACK, StepStatus.COMPLETED,
        ]
        assert stored.get_step(0).rolled_back_at is not None
        assert stored.get_step(2).rolled_back_at is None
        assert stored.status == PlanStatus.CANCELLED

    async def test_dry_run_changes_nothing(self, repo, approvals):
        executor, plan, tools = await self._completed_plan(repo, approvals)

        result = await executor.rollback_plan(plan.id, dry_run=True)

        assert result.dry_run and result.success
        assert result.rolled_back_steps == [plan.get_step(1).id, plan.get_step(0).id]
        assert tools["delete_task"].calls == [] and tools["delete_calendar_event"].calls == []
        stored = await repo.get_by_id(plan.id)
        assert stored.status == PlanStatus.COMPLETED
        assert all(s.status == StepStatus.COMPLETED for s in stored.steps)

    async def test_selected_steps_only(self, repo, approvals):
        executor, plan, tools = await self._completed_plan(repo, approvals)

        result = await executor.rollback_plan(plan.id, step_ids=[plan.get_step(0).id])

        assert result.rolled_back_count == 1
        assert len(tools["delete_task"].calls) == 1
        assert tools["delete_calendar_event"].calls == []
        stored = await repo.get_by_id(plan.id)
        assert stored.get_step(1).status == StepStatus.COMPLETED

    async def test_failures_are_recorded(self, repo, approvals):
        failing = FakeTool("delete_task", result=ToolResult(success=False, error="task already gone"))
        executor, plan, tools = await self._completed_plan(repo, approvals, delete_task=failing)

        result = await executor.rollback_plan(plan.id)

        assert not result.success
        assert result.rolled_back_steps == [plan.get_step(1).id]
        assert result.failed_steps == [plan.get_step(0).id]
        error = result.errors[0]
        assert error.step_index == 0 and error.tool_name == "delete_task"
        assert error.error == "Rollback execution failed: task already gone"
        stored = await repo.get_by_id(plan.id)
        assert stored.get_step(0).status == StepStatus.COMPLETED
        assert stored.get_step(1).status == StepStatus.ROLLED_BACK

    async def test_stop_on_first_failure(self, repo, approvals):
        executor = _executor(
            repo, approvals,
            FakeTool("create_task", output={"id": "t1"}),
            FakeTool("create_calendar_event", output={"eventId": "e1"}),
            FakeTool("delete_task"),
        )
        plan = await _store(
            repo, StepDraft(tool_name="create_task"), StepDraft(tool_name="create_calendar_event"),
        )
        await executor.execute_plan(plan.id)

        result = await executor.rollback_plan(plan.id, continue_on_error=False)

        assert not result.success
        assert result.errors[0].error == "Rollback tool not found: delete_calendar_event"
        assert result.rolled_back_count == 0
        stored = await repo.get_by_id(plan.id)
        assert stored.status == PlanStatus.COMPLETED
        assert stored.get_step(0).status == StepStatus.COMPLETED

    async def test_step_and_tool_actions(self, repo, approvals):
        unbook = FakeTool("unbook")
        archive = FakeTool("archive")
        executor = _executor(
            repo, approvals,
            FakeTool("book", output={"ref": "R-17"}),
            FakeTool("save", output={"path": "/notes/a.md"}, rollback=RollbackAction("archive", {"path": "{{result.path}}"})),
            unbook, archive,
        )
        plan = await _store(
            repo,
            StepDraft(
                tool_name="book", parameters={"room": "A"},
                rollback_action=RollbackAction("unbook", {"room": "{{params.room}}", "ref": "{{result.ref}}"}),
            ),
            StepDraft(tool_name="save"),
        )
        await executor.execute_plan(plan.id)

        analysis = await executor.analyze_rollback(plan.id)
        assert analysis.effort == "minimal"
        assert [s.action.tool_name for s in analysis.rollbackable_steps] == ["unbook", "archive"]

        result = await executor.rollback_plan(plan.id)

        assert result.success
        assert unbook.calls[0][0] == {"room": "A", "ref": "R-17"}
        assert archive.calls[0][0] == {"path": "/notes/a.md"}

    async def test_running_plan_rejected(self, repo, approvals):
        executor = _executor(repo, approvals)
        plan = await _store(repo, StepDraft(tool_name="create_task"))
        await repo.update_plan_status(plan.id, PlanStatus.RUNNING)

        with pytest.raises(PlanningError) as exc_info:
            await executor.rollback_plan(plan.id)
        assert exc_info.value.code == PlanningErrorCode.INVALID_STATE_TRANSITION
