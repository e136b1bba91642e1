"""Undoing completed plan steps through compensating tool calls."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal, Mapping

from concierge.planner.models import StepStatus, StructuredPlan, StructuredStep
from concierge.planner.references import MISSING, navigate_path
from concierge.tools.base import BaseTool, RollbackAction

RollbackEffort = Literal["none", "minimal", "moderate", "significant"]

_TEMPLATE_RE = re.compile(r"^\{\{\s*(.+?)\s*\}\}$")
_SEGMENT_RE = re.compile(r"^(?:\d+|[A-Za-z_][A-Za-z0-9_]*)$")
_TEMPLATE_ROOTS = ("result", "params")
MAX_TEMPLATE_DEPTH = 5

# Actions that cannot be taken back once they have happened.
NON_REVERSIBLE_TOOLS = frozenset({"send_email", "send_message", "publish"})


class RollbackTemplateError(ValueError):
    pass


@dataclass
class RollbackError:
    step_id: str
    step_index: int
    tool_name: str
    error: str


@dataclass
class RollbackResult:
    plan_id: str
    success: bool = True
    dry_run: bool = False
    total_rollbackable: int = 0
    rolled_back_count: int = 0
    rolled_back_steps: list[str] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)
    errors: list[RollbackError] = field(default_factory=list)
    duration_ms: int = 0


@dataclass
class RollbackableStep:
    step_id: str
    index: int
    tool_name: str
    description: str
    action: RollbackAction


@dataclass
class NonRollbackableStep:
    step_id: str
    index: int
    tool_name: str
    description: str
    reason: str


@dataclass
class RollbackAnalysis:
    plan_id: str
    can_rollback: bool
    rollbackable_steps: list[RollbackableStep]
    non_rollbackable_steps: list[NonRollbackableStep]
    effort: RollbackEffort


def create_delete_rollback(
    delete_tool: str, id_param: str = "id", id_path: str = "id"
) -> RollbackAction:
    """The usual undo for a create: delete the record by the id the create returned."""
    return RollbackAction(tool_name=delete_tool, parameters={id_param: f"{{{{result.{id_path}}}}}"})


STANDARD_ROLLBACKS: dict[str, RollbackAction] = {
    "create_calendar_event": create_delete_rollback("delete_calendar_event", "eventId", "eventId"),
    "create_task": create_delete_rollback("delete_task", "taskId", "id"),
    "draft_email": create_delete_rollback("delete_draft", "draftId", "draftId"),
}


def get_standard_rollback(tool_name: str) -> RollbackAction | None:
    return STANDARD_ROLLBACKS.get(tool_name)


def rollback_action_for(
    step: StructuredStep, tools: Mapping[str, BaseTool] | None = None
) -> RollbackAction | None:
    """The step's own action, else the tool's declared one, else a standard one."""
    if step.rollback_action is not None:
        return step.rollback_action
    tool = (tools or {}).get(step.tool_name)
    if tool is not None and tool.rollback_action is not None:
        return tool.rollback_action
    return get_standard_rollback(step.tool_name)


def rollbackable_steps(
    plan: StructuredPlan, tools: Mapping[str, BaseTool] | None = None
) -> list[StructuredStep]:
    """Completed steps that can be undone, latest first."""
    steps = [
        s for s in plan.steps
        if s.status == StepStatus.COMPLETED and rollback_action_for(s, tools) is not None
    ]
    return sorted(steps, key=lambda s: s.index, reverse=True)


def has_rollbackable_steps(
    plan: StructuredPlan, tools: Mapping[str, BaseTool] | None = None
) -> bool:
    return bool(rollbackable_steps(plan, tools))


def can_fully_rollback(
    plan: StructuredPlan, tools: Mapping[str, BaseTool] | None = None
) -> bool:
    """True when every completed step has a rollback (vacuously true with none)."""
    return all(
        rollback_action_for(s, tools) is not None
        for s in plan.steps_with_status(StepStatus.COMPLETED)
    )


def _non_rollback_reason(step: StructuredStep, tools: Mapping[str, BaseTool]) -> str:
    if step.tool_name in NON_REVERSIBLE_TOOLS:
        return "This action type is not reversible"
    tool = tools.get(step.tool_name)
    if tool is not None and tool.risk_level in ("high", "critical"):
        return "High-risk external action without defined rollback"
    return "No rollback action defined for this step"


def analyze_rollback(
    plan: StructuredPlan, tools: Mapping[str, BaseTool] | None = None
) -> RollbackAnalysis:
    tools = tools or {}
    can: list[RollbackableStep] = []
    cannot: list[NonRollbackableStep] = []
    for step in plan.steps_with_status(StepStatus.COMPLETED):
        action = rollback_action_for(step, tools)
        if action is not None:
            can.append(RollbackableStep(step.id, step.index, step.tool_name, step.description, action))
        else:
            cannot.append(NonRollbackableStep(
                step.id, step.index, step.tool_name, step.description,
                _non_rollback_reason(step, tools),
            ))

    ratio = len(can) / ((len(can) + len(cannot)) or 1)
    effort: RollbackEffort
    if not can:
        effort = "none"
    elif ratio >= 0.8:
        effort = "minimal"
    elif ratio >= 0.5:
        effort = "moderate"
    else:
        effort = "significant"

    return RollbackAnalysis(
        plan_id=plan.id,
        can_rollback=bool(can),
        rollbackable_steps=can,
        non_rollbackable_steps=cannot,
        effort=effort,
    )


def _check_template_path(path: str) -> list[str]:
    parts = path.split(".")
    if len(parts) < 2:
        raise RollbackTemplateError(f"Path must have a root and a field: {path!r}")
    if parts[0] not in _TEMPLATE_ROOTS:
        raise RollbackTemplateError(
            f"Invalid path root {parts[0]!r}, expected one of {', '.join(_TEMPLATE_ROOTS)}"
        )
    if len(parts) > MAX_TEMPLATE_DEPTH:
        raise RollbackTemplateError(f"Path exceeds depth {MAX_TEMPLATE_DEPTH}: {path!r}")
    for segment in parts[1:]:
        if not _SEGMENT_RE.match(segment) or segment.startswith("__"):
            raise RollbackTemplateError(f"Invalid path segment {segment!r} in {path!r}")
    return parts


def resolve_rollback_parameters(parameters: Any, step: StructuredStep) -> Any:
    """Fill ``{{result.x}}`` / ``{{params.x}}`` templates from ``step``.

    Only whole-string templates are substituted. A path that does not exist
    resolves to None; a malformed path raises ``RollbackTemplateError``.
    """
    if isinstance(parameters, str):
        match = _TEMPLATE_RE.match(parameters)
        if match is None:
            return parameters
        root, *rest = _check_template_path(match.group(1))
        source = step.result if root == "result" else step.parameters
        value = navigate_path(source, ".".join(rest))
        return None if value is MISSING else value
    if isinstance(parameters, dict):
        return {key: resolve_rollback_parameters(value, step) for key, value in parameters.items()}
    if isinstance(parameters, (list, tuple)):
        return [resolve_rollback_parameters(value, step) for value in parameters]
    return parameters
