"""Structural plan validation, run before execution touches plan state."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Collection, Literal

from concierge.planner.models import StructuredPlan, dependency_indices
from concierge.planner.references import validate_output_references

Severity = Literal["error", "warning"]

LOW_CONFIDENCE = 0.5
LONG_PLAN_STEPS = 10


@dataclass
class PlanValidationIssue:
    code: str
    message: str
    step_index: int | None = None
    severity: Severity = "error"


def validate_plan(
    plan: StructuredPlan,
    available_tools: Collection[str] | None = None,
) -> list[PlanValidationIssue]:
    """Return every problem found; an empty list means the plan is runnable.

    Dependencies must point at existing, strictly earlier steps, so a plan
    that passes is already in topological order. Warnings never block
    execution.
    """
    issues: list[PlanValidationIssue] = []

    if not plan.goal or not plan.goal.strip():
        issues.append(PlanValidationIssue("missing_goal", "Plan must have a goal"))
    if not 0.0 <= plan.confidence <= 1.0:
        issues.append(PlanValidationIssue(
            "invalid_confidence", "Plan confidence must be a number between 0 and 1",
        ))
    elif plan.confidence < LOW_CONFIDENCE:
        issues.append(PlanValidationIssue(
            "low_confidence",
            f"Plan has low confidence ({plan.confidence:.2f})",
            severity="warning",
        ))
    if not plan.steps:
        issues.append(PlanValidationIssue("empty_plan", "Plan must have at least one step"))
        return issues
    if len(plan.steps) > LONG_PLAN_STEPS:
        issues.append(PlanValidationIssue(
            "long_plan",
            f"Plan has {len(plan.steps)} steps - consider breaking into smaller plans",
            severity="warning",
        ))

    seen: set[int] = set()
    for position, step in enumerate(plan.steps):
        if step.index in seen:
            issues.append(PlanValidationIssue(
                "duplicate_step_order", f"Duplicate step order: {step.index}", step.index,
            ))
        elif step.index != position:
            issues.append(PlanValidationIssue(
                "invalid_step_order", f"Step has invalid order: {step.index}", step.index,
            ))
        seen.add(step.index)

    known_ids = {s.id for s in plan.steps}
    for step in plan.steps:
        if available_tools is not None and step.tool_name not in available_tools:
            issues.append(PlanValidationIssue(
                "tool_not_found",
                f'Tool "{step.tool_name}" not found in registry',
                step.index,
            ))

        for step_id in step.depends_on:
            if step_id not in known_ids:
                issues.append(PlanValidationIssue(
                    "invalid_dependency",
                    f"Step {step.index} depends on unknown step id {step_id}",
                    step.index,
                ))

        for dep in dependency_indices(plan, step):
            if plan.get_step(dep) is None:
                issues.append(PlanValidationIssue(
                    "invalid_dependency",
                    f"Step {step.index} depends on non-existent step {dep}",
                    step.index,
                ))
            elif dep >= step.index:
                issues.append(PlanValidationIssue(
                    "dependency_out_of_order",
                    f"Step {step.index} depends on step {dep} which comes at or after it",
                    step.index,
                ))

        for error in validate_output_references(step, plan):
            issues.append(PlanValidationIssue(error.type, error.message, step.index))

    return issues


def blocking_issues(issues: list[PlanValidationIssue]) -> list[PlanValidationIssue]:
    return [i for i in issues if i.severity == "error"]
