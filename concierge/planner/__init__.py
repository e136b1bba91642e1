"""Structured plan execution with approval gating."""

from concierge.planner.models import (
    PlanningError,
    PlanningErrorCode,
    PlanStatus,
    StepDraft,
    StepStatus,
    StructuredPlan,
    StructuredStep,
    new_plan,
)
from concierge.planner.executor import PlanExecutionResult, PlanExecutor
from concierge.planner.rollback import RollbackAnalysis, RollbackResult

__all__ = [
    "PlanExecutionResult",
    "PlanExecutor",
    "PlanningError",
    "PlanningErrorCode",
    "PlanStatus",
    "RollbackAnalysis",
    "RollbackResult",
    "StepDraft",
    "StepStatus",
    "StructuredPlan",
    "StructuredStep",
    "new_plan",
]
