"""Step failure classification and retry bookkeeping."""

from __future__ import annotations

from enum import Enum

from concierge.planner.models import (
    StepStatus,
    StructuredPlan,
    StructuredStep,
    dependency_indices,
)


class StepErrorType(str, Enum):
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    SERVICE_UNAVAILABLE = "service_unavailable"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"


# First matching row wins.
_KEYWORDS: list[tuple[StepErrorType, tuple[str, ...]]] = [
    (StepErrorType.RATE_LIMIT, ("rate limit", "too many requests", "429")),
    (StepErrorType.TIMEOUT, ("timeout", "timed out", "deadline exceeded")),
    (StepErrorType.NETWORK_ERROR, ("network", "connection", "econnrefused", "enotfound")),
    (StepErrorType.SERVICE_UNAVAILABLE, ("unavailable", "503", "service error", "model_overloaded")),
    (StepErrorType.AUTHENTICATION, ("auth", "401", "unauthorized", "unauthenticated")),
    (StepErrorType.PERMISSION, ("permission", "403", "forbidden", "access denied")),
    (StepErrorType.VALIDATION, ("validation", "invalid", "400", "bad request")),
    (StepErrorType.NOT_FOUND, ("not found", "404", "does not exist")),
    (StepErrorType.CONFLICT, ("conflict", "409", "already exists")),
]

_RETRYABLE = frozenset({
    StepErrorType.RATE_LIMIT,
    StepErrorType.TIMEOUT,
    StepErrorType.NETWORK_ERROR,
    StepErrorType.SERVICE_UNAVAILABLE,
})


def classify_error(message: str) -> StepErrorType:
    lowered = message.lower()
    for error_type, keywords in _KEYWORDS:
        if any(k in lowered for k in keywords):
            return error_type
    return StepErrorType.UNKNOWN


def is_retryable(error_type: StepErrorType) -> bool:
    return error_type in _RETRYABLE


def is_transient_error(message: str) -> bool:
    return is_retryable(classify_error(message))


def dependent_steps(plan: StructuredPlan, step: StructuredStep) -> list[StructuredStep]:
    """Steps that depend on ``step``, directly or through other dependents."""
    found: dict[int, StructuredStep] = {}
    frontier = [step.index]
    while frontier:
        current = frontier.pop()
        for candidate in plan.steps:
            if candidate.index in found or candidate.index == step.index:
                continue
            if current in dependency_indices(plan, candidate):
                found[candidate.index] = candidate
                frontier.append(candidate.index)
    return sorted(found.values(), key=lambda s: s.index)


def retryable_failure(plan: StructuredPlan) -> bool:
    """True when the plan has failed steps and every one of them is retryable."""
    failed = plan.steps_with_status(StepStatus.FAILED)
    return bool(failed) and all(s.retryable for s in failed)


def steps_to_retry(plan: StructuredPlan) -> list[StructuredStep]:
    """Failed steps plus the steps skipped because of them, ordered by index."""
    selected: dict[int, StructuredStep] = {}
    for failed in plan.steps_with_status(StepStatus.FAILED):
        selected[failed.index] = failed
        for dep in dependent_steps(plan, failed):
            if dep.status == StepStatus.SKIPPED and dep.skip_reason == "dependency_failed":
                selected[dep.index] = dep
    return sorted(selected.values(), key=lambda s: s.index)
