"""Step output references: ``{{step.N.output}}`` and ``{{step.N.output.a.0.b}}``.

A parameter whose whole value is one reference is replaced by the referenced
output itself, keeping its type. References embedded in a longer string are
interpolated as text.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Literal

from concierge.planner.models import StepStatus, StructuredPlan, StructuredStep
from concierge.utils.logging import get_logger

log = get_logger(__name__)

_REFERENCE_RE = re.compile(r"\{\{step\.(\d+)\.output(\.\w+(?:\.\w+)*)?\}\}")
_FULL_REFERENCE_RE = re.compile(r"^\{\{step\.(\d+)\.output(\.\w+(?:\.\w+)*)?\}\}$")

ReferenceErrorType = Literal[
    "step_not_found", "step_not_completed", "path_not_found", "invalid_reference",
]

MISSING = object()


@dataclass
class ResolvedReference:
    reference: str
    step_index: int
    path: str | None
    value: Any


@dataclass
class OutputReferenceError:
    type: ReferenceErrorType
    reference: str
    message: str
    step_index: int
    path: str | None = None


@dataclass
class OutputResolutionResult:
    success: bool
    resolved_params: dict[str, Any]
    resolved_references: list[ResolvedReference] = field(default_factory=list)
    errors: list[OutputReferenceError] = field(default_factory=list)


def create_output_reference(step_index: int, path: str | None = None) -> str:
    if path:
        return f"{{{{step.{step_index}.output.{path}}}}}"
    return f"{{{{step.{step_index}.output}}}}"


def _serialized(params: dict[str, Any]) -> str:
    return json.dumps(params, default=str)


def has_output_references(params: dict[str, Any]) -> bool:
    return _REFERENCE_RE.search(_serialized(params)) is not None


def get_referenced_step_indices(params: dict[str, Any]) -> list[int]:
    """Sorted, de-duplicated step indices referenced anywhere in ``params``."""
    return sorted({int(m.group(1)) for m in _REFERENCE_RE.finditer(_serialized(params))})


def format_output_references(params: dict[str, Any]) -> list[str]:
    """Describe references for display, e.g. ``Step 2: email.id`` (1-based)."""
    described = []
    for match in _REFERENCE_RE.finditer(_serialized(params)):
        path = match.group(2)[1:] if match.group(2) else "full output"
        described.append(f"Step {int(match.group(1)) + 1}: {path}")
    return described


def validate_output_references(
    step: StructuredStep, plan: StructuredPlan
) -> list[OutputReferenceError]:
    """Plan-time check: references must name existing, strictly earlier steps."""
    errors: list[OutputReferenceError] = []
    for index in get_referenced_step_indices(step.parameters):
        reference = create_output_reference(index)
        if plan.get_step(index) is None:
            errors.append(OutputReferenceError(
                type="step_not_found",
                reference=reference,
                message=f"Step {index} does not exist (plan has {len(plan.steps)} steps)",
                step_index=index,
            ))
            continue
        if index >= step.index:
            errors.append(OutputReferenceError(
                type="invalid_reference",
                reference=reference,
                message=(
                    f"Step {step.index} cannot reference step {index} "
                    "(must reference earlier steps)"
                ),
                step_index=index,
            ))
    return errors


def resolve_step_outputs(step: StructuredStep, plan: StructuredPlan) -> OutputResolutionResult:
    """Substitute every reference in ``step.parameters``.

    Errors accumulate rather than stopping at the first broken reference.
    The step's own parameters are never mutated.
    """
    resolver = _Resolver(plan)
    resolved = resolver.resolve(step.parameters)
    success = not resolver.errors

    if not success:
        log.warning(
            "output_resolution_failed",
            plan_id=plan.id,
            step_index=step.index,
            errors=len(resolver.errors),
        )
    elif resolver.references:
        log.debug(
            "output_resolution_succeeded",
            plan_id=plan.id,
            step_index=step.index,
            references=len(resolver.references),
        )

    return OutputResolutionResult(
        success=success,
        resolved_params=resolved,
        resolved_references=resolver.references,
        errors=resolver.errors,
    )


def navigate_path(value: Any, path: str) -> Any:
    """Walk a dot path through dicts and lists. Returns ``MISSING`` on a miss."""
    current = value
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            if not part.isdigit() or int(part) >= len(current):
                return MISSING
            current = current[int(part)]
        else:
            return MISSING
    return current


class _Resolver:
    def __init__(self, plan: StructuredPlan) -> None:
        self._plan = plan
        self.errors: list[OutputReferenceError] = []
        self.references: list[ResolvedReference] = []

    def resolve(self, value: Any) -> Any:
        if isinstance(value, str):
            return self._resolve_string(value)
        if isinstance(value, dict):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [self.resolve(item) for item in value]
        return value

    def _resolve_string(self, value: str) -> Any:
        full = _FULL_REFERENCE_RE.match(value)
        if full:
            resolved = self._lookup(value, int(full.group(1)), _path(full))
            return None if resolved is MISSING else resolved

        if not _REFERENCE_RE.search(value):
            return value

        def substitute(match: re.Match[str]) -> str:
            resolved = self._lookup(match.group(0), int(match.group(1)), _path(match))
            if resolved is MISSING:
                return match.group(0)
            if isinstance(resolved, str):
                return resolved
            return json.dumps(resolved, default=str)

        return _REFERENCE_RE.sub(substitute, value)

    def _lookup(self, reference: str, index: int, path: str | None) -> Any:
        referenced = self._plan.get_step(index)
        if referenced is None:
            self.errors.append(OutputReferenceError(
                type="step_not_found",
                reference=reference,
                message=f"Referenced step {index} does not exist",
                step_index=index,
                path=path,
            ))
            return MISSING

        if referenced.status != StepStatus.COMPLETED:
            self.errors.append(OutputReferenceError(
                type="step_not_completed",
                reference=reference,
                message=(
                    f"Referenced step {index} has not completed "
                    f"(status: {referenced.status.value})"
                ),
                step_index=index,
                path=path,
            ))
            return MISSING

        value = referenced.result
        if path:
            value = navigate_path(value, path)
            if value is MISSING:
                self.errors.append(OutputReferenceError(
                    type="path_not_found",
                    reference=reference,
                    message=f'Path "{path}" not found in step {index} output',
                    step_index=index,
                    path=path,
                ))
                return MISSING

        self.references.append(ResolvedReference(
            reference=reference, step_index=index, path=path, value=value,
        ))
        return value


def _path(match: re.Match[str]) -> str | None:
    return match.group(2)[1:] if match.group(2) else None
