"""Base tool interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal

RiskLevel = Literal["low", "medium", "high", "critical"]


@dataclass
class ToolResult:
    success: bool
    output: Any = None
    error: str = ""
    retryable: bool = False


@dataclass
class RollbackAction:
    """A compensating tool call.

    String parameters of the form ``{{result.path}}`` or ``{{params.path}}``
    are filled from the completed step being undone.
    """
    tool_name: str
    parameters: dict[str, Any] = field(default_factory=dict)


class ToolError(Exception):
    """Raised by tools that know whether their failure is worth retrying."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class BaseTool(ABC):
    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict[str, Any]:
        """JSON Schema for tool parameters."""
        ...

    @property
    def risk_level(self) -> RiskLevel | None:
        """None defers to the executor's configured default."""
        return None

    @property
    def requires_approval(self) -> bool:
        """Whether every invocation needs a human decision (default: high risk and above)."""
        return self.risk_level in ("high", "critical")

    @property
    def rollback_action(self) -> RollbackAction | None:
        """How to undo a successful call, or None if it cannot be undone."""
        return None

    @abstractmethod
    async def execute(self, params: dict[str, Any], context: dict[str, Any]) -> ToolResult:
        """Run the tool. ``context`` carries plan_id, step_index and user_id."""
        ...
