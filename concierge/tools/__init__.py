"""Concierge tools."""

from concierge.tools.base import BaseTool, RollbackAction, ToolError, ToolResult

__all__ = ["BaseTool", "RollbackAction", "ToolError", "ToolResult"]
