"""
Tool call and tool result models.
"""

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ToolResultStatus(str, Enum):
    """Outcome of one tool call."""

    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"
    BLOCKED = "blocked"


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_openai(cls, tool_call: dict[str, Any]) -> "ToolCall":
        """
        Build a ToolCall from an OpenAI format tool call.

        Arguments that are not valid JSON are kept under ``__raw__`` so the
        scheduler can report them as an error result.
        """
        function = tool_call.get("function", {}) or {}
        raw_args = function.get("arguments", "{}")
        if isinstance(raw_args, str):
            try:
                arguments = json.loads(raw_args) if raw_args.strip() else {}
            except json.JSONDecodeError:
                arguments = {"__raw__": raw_args}
        else:
            arguments = raw_args or {}
        if not isinstance(arguments, dict):
            arguments = {"__raw__": raw_args}
        return cls(
            id=tool_call.get("id") or "",
            name=function.get("name") or "",
            arguments=arguments,
        )

    def to_openai(self) -> dict[str, Any]:
        """Convert to OpenAI format tool call."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments, ensure_ascii=False),
            },
        }


class ToolOutput(BaseModel):
    """What a tool's ``execute`` returns on success."""

    content: str
    details: dict[str, Any] | None = None


class ToolResult(BaseModel):
    """Result of one tool call, index-aligned with its ToolCall."""

    model_config = ConfigDict(frozen=True)

    tool_call_id: str
    tool_name: str
    content: str
    details: dict[str, Any] | None = None
    is_error: bool = False
    status: ToolResultStatus = ToolResultStatus.OK
    duration: float = 0.0

    @classmethod
    def error(
        cls,
        call: ToolCall,
        message: str,
        status: ToolResultStatus = ToolResultStatus.ERROR,
        details: dict[str, Any] | None = None,
        duration: float = 0.0,
    ) -> "ToolResult":
        return cls(
            tool_call_id=call.id,
            tool_name=call.name,
            content=message,
            details=details,
            is_error=True,
            status=status,
            duration=duration,
        )


__all__ = ["ToolResultStatus", "ToolCall", "ToolOutput", "ToolResult"]
