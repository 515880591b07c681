"""
Outcome of one AgentLoop run.
"""

from enum import Enum

from pydantic import BaseModel, Field


class LoopStatus(str, Enum):
    """How a run ended."""

    COMPLETED = "completed"
    TOOL_ERROR = "tool_error"  # non-fatal: at least one tool result was an error
    COMPACTION_FAILED = "compaction_failed"
    MODEL_ERROR = "model_error"
    CANCELLED = "cancelled"
    MAX_TURNS = "max_turns"


class LoopResult(BaseModel):
    """Discriminated result returned to the caller of AgentLoop."""

    status: LoopStatus
    response: str | None = None
    error: str | None = None
    turns: int = 0
    tool_calls_count: int = 0
    tool_errors_count: int = 0
    compactions: int = 0
    last_compaction_state: str | None = None
    last_compaction_entry_id: str | None = None
    appended_entry_ids: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (LoopStatus.COMPLETED, LoopStatus.TOOL_ERROR)


__all__ = ["LoopStatus", "LoopResult"]
