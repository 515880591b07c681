"""
Session log entries.

An entry is one immutable record of the session tree. ``SessionEntry`` is a
closed union discriminated on ``type``:

- MessageEntry: user input, assistant response or tool result
- CompactionEntry: summary replacing an aged prefix of the active branch
- BranchSummaryEntry: summary of an abandoned subtree
- LabelEntry: bookmark on an entry

``id``, ``parent_id`` and ``timestamp`` are assigned by the SessionLog when
the entry is appended.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from .compaction import CompactionDetails, CompactionStrategy
from .tools import ToolCall, ToolResult


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MessageRole(str, Enum):
    """Roles of message entries."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "toolResult"


class EntryType(str, Enum):
    MESSAGE = "message"
    COMPACTION = "compaction"
    BRANCH_SUMMARY = "branch_summary"
    LABEL = "label"


class Usage(BaseModel):
    """Token usage reported by the model for one response."""

    model_config = ConfigDict(frozen=True)

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class BaseEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = ""
    parent_id: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class MessageEntry(BaseEntry):
    """A user, assistant or tool result message."""

    type: Literal["message"] = "message"
    role: MessageRole
    content: str = ""

    # Assistant-specific fields
    tool_calls: tuple[ToolCall, ...] = ()
    usage: Usage | None = None

    # Tool result-specific fields
    tool_call_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False
    details: dict[str, Any] | None = None

    @classmethod
    def user(cls, content: str) -> "MessageEntry":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(
        cls,
        content: str,
        tool_calls: list[ToolCall] | tuple[ToolCall, ...] = (),
        usage: Usage | None = None,
    ) -> "MessageEntry":
        return cls(
            role=MessageRole.ASSISTANT,
            content=content,
            tool_calls=tuple(tool_calls),
            usage=usage,
        )

    @classmethod
    def tool_result(cls, result: ToolResult) -> "MessageEntry":
        return cls(
            role=MessageRole.TOOL_RESULT,
            content=result.content,
            tool_call_id=result.tool_call_id,
            tool_name=result.tool_name,
            is_error=result.is_error,
            details=result.details,
        )

    def is_user(self) -> bool:
        return self.role == MessageRole.USER

    def is_assistant(self) -> bool:
        return self.role == MessageRole.ASSISTANT

    def is_tool_result(self) -> bool:
        return self.role == MessageRole.TOOL_RESULT

    def has_tool_calls(self) -> bool:
        return self.is_assistant() and bool(self.tool_calls)


class CompactionEntry(BaseEntry):
    """Summary that stands in for ``covered_entry_ids`` in the model context."""

    type: Literal["compaction"] = "compaction"
    summary: str
    details: CompactionDetails = Field(default_factory=CompactionDetails)
    strategy: CompactionStrategy
    covered_entry_ids: tuple[str, ...] = ()
    first_kept_entry_id: str | None = None
    tokens_before: int = 0


class BranchSummaryEntry(BaseEntry):
    """Summary of an abandoned subtree, discoverable without being replayed."""

    type: Literal["branch_summary"] = "branch_summary"
    summary: str
    abandoned_branch_root_id: str
    details: CompactionDetails = Field(default_factory=CompactionDetails)


class LabelEntry(BaseEntry):
    """Bookmark; ``target_id`` defaults to the entry's parent."""

    type: Literal["label"] = "label"
    label: str
    target_id: str | None = None


SessionEntry = Annotated[
    Union[MessageEntry, CompactionEntry, BranchSummaryEntry, LabelEntry],
    Field(discriminator="type"),
]

_entry_adapter: TypeAdapter = TypeAdapter(SessionEntry)

_COMMON_FIELDS = {"id", "parent_id", "type", "timestamp"}


def entry_to_record(entry: BaseEntry) -> dict[str, Any]:
    """
    Convert an entry to its persisted record:
    ``{id, parentId, type, timestamp, payload}``.
    """
    return {
        "id": entry.id,
        "parentId": entry.parent_id,
        "type": entry.type,
        "timestamp": entry.timestamp.isoformat(),
        "payload": entry.model_dump(mode="json", exclude=_COMMON_FIELDS),
    }


def entry_from_record(record: dict[str, Any]) -> BaseEntry:
    """Rebuild an entry from a persisted record. Raises ValidationError."""
    data = dict(record.get("payload") or {})
    data.update(
        id=record["id"],
        parent_id=record.get("parentId"),
        type=record["type"],
        timestamp=record["timestamp"],
    )
    return _entry_adapter.validate_python(data)


__all__ = [
    "MessageRole",
    "EntryType",
    "Usage",
    "BaseEntry",
    "MessageEntry",
    "CompactionEntry",
    "BranchSummaryEntry",
    "LabelEntry",
    "SessionEntry",
    "entry_to_record",
    "entry_from_record",
    "utc_now",
]
