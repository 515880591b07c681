"""
Domain module - Pure domain models with no runtime dependencies.

This module contains the session entry union, tool call models, compaction
metadata and the loop outcome.
"""

from .compaction import (
    CompactionDetails,
    CompactionStrategy,
    Decision,
    DetailsAccumulator,
    ErrorRecord,
)
from .tools import ToolCall, ToolOutput, ToolResult, ToolResultStatus
from .entries import (
    BaseEntry,
    BranchSummaryEntry,
    CompactionEntry,
    EntryType,
    LabelEntry,
    MessageEntry,
    MessageRole,
    SessionEntry,
    Usage,
    entry_from_record,
    entry_to_record,
)
from .adapters import EntryAdapter
from .run import LoopResult, LoopStatus

__all__ = [
    # Compaction metadata
    "CompactionDetails",
    "CompactionStrategy",
    "Decision",
    "DetailsAccumulator",
    "ErrorRecord",
    # Tools
    "ToolCall",
    "ToolOutput",
    "ToolResult",
    "ToolResultStatus",
    # Entries
    "BaseEntry",
    "BranchSummaryEntry",
    "CompactionEntry",
    "EntryType",
    "LabelEntry",
    "MessageEntry",
    "MessageRole",
    "SessionEntry",
    "Usage",
    "entry_from_record",
    "entry_to_record",
    # Adapters
    "EntryAdapter",
    # Run outcome
    "LoopResult",
    "LoopStatus",
]
