"""
Runtime module.

- SessionLog / Session: append-only branchable log
- CompactionEngine: context budgeting and summaries
- ToolCallScheduler: concurrency-aware tool execution
- AgentLoop: the model-call / tool-call cycle
"""

from .control import AbortSignal, race_abort
from .session_log import Session, SessionLog, SessionTreeNode
from .hooks import AgentHook, HookRegistry, ToolCallDecision
from .events import AgentEvent, AgentEventType, EventEmitter
from .context import BuiltContext, ContextBuilder, effective_entries
from .summarizer import Summarizer
from .compaction import (
    BranchSummaryResult,
    CompactionEngine,
    CompactionOutcome,
    CompactionPreparation,
    CompactionState,
)
from .scheduler import ScheduleResult, ToolCallScheduler
from .loop import AgentLoop

__all__ = [
    "AbortSignal",
    "race_abort",
    "Session",
    "SessionLog",
    "SessionTreeNode",
    "AgentHook",
    "HookRegistry",
    "ToolCallDecision",
    "AgentEvent",
    "AgentEventType",
    "EventEmitter",
    "BuiltContext",
    "ContextBuilder",
    "effective_entries",
    "Summarizer",
    "BranchSummaryResult",
    "CompactionEngine",
    "CompactionOutcome",
    "CompactionPreparation",
    "CompactionState",
    "ScheduleResult",
    "ToolCallScheduler",
    "AgentLoop",
]
