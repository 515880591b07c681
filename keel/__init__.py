"""
keel - execution engine for an autonomous coding agent.

A loop alternating model calls and tool calls, persisted to an append-only
branchable session log that compaction keeps within the context window.
"""

from keel.config import CompactionConfig, ExecutionConfig, KeelConfig, load_config, settings
from keel.domain import (
    CompactionDetails,
    LoopResult,
    LoopStatus,
    MessageEntry,
    ToolCall,
    ToolOutput,
    ToolResult,
)
from keel.errors import (
    CancellationError,
    CompactionFailure,
    KeelError,
    ModelCallError,
    PersistenceError,
    ToolExecutionError,
    ToolTimeout,
)
from keel.providers.tools import BaseTool, FunctionTool, ToolRegistry
from keel.runtime import (
    AbortSignal,
    AgentLoop,
    CompactionEngine,
    HookRegistry,
    Session,
    SessionLog,
    ToolCallScheduler,
)

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "settings",
    "load_config",
    "KeelConfig",
    "ExecutionConfig",
    "CompactionConfig",
    "CompactionDetails",
    "LoopResult",
    "LoopStatus",
    "MessageEntry",
    "ToolCall",
    "ToolOutput",
    "ToolResult",
    "KeelError",
    "CancellationError",
    "CompactionFailure",
    "ModelCallError",
    "PersistenceError",
    "ToolExecutionError",
    "ToolTimeout",
    "BaseTool",
    "FunctionTool",
    "ToolRegistry",
    "AbortSignal",
    "AgentLoop",
    "CompactionEngine",
    "HookRegistry",
    "Session",
    "SessionLog",
    "ToolCallScheduler",
]
