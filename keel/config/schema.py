"""
Runtime configuration models.
"""

from enum import Enum

from pydantic import BaseModel, Field, model_validator


class QueueMode(str, Enum):
    """How many queued interjection messages are delivered per checkpoint."""

    ONE_AT_A_TIME = "one_at_a_time"
    ALL = "all"


class ExecutionConfig(BaseModel):
    """
    Runtime execution configuration.
    """

    # Loop configuration
    max_turns: int = Field(default=50, ge=1, description="Maximum model calls per run")

    # Timeout configuration
    tool_timeout: float | None = Field(
        default=None, gt=0, description="Default tool execution timeout (seconds)"
    )

    # Concurrency configuration
    max_parallel_tools: int = Field(
        default=10, ge=1, description="Maximum tools executing at once inside a concurrency-safe run"
    )

    # Interjection queues
    steering_mode: QueueMode = Field(default=QueueMode.ONE_AT_A_TIME)
    follow_up_mode: QueueMode = Field(default=QueueMode.ONE_AT_A_TIME)


class CompactionConfig(BaseModel):
    """
    Context-window budgeting and compaction configuration.
    """

    enabled: bool = Field(default=True, description="Compact automatically before model calls")

    context_window: int = Field(default=128_000, ge=1, description="Model context window (tokens)")
    reserve_tokens: int = Field(
        default=16_384, ge=0, description="Safety margin kept free for the model's next response"
    )
    keep_recent_tokens: int = Field(
        default=20_000, ge=0, description="Approximate size of the verbatim suffix kept after compaction"
    )

    summary_max_tokens: int | None = Field(
        default=None, ge=1, description="Output budget for the summary model call"
    )
    fallback_user_chars: int = Field(
        default=200, ge=1, description="Characters kept per user message by the fallback summary"
    )
    disclosure_threshold: float = Field(
        default=0.5, ge=0.0, le=1.0, description="Usage ratio at which the context self-report is injected"
    )

    # File tracking
    read_tools: list[str] = Field(
        default_factory=lambda: ["read", "read_file", "file_read", "grep", "outline"]
    )
    write_tools: list[str] = Field(
        default_factory=lambda: ["write", "write_file", "file_write", "edit", "file_edit"]
    )
    path_argument_keys: list[str] = Field(
        default_factory=lambda: ["path", "file_path", "filename"]
    )

    @model_validator(mode="after")
    def _check_budget(self) -> "CompactionConfig":
        if self.reserve_tokens >= self.context_window:
            raise ValueError("reserve_tokens must be smaller than context_window")
        return self

    @property
    def threshold(self) -> int:
        """Token count above which compaction triggers."""
        return self.context_window - self.reserve_tokens


class KeelConfig(BaseModel):
    """Top-level configuration document (see ``load_config``)."""

    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    compaction: CompactionConfig = Field(default_factory=CompactionConfig)


__all__ = ["QueueMode", "ExecutionConfig", "CompactionConfig", "KeelConfig"]
