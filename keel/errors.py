"""Exception hierarchy for the keel runtime."""


class KeelError(Exception):
    """Base exception for keel errors."""

    pass


class ConfigError(KeelError):
    """Invalid or unreadable configuration."""

    pass


class ToolExecutionError(KeelError):
    """
    A tool failed. Recovered locally: the scheduler turns it into an error
    result and the loop continues.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details


class ToolTimeout(ToolExecutionError):
    """A tool exceeded its timeout and was terminated."""

    def __init__(self, tool_name: str, timeout: float):
        super().__init__(
            f"Tool {tool_name} timed out after {timeout:g} seconds",
            details={"timeout": timeout},
        )
        self.tool_name = tool_name
        self.timeout = timeout


class ModelCallError(KeelError):
    """The language model call failed (connectivity, provider error, ...)."""

    pass


class CompactionFailure(KeelError):
    """
    Both the model summary and the fallback summary failed.

    Fatal for the current compaction cycle only; the session stays usable at
    its pre-compaction state.
    """

    pass


class PersistenceError(KeelError):
    """The session log could not be written or read. Always fatal."""

    pass


class SessionLockedError(PersistenceError):
    """Another writer holds append authority for the session."""

    pass


class CancellationError(KeelError):
    """Execution was cancelled through an AbortSignal. Not a failure."""

    def __init__(self, reason: str | None = None):
        super().__init__(reason or "Operation cancelled")
        self.reason = reason


__all__ = [
    "KeelError",
    "ConfigError",
    "ToolExecutionError",
    "ToolTimeout",
    "ModelCallError",
    "CompactionFailure",
    "PersistenceError",
    "SessionLockedError",
    "CancellationError",
]
