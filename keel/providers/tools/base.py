"""Base abstractions for tools executed by the agent loop."""

import inspect
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import BaseModel

from keel.domain import ToolOutput

if TYPE_CHECKING:
    from keel.runtime.control import AbortSignal


ProgressCallback = Callable[[ToolOutput], None]


class ToolDefinition(BaseModel):
    """Static description of a tool as the model and the scheduler see it."""

    name: str
    description: str
    parameters: dict[str, Any]
    concurrency_safe: bool = False
    timeout_seconds: float | None = None


class BaseTool(ABC):
    """
    Common interface that every concrete tool must implement.

    A tool is concurrency-safe only when it says so: ``is_concurrency_safe``
    returns False unless a subclass overrides it, so an unmarked tool never
    runs alongside another call.
    """

    timeout_seconds: float | None = None

    def __init__(self) -> None:
        self.name = self.get_name()
        self.description = self.get_description()

    @abstractmethod
    def get_name(self) -> str:
        """Unique name used for dispatch."""

    @abstractmethod
    def get_description(self) -> str:
        """Description shown to the model."""

    @abstractmethod
    def get_parameters(self) -> dict[str, Any]:
        """JSON schema of the arguments accepted by `execute`."""

    def is_concurrency_safe(self) -> bool:
        """Whether the tool can be executed concurrently with other safe tools."""
        return False

    @abstractmethod
    async def execute(
        self,
        parameters: dict[str, Any],
        abort_signal: "AbortSignal | None" = None,
        on_progress: ProgressCallback | None = None,
    ) -> ToolOutput:
        """
        Execute the tool.

        Args:
            parameters: Tool arguments from the model
            abort_signal: Cancellation token; long-running tools should
                observe it and stop early
            on_progress: Optional callback receiving partial output

        Returns:
            ToolOutput: content for the model plus optional details

        Raises:
            ToolExecutionError: the tool failed
        """

    def get_definition(self) -> ToolDefinition:
        """Snapshot of name, schema and scheduling attributes."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.get_parameters(),
            concurrency_safe=self.is_concurrency_safe(),
            timeout_seconds=self.timeout_seconds,
        )

    def to_openai_schema(self) -> dict:
        """Function-calling schema for the chat completions API."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.get_parameters(),
            },
        }


class FunctionTool(BaseTool):
    """
    Wrap a coroutine function as a tool.

    The function receives the model arguments as keyword arguments, plus
    ``abort_signal`` / ``on_progress`` when its signature accepts them. A
    returned string becomes the tool content.
    """

    def __init__(
        self,
        name: str,
        func: Callable[..., Awaitable[Any]],
        description: str = "",
        parameters: dict[str, Any] | None = None,
        concurrency_safe: bool = False,
        timeout_seconds: float | None = None,
    ) -> None:
        self._name = name
        self._func = func
        self._description = description or (inspect.getdoc(func) or "")
        self._parameters = parameters or {"type": "object", "properties": {}}
        self._concurrency_safe = concurrency_safe
        self.timeout_seconds = timeout_seconds
        self._accepts = set(inspect.signature(func).parameters)
        super().__init__()

    def get_name(self) -> str:
        return self._name

    def get_description(self) -> str:
        return self._description

    def get_parameters(self) -> dict[str, Any]:
        return self._parameters

    def is_concurrency_safe(self) -> bool:
        return self._concurrency_safe

    async def execute(
        self,
        parameters: dict[str, Any],
        abort_signal: "AbortSignal | None" = None,
        on_progress: ProgressCallback | None = None,
    ) -> ToolOutput:
        kwargs = dict(parameters)
        if "abort_signal" in self._accepts:
            kwargs["abort_signal"] = abort_signal
        if "on_progress" in self._accepts:
            kwargs["on_progress"] = on_progress
        result = await self._func(**kwargs)
        if isinstance(result, ToolOutput):
            return result
        return ToolOutput(content="" if result is None else str(result))


__all__ = ["BaseTool", "FunctionTool", "ToolDefinition", "ProgressCallback"]
