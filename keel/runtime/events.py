"""
Lifecycle events emitted by the AgentLoop and the ToolCallScheduler.

Listeners are observers: a failing listener is logged and never interrupts
execution.
"""

import asyncio
import inspect
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field

from keel.utils.logging import get_logger

logger = get_logger(__name__)


class AgentEventType(str, Enum):
    AGENT_START = "agent_start"
    AGENT_END = "agent_end"
    TURN_START = "turn_start"
    TURN_END = "turn_end"
    MESSAGE_END = "message_end"
    TOOL_EXECUTION_START = "tool_execution_start"
    TOOL_EXECUTION_UPDATE = "tool_execution_update"
    TOOL_EXECUTION_END = "tool_execution_end"
    COMPACTION_START = "compaction_start"
    COMPACTION_END = "compaction_end"


class AgentEvent(BaseModel):
    type: AgentEventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    data: dict[str, Any] = Field(default_factory=dict)


Listener = Callable[[AgentEvent], "None | Awaitable[None]"]


class EventEmitter:
    """Fan-out of AgentEvents to registered listeners, in registration order."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def emit(self, event_type: AgentEventType, **data: Any) -> AgentEvent:
        event = AgentEvent(type=event_type, data=data)
        for listener in list(self._listeners):
            try:
                result = listener(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "event_listener_failed",
                    event_type=event_type.value,
                    error=str(e),
                    exc_info=True,
                )
        return event

    def emit_nowait(self, event_type: AgentEventType, **data: Any) -> None:
        """Emit from synchronous code; async listeners are scheduled as tasks."""
        if not self._listeners:
            return
        task = asyncio.ensure_future(self.emit(event_type, **data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for events emitted with ``emit_nowait``."""
        if self._pending:
            await asyncio.gather(*list(self._pending))


__all__ = ["AgentEvent", "AgentEventType", "EventEmitter", "Listener"]
