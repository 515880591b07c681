"""
Extension hooks consumed by the runtime.

- Context transforms: pipeline; each hook sees the previous hook's output
  and receives its own shallow copy of the message list.
- Tool-call interception: short-circuit; hooks run by descending
  ``priority`` and the first one that blocks wins.
- Pre/post-compaction: may enrich the compaction details before they are
  persisted. Details can only be added to.
"""

import inspect
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from pydantic import BaseModel

from keel.domain.compaction import DetailsAccumulator
from keel.domain.tools import ToolCall
from keel.utils.logging import get_logger

if TYPE_CHECKING:
    from keel.runtime.compaction import CompactionPreparation

logger = get_logger(__name__)


class ToolCallDecision(BaseModel):
    """Verdict of a tool-call interception hook."""

    blocked: bool = False
    reason: str | None = None

    @classmethod
    def allow(cls) -> "ToolCallDecision":
        return cls()

    @classmethod
    def block(cls, reason: str) -> "ToolCallDecision":
        return cls(blocked=True, reason=reason)


class AgentHook:
    """
    Base class for runtime hooks.

    Override only the methods you need; the defaults leave everything
    unchanged.
    """

    priority: int = 0

    async def transform_context(self, messages: list[dict]) -> list[dict] | None:
        """Return a new message list, or None to keep the input."""
        return None

    async def intercept_tool_call(self, call: ToolCall) -> ToolCallDecision | None:
        """Return a blocking decision to stop the call, None to pass."""
        return None

    async def before_compaction(
        self, preparation: "CompactionPreparation", details: DetailsAccumulator
    ) -> None:
        pass

    async def after_compaction(
        self, preparation: "CompactionPreparation", details: DetailsAccumulator
    ) -> None:
        pass


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class _FunctionHook(AgentHook):
    """Adapts a plain (sync or async) callable to one hook point."""

    def __init__(self, point: str, func: Callable, priority: int = 0):
        self.point = point
        self.func = func
        self.priority = priority
        self.name = getattr(func, "__name__", point)

    async def transform_context(self, messages):
        if self.point != "transform_context":
            return None
        return await _maybe_await(self.func(messages))

    async def intercept_tool_call(self, call):
        if self.point != "intercept_tool_call":
            return None
        return await _maybe_await(self.func(call))

    async def before_compaction(self, preparation, details):
        if self.point == "before_compaction":
            await _maybe_await(self.func(preparation, details))

    async def after_compaction(self, preparation, details):
        if self.point == "after_compaction":
            await _maybe_await(self.func(preparation, details))


ContextTransform = Callable[[list[dict]], "list[dict] | None | Awaitable[list[dict] | None]"]
ToolInterceptor = Callable[[ToolCall], "ToolCallDecision | None | Awaitable[ToolCallDecision | None]"]
CompactionHook = Callable[["CompactionPreparation", DetailsAccumulator], "None | Awaitable[None]"]


class HookRegistry:
    """Ordered collection of AgentHooks."""

    def __init__(self, hooks: list[AgentHook] | None = None):
        self._hooks: list[AgentHook] = list(hooks or [])

    def register(self, hook: AgentHook) -> AgentHook:
        self._hooks.append(hook)
        return hook

    def add_context_transform(self, func: ContextTransform) -> AgentHook:
        return self.register(_FunctionHook("transform_context", func))

    def add_tool_interceptor(self, func: ToolInterceptor, priority: int = 0) -> AgentHook:
        return self.register(_FunctionHook("intercept_tool_call", func, priority=priority))

    def add_pre_compaction(self, func: CompactionHook) -> AgentHook:
        return self.register(_FunctionHook("before_compaction", func))

    def add_post_compaction(self, func: CompactionHook) -> AgentHook:
        return self.register(_FunctionHook("after_compaction", func))

    @property
    def hooks(self) -> list[AgentHook]:
        return list(self._hooks)

    def __len__(self) -> int:
        return len(self._hooks)

    async def apply_context_transforms(self, messages: list[dict]) -> list[dict]:
        """
        Run every context transform in registration order.

        Each step gets a fresh list of shallow-copied message dicts, so no
        step can reach the caller's list or the previous step's objects.
        """
        current = messages
        for hook in self._hooks:
            snapshot = [dict(message) for message in current]
            result = await hook.transform_context(snapshot)
            if result is not None:
                current = result
            else:
                current = snapshot
        return [dict(message) for message in current]

    async def intercept_tool_call(self, call: ToolCall) -> ToolCallDecision:
        """First blocking decision by descending priority wins."""
        ordered = sorted(self._hooks, key=lambda h: h.priority, reverse=True)
        for hook in ordered:
            decision = await hook.intercept_tool_call(call)
            if decision is not None and decision.blocked:
                logger.info(
                    "tool_call_blocked",
                    tool_name=call.name,
                    tool_call_id=call.id,
                    hook=type(hook).__name__,
                    reason=decision.reason,
                )
                return decision
        return ToolCallDecision.allow()

    async def before_compaction(
        self, preparation: "CompactionPreparation", details: DetailsAccumulator
    ) -> None:
        for hook in self._hooks:
            await hook.before_compaction(preparation, details)

    async def after_compaction(
        self, preparation: "CompactionPreparation", details: DetailsAccumulator
    ) -> None:
        for hook in self._hooks:
            await hook.after_compaction(preparation, details)


__all__ = ["AgentHook", "HookRegistry", "ToolCallDecision"]
