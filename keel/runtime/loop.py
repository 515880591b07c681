"""
AgentLoop - drives the model-call / tool-call cycle over one session.

    loop {
        maybe compact
        build context (transforms + self-report)
        call model, append assistant entry
        if tool calls: run scheduler, append results in call order
        steering checkpoint / follow-up at idle
    }

Everything is appended to the SessionLog as it happens; the log is flushed
before control returns to the caller.
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import Iterable

from keel.config.schema import KeelConfig, QueueMode
from keel.domain.compaction import CompactionDetails
from keel.domain.entries import MessageEntry, Usage
from keel.domain.run import LoopResult, LoopStatus
from keel.domain.tools import ToolCall
from keel.errors import CancellationError, ModelCallError
from keel.providers.llm.base import Model
from keel.providers.tools.base import BaseTool
from keel.providers.tools.registry import ToolRegistry
from keel.runtime.compaction import CompactionEngine, CompactionOutcome
from keel.runtime.context import ContextBuilder
from keel.runtime.control import AbortSignal, race_abort
from keel.runtime.events import AgentEventType, EventEmitter, Listener
from keel.runtime.hooks import HookRegistry
from keel.runtime.scheduler import ScheduleResult, ToolCallScheduler
from keel.runtime.session_log import Session, SessionLog
from keel.runtime.summarizer import Summarizer
from keel.utils.logging import get_logger
from keel.utils.tokens import TokenCounter, get_token_counter

logger = get_logger(__name__)


class ToolCallAccumulator:
    """
    Accumulate streaming tool calls.

    OpenAI returns tool calls incrementally, need to accumulate before execution.
    """

    def __init__(self):
        self._calls: dict[int, dict] = {}

    def accumulate(self, delta_calls: list[dict]):
        """Accumulate incremental tool calls."""
        for tc in delta_calls:
            idx = tc.get("index", 0)

            if idx not in self._calls:
                self._calls[idx] = {
                    "id": None,
                    "type": "function",
                    "function": {"name": "", "arguments": ""},
                }

            acc = self._calls[idx]

            if tc.get("id"):
                acc["id"] = tc["id"]

            if tc.get("function"):
                fn = tc["function"]
                if fn.get("name"):
                    acc["function"]["name"] += fn["name"]
                if fn.get("arguments"):
                    acc["function"]["arguments"] += fn["arguments"]

    def finalize(self) -> list[dict]:
        """Get final complete tool calls, ordered by stream index."""
        return [self._calls[i] for i in sorted(self._calls) if self._calls[i]["id"] is not None]


@dataclass
class _RunState:
    turns: int = 0
    tool_calls: int = 0
    tool_errors: int = 0
    compactions: int = 0
    response: str | None = None
    appended: list[str] = field(default_factory=list)
    last_compaction: CompactionOutcome | None = None

    def result(self, status: LoopStatus, error: str | None = None) -> LoopResult:
        return LoopResult(
            status=status,
            response=self.response,
            error=error,
            turns=self.turns,
            tool_calls_count=self.tool_calls,
            tool_errors_count=self.tool_errors,
            compactions=self.compactions,
            last_compaction_state=self.last_compaction.state.value if self.last_compaction else None,
            last_compaction_entry_id=self.last_compaction.entry_id if self.last_compaction else None,
            appended_entry_ids=list(self.appended),
        )


class AgentLoop:
    """
    Orchestrates one agent session.

    Args:
        session: Session (or bare SessionLog) owning append authority
        model: Model used for turns
        tools: Tool registry or list of tools
        config: Execution and compaction configuration
        hooks: Context-transform, interception and compaction hooks
        system_prompt: Prepended to every model context
        summarizer_model: Model used for compaction summaries (defaults to
            ``model``)
        token_counter: Token estimator for context budgeting

    Examples:
        >>> session = await Session.open("session.jsonl")
        >>> loop = AgentLoop(session, model, tools=[FileReadTool()])
        >>> result = await loop.run("Fix the failing test")
        >>> result.status
        <LoopStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        session: Session | SessionLog,
        model: Model,
        tools: ToolRegistry | Iterable[BaseTool] | None = None,
        config: KeelConfig | None = None,
        hooks: HookRegistry | None = None,
        system_prompt: str | None = None,
        summarizer_model: Model | None = None,
        token_counter: TokenCounter | None = None,
    ):
        self.log = session.log if isinstance(session, Session) else session
        self.model = model
        self.registry = tools if isinstance(tools, ToolRegistry) else ToolRegistry(tools)
        self.config = config or KeelConfig()
        self.hooks = hooks or HookRegistry()
        self.events = EventEmitter()
        self.token_counter = token_counter or get_token_counter()

        self.context = ContextBuilder(
            self.log,
            config=self.config.compaction,
            hooks=self.hooks,
            token_counter=self.token_counter,
            system_prompt=system_prompt,
        )
        self.scheduler = ToolCallScheduler(
            self.registry,
            config=self.config.execution,
            hooks=self.hooks,
            events=self.events,
        )
        self.compaction = CompactionEngine(
            self.config.compaction,
            summarizer=Summarizer(
                summarizer_model or model,
                max_tokens=self.config.compaction.summary_max_tokens,
            ),
            hooks=self.hooks,
            token_counter=self.token_counter,
        )

        self._steering: deque[str] = deque()
        self._follow_up: deque[str] = deque()
        self._drained: list[str] = []
        self._abort_signal: AbortSignal | None = None
        self._running = False

    # ------------------------------------------------------------------
    # External interjection
    # ------------------------------------------------------------------

    def steer(self, text: str) -> None:
        """Queue a message delivered at the next scheduling checkpoint."""
        self._steering.append(text)

    def follow_up(self, text: str) -> None:
        """Queue a message delivered once the agent would otherwise stop."""
        self._follow_up.append(text)

    def has_pending_steering(self) -> bool:
        return bool(self._steering)

    def has_pending_follow_up(self) -> bool:
        return bool(self._follow_up)

    def clear_queues(self) -> tuple[list[str], list[str]]:
        """Drop and return queued steering and follow-up messages."""
        steering, follow_up = list(self._steering), list(self._follow_up)
        self._steering.clear()
        self._follow_up.clear()
        return steering, follow_up

    def subscribe(self, listener: Listener):
        return self.events.subscribe(listener)

    def abort(self, reason: str = "Aborted by user") -> None:
        if self._abort_signal is not None:
            self._abort_signal.abort(reason)

    @property
    def is_running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self, prompt: str, abort_signal: AbortSignal | None = None) -> LoopResult:
        """Append ``prompt`` as a user message and run until idle."""
        self._begin(abort_signal)
        state = _RunState()
        try:
            # Durable before any model call depends on it
            state.appended.append(await self.log.append(MessageEntry.user(prompt)))
            return await self._run_loop(state, pending_calls=[])
        finally:
            self._running = False

    async def continue_(self, abort_signal: AbortSignal | None = None) -> LoopResult:
        """
        Resume from the current tip, e.g. after a restart.

        A tip that is an assistant message with tool calls has its calls
        executed first.
        """
        self._begin(abort_signal)
        state = _RunState()
        try:
            tip_id = self.log.get_tip()
            tip = self.log.get_entry(tip_id) if tip_id else None
            pending_calls: list[ToolCall] = []
            if isinstance(tip, MessageEntry) and tip.has_tool_calls():
                pending_calls = list(tip.tool_calls)
            elif tip is None or (
                isinstance(tip, MessageEntry)
                and tip.is_assistant()
                and not self._steering
                and not self._follow_up
            ):
                raise ValueError("Nothing to continue: the session tip is not awaiting a response")
            elif isinstance(tip, MessageEntry) and tip.is_assistant():
                if not self._drain(self._steering, self.config.execution.steering_mode):
                    self._drain(self._follow_up, self.config.execution.follow_up_mode)
            return await self._run_loop(state, pending_calls=pending_calls)
        finally:
            self._running = False

    async def compact(
        self, instructions: str | None = None, abort_signal: AbortSignal | None = None
    ) -> CompactionOutcome:
        """Compact the active branch now, optionally focusing the summary."""
        if self._running:
            raise RuntimeError("Cannot compact while the agent loop is running")
        try:
            return await self._compact(abort_signal, instructions=instructions, reason="manual")
        finally:
            await self.log.flush()

    async def navigate(
        self,
        entry_id: str,
        summarize: bool = False,
        abort_signal: AbortSignal | None = None,
    ) -> str:
        """
        Move the active branch to ``entry_id``. With ``summarize`` the
        abandoned part is recorded as a BranchSummaryEntry, which becomes
        the new tip. Returns the new tip id.
        """
        if self._running:
            raise RuntimeError("Cannot navigate while the agent loop is running")
        if summarize:
            result = await self.compaction.summarize_branch(self.log, entry_id, abort_signal)
            if result is not None:
                return await self.log.branch_with_summary(entry_id, result.summary, result.details)
        await self.log.branch(entry_id)
        return entry_id

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _begin(self, abort_signal: AbortSignal | None) -> None:
        if self._running:
            raise RuntimeError("Agent loop is already running")
        self._running = True
        self._abort_signal = abort_signal or AbortSignal()

    async def _run_loop(self, state: _RunState, pending_calls: list[ToolCall]) -> LoopResult:
        abort_signal = self._abort_signal
        await self.events.emit(AgentEventType.AGENT_START, session_id=self.log.session_id)
        logger.info("agent_loop_started", session_id=self.log.session_id, tip=self.log.get_tip())

        result: LoopResult | None = None
        try:
            result = await self._cycle(state, pending_calls, abort_signal)
        except CancellationError as e:
            logger.info("agent_loop_cancelled", reason=e.reason, turns=state.turns)
            result = state.result(LoopStatus.CANCELLED, error=str(e))
        finally:
            await self.log.flush()
            await self.events.drain()
            if result is not None:
                await self.events.emit(
                    AgentEventType.AGENT_END,
                    status=result.status.value,
                    turns=result.turns,
                )
                logger.info(
                    "agent_loop_finished",
                    status=result.status.value,
                    turns=result.turns,
                    tool_calls=result.tool_calls_count,
                    tool_errors=result.tool_errors_count,
                    compactions=result.compactions,
                )
        return result

    async def _cycle(
        self,
        state: _RunState,
        pending_calls: list[ToolCall],
        abort_signal: AbortSignal,
    ) -> LoopResult:
        if pending_calls:
            await self._execute_tools(pending_calls, state, abort_signal)
            abort_signal.raise_if_aborted()
            self._drain(self._steering, self.config.execution.steering_mode)

        while True:
            abort_signal.raise_if_aborted()
            for entry_id in await self._flush_drained():
                state.appended.append(entry_id)

            if state.turns >= self.config.execution.max_turns:
                logger.warning("agent_loop_max_turns", max_turns=self.config.execution.max_turns)
                return state.result(LoopStatus.MAX_TURNS, error="Maximum turns reached")

            used_tokens = self.context.used_tokens()
            if self.compaction.should_compact(used_tokens):
                outcome = await self._compact(abort_signal, reason="threshold")
                state.last_compaction = outcome
                if outcome.failed:
                    return state.result(LoopStatus.COMPACTION_FAILED, error=outcome.error)
                state.compactions += 1

            built = await self.context.build()
            state.turns += 1
            await self.events.emit(
                AgentEventType.TURN_START, turn=state.turns, used_tokens=built.used_tokens
            )

            try:
                assistant = await self._call_model(built.messages, abort_signal)
            except ModelCallError as e:
                return state.result(LoopStatus.MODEL_ERROR, error=str(e))

            assistant_id = await self.log.append(assistant)
            state.appended.append(assistant_id)
            state.response = assistant.content
            await self.events.emit(
                AgentEventType.MESSAGE_END,
                entry_id=assistant_id,
                role=assistant.role.value,
                tool_calls=len(assistant.tool_calls),
            )

            if assistant.tool_calls:
                await self._execute_tools(list(assistant.tool_calls), state, abort_signal)
                await self.events.emit(AgentEventType.TURN_END, turn=state.turns)
                abort_signal.raise_if_aborted()
                self._drain(self._steering, self.config.execution.steering_mode)
                continue

            await self.events.emit(AgentEventType.TURN_END, turn=state.turns)

            # Idle point: steering first, then follow-up
            if self._drain(self._steering, self.config.execution.steering_mode):
                continue
            if self._drain(self._follow_up, self.config.execution.follow_up_mode):
                continue

            status = LoopStatus.TOOL_ERROR if state.tool_errors else LoopStatus.COMPLETED
            return state.result(status)

    def _drain(self, queue: deque, mode: QueueMode) -> bool:
        """Move queued messages to the pending batch. Returns True if any."""
        if not queue:
            return False
        if mode == QueueMode.ALL:
            drained = list(queue)
            queue.clear()
        else:
            drained = [queue.popleft()]
        self._drained.extend(drained)
        logger.debug("interjection_drained", count=len(drained), remaining=len(queue))
        return True

    async def _flush_drained(self) -> list[str]:
        ids = []
        while self._drained:
            text = self._drained.pop(0)
            ids.append(await self.log.append(MessageEntry.user(text)))
        return ids

    async def _execute_tools(
        self, calls: list[ToolCall], state: _RunState, abort_signal: AbortSignal
    ) -> ScheduleResult:
        scheduled = await self.scheduler.execute(
            calls,
            abort_signal=abort_signal,
            should_interrupt=self.has_pending_steering,
        )
        # Call order, never completion order
        for tool_result in scheduled.results:
            state.appended.append(await self.log.append(MessageEntry.tool_result(tool_result)))
        state.tool_calls += len(calls)
        state.tool_errors += scheduled.error_count
        return scheduled

    async def _call_model(self, messages: list[dict], abort_signal: AbortSignal) -> MessageEntry:
        tool_schemas = self.registry.openai_schemas() or None

        async def consume() -> tuple[str, list[dict], dict | None]:
            content = ""
            accumulator = ToolCallAccumulator()
            usage = None
            async for chunk in self.model.arun_stream(
                messages, tools=tool_schemas, abort_signal=abort_signal
            ):
                if chunk.content:
                    content += chunk.content
                if chunk.tool_calls:
                    accumulator.accumulate(chunk.tool_calls)
                if chunk.usage:
                    usage = chunk.usage
            return content, accumulator.finalize(), usage

        try:
            content, raw_calls, usage = await race_abort(consume(), abort_signal)
        except (CancellationError, asyncio.CancelledError):
            raise
        except Exception as e:
            logger.error(
                "model_call_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            raise ModelCallError(str(e)) from e

        abort_signal.raise_if_aborted()
        return MessageEntry.assistant(
            content,
            tool_calls=[ToolCall.from_openai(tc) for tc in raw_calls],
            usage=Usage(**usage) if usage else None,
        )

    async def _compact(
        self,
        abort_signal: AbortSignal | None,
        instructions: str | None = None,
        reason: str = "threshold",
    ) -> CompactionOutcome:
        await self.events.emit(AgentEventType.COMPACTION_START, reason=reason)
        outcome = await self.compaction.compact(
            self.log, instructions=instructions, abort_signal=abort_signal
        )
        await self.events.emit(
            AgentEventType.COMPACTION_END,
            reason=reason,
            state=outcome.state.value,
            strategy=outcome.strategy.value if outcome.strategy else None,
            entry_id=outcome.entry_id,
            error=outcome.error,
        )
        return outcome

    def tracked_files(self) -> CompactionDetails | None:
        """Details of the latest compaction on the active branch."""
        compaction = self.log.latest_compaction()
        return compaction.details if compaction else None


__all__ = ["AgentLoop", "ToolCallAccumulator"]
