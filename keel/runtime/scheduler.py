"""
ToolCallScheduler - executes one model turn's tool calls.

Calls are partitioned into runs: maximal sequences of consecutive
concurrency-safe calls run together, every other call runs alone. Runs
execute left to right and a parallel run is a barrier: the next run starts
only after every call in it has finished. Results are index-aligned with
the calls regardless of completion order.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable

from keel.config.schema import ExecutionConfig
from keel.domain.tools import ToolCall, ToolOutput, ToolResult, ToolResultStatus
from keel.errors import CancellationError, ToolExecutionError, ToolTimeout
from keel.providers.tools.registry import ToolRegistry
from keel.runtime.control import AbortSignal
from keel.runtime.events import AgentEventType, EventEmitter
from keel.runtime.hooks import HookRegistry
from keel.utils.logging import get_logger

logger = get_logger(__name__)

SKIPPED_MESSAGE = "Skipped due to queued user message."
CANCELLED_MESSAGE = "Tool execution was cancelled"

InterjectionCheck = Callable[[], bool]


@dataclass
class ScheduleResult:
    """Index-aligned results of one batch."""

    results: list[ToolResult] = field(default_factory=list)
    interrupted: bool = False
    steered: bool = False
    runs: list[list[int]] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        """Failed calls. Skipped and cancelled calls did not fail."""
        return sum(
            1
            for r in self.results
            if r.is_error and r.status not in (ToolResultStatus.SKIPPED, ToolResultStatus.CANCELLED)
        )


class ToolCallScheduler:
    """
    Runs tool calls under the concurrency policy of the registry.

    Args:
        registry: Tools available for dispatch
        config: Timeout and fan-out limits
        hooks: Tool-call interception hooks
        events: Emitter for tool_execution_* events
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: ExecutionConfig | None = None,
        hooks: HookRegistry | None = None,
        events: EventEmitter | None = None,
    ):
        self.registry = registry
        self.config = config or ExecutionConfig()
        self.hooks = hooks or HookRegistry()
        self.events = events or EventEmitter()

    def partition(self, calls: list[ToolCall]) -> list[list[int]]:
        """Group call indices into runs."""
        runs: list[list[int]] = []
        current: list[int] = []
        for index, call in enumerate(calls):
            if self.registry.is_concurrency_safe(call.name):
                current.append(index)
                continue
            if current:
                runs.append(current)
                current = []
            runs.append([index])
        if current:
            runs.append(current)
        return runs

    async def execute(
        self,
        calls: list[ToolCall],
        abort_signal: AbortSignal | None = None,
        should_interrupt: InterjectionCheck | None = None,
    ) -> ScheduleResult:
        """
        Execute a batch of tool calls.

        ``should_interrupt`` is consulted exactly once after each run; when
        it returns True the remaining runs are skipped. Once ``abort_signal``
        fires no new run starts and unstarted calls get cancelled results.
        """
        if not calls:
            return ScheduleResult()

        runs = self.partition(calls)
        results: list[ToolResult | None] = [None] * len(calls)
        outcome = ScheduleResult(runs=runs)

        logger.debug(
            "tool_batch_started",
            calls=len(calls),
            runs=len(runs),
            tool_names=[c.name for c in calls],
        )

        for run_index, run in enumerate(runs):
            if abort_signal is not None and abort_signal.is_aborted():
                self._fill_remaining(
                    calls, results, runs[run_index:], CANCELLED_MESSAGE, ToolResultStatus.CANCELLED
                )
                outcome.interrupted = True
                break

            if len(run) == 1:
                index = run[0]
                results[index] = await self.execute_call(calls[index], abort_signal)
            else:
                run_results = await self._execute_parallel([calls[i] for i in run], abort_signal)
                for index, result in zip(run, run_results):
                    results[index] = result

            if should_interrupt is not None and should_interrupt():
                outcome.steered = True
                remaining = runs[run_index + 1 :]
                if remaining:
                    self._fill_remaining(
                        calls, results, remaining, SKIPPED_MESSAGE, ToolResultStatus.SKIPPED
                    )
                    outcome.interrupted = True
                logger.info(
                    "tool_batch_steered",
                    completed_runs=run_index + 1,
                    skipped_calls=sum(len(r) for r in remaining),
                )
                break

        if abort_signal is not None and abort_signal.is_aborted():
            outcome.interrupted = True

        outcome.results = [r for r in results if r is not None]
        logger.debug(
            "tool_batch_completed",
            calls=len(calls),
            errors=outcome.error_count,
            interrupted=outcome.interrupted,
        )
        return outcome

    async def _execute_parallel(
        self, calls: list[ToolCall], abort_signal: AbortSignal | None
    ) -> list[ToolResult]:
        semaphore = asyncio.Semaphore(self.config.max_parallel_tools)

        async def bounded(call: ToolCall) -> ToolResult:
            async with semaphore:
                if abort_signal is not None and abort_signal.is_aborted():
                    return ToolResult.error(call, CANCELLED_MESSAGE, status=ToolResultStatus.CANCELLED)
                return await self.execute_call(call, abort_signal)

        return list(await asyncio.gather(*(bounded(call) for call in calls)))

    def _fill_remaining(
        self,
        calls: list[ToolCall],
        results: list[ToolResult | None],
        runs: list[list[int]],
        message: str,
        status: ToolResultStatus,
    ) -> None:
        for run in runs:
            for index in run:
                if results[index] is None:
                    results[index] = ToolResult.error(calls[index], message, status=status)

    async def execute_call(
        self, call: ToolCall, abort_signal: AbortSignal | None = None
    ) -> ToolResult:
        """
        Execute a single tool call. Never raises for tool-level failures:
        they become error results.
        """
        start_time = time.time()

        tool = self.registry.get(call.name)
        if tool is None:
            return ToolResult.error(call, f"Tool {call.name} not found")

        if "__raw__" in call.arguments:
            return ToolResult.error(
                call, f"Invalid JSON arguments: {call.arguments['__raw__']!r}"
            )

        decision = await self.hooks.intercept_tool_call(call)
        if decision.blocked:
            return ToolResult.error(
                call,
                f"Tool call blocked: {decision.reason or 'no reason given'}",
                status=ToolResultStatus.BLOCKED,
            )

        timeout = tool.timeout_seconds or self.config.tool_timeout

        def on_progress(partial: ToolOutput) -> None:
            self.events.emit_nowait(
                AgentEventType.TOOL_EXECUTION_UPDATE,
                tool_call_id=call.id,
                tool_name=call.name,
                content=partial.content,
            )

        await self.events.emit(
            AgentEventType.TOOL_EXECUTION_START,
            tool_call_id=call.id,
            tool_name=call.name,
            arguments=dict(call.arguments),
        )
        logger.debug("executing_tool", tool_name=call.name, tool_call_id=call.id, timeout=timeout)

        try:
            coro = tool.execute(dict(call.arguments), abort_signal=abort_signal, on_progress=on_progress)
            if timeout:
                try:
                    output = await asyncio.wait_for(coro, timeout=timeout)
                except asyncio.TimeoutError as e:
                    raise ToolTimeout(call.name, timeout) from e
            else:
                output = await coro
            result = ToolResult(
                tool_call_id=call.id,
                tool_name=call.name,
                content=output.content,
                details=output.details,
                duration=time.time() - start_time,
            )

        except ToolTimeout as error:
            logger.warning("tool_execution_timeout", tool_name=call.name, timeout=timeout)
            result = ToolResult.error(
                call,
                str(error),
                status=ToolResultStatus.TIMEOUT,
                details=error.details,
                duration=time.time() - start_time,
            )

        except ToolExecutionError as e:
            logger.info("tool_execution_error", tool_name=call.name, error=str(e))
            result = ToolResult.error(
                call, str(e), details=e.details, duration=time.time() - start_time
            )

        except CancellationError:
            logger.info("tool_execution_cancelled", tool_name=call.name)
            result = ToolResult.error(
                call,
                CANCELLED_MESSAGE,
                status=ToolResultStatus.CANCELLED,
                duration=time.time() - start_time,
            )

        except asyncio.CancelledError:
            if abort_signal is None or not abort_signal.is_aborted():
                raise
            logger.info("tool_execution_cancelled", tool_name=call.name)
            result = ToolResult.error(
                call,
                CANCELLED_MESSAGE,
                status=ToolResultStatus.CANCELLED,
                duration=time.time() - start_time,
            )

        except Exception as e:
            logger.error(
                "tool_execution_exception",
                tool_name=call.name,
                error=str(e),
                exc_info=True,
            )
            result = ToolResult.error(
                call, f"Tool execution failed: {e}", duration=time.time() - start_time
            )

        await self.events.emit(
            AgentEventType.TOOL_EXECUTION_END,
            tool_call_id=call.id,
            tool_name=call.name,
            is_error=result.is_error,
            status=result.status.value,
            duration=result.duration,
        )
        logger.debug(
            "tool_execution_completed",
            tool_name=call.name,
            success=not result.is_error,
            duration=result.duration,
        )
        return result


__all__ = ["ToolCallScheduler", "ScheduleResult", "SKIPPED_MESSAGE", "CANCELLED_MESSAGE"]
