"""
BashTool - run a shell command.

The command runs in its own process group. On timeout or abort the whole
process tree is terminated (SIGTERM, then SIGKILL for survivors). Output is
tail-truncated: the end of a long build log is what matters.
"""

import asyncio
import os
from typing import Any

import psutil

from keel.domain import ToolOutput
from keel.errors import CancellationError, ToolExecutionError
from keel.providers.tools.base import BaseTool, ProgressCallback
from keel.runtime.control import AbortSignal, race_abort
from keel.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_LINES = 2000
DEFAULT_MAX_CHARS = 50 * 1024
TERMINATE_GRACE_SECONDS = 3.0


def truncate_tail(text: str, max_lines: int = DEFAULT_MAX_LINES, max_chars: int = DEFAULT_MAX_CHARS) -> tuple[str, bool]:
    """Keep the last ``max_lines`` lines and at most ``max_chars`` characters."""
    truncated = False
    lines = text.split("\n")
    if len(lines) > max_lines:
        lines = lines[-max_lines:]
        truncated = True
    result = "\n".join(lines)
    if len(result) > max_chars:
        result = result[-max_chars:]
        newline = result.find("\n")
        if 0 <= newline < len(result) - 1:
            result = result[newline + 1 :]
        truncated = True
    return result, truncated


def _kill_tree(pid: int, grace: float) -> None:
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    procs = children + [parent]
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=grace)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass


async def terminate_process_tree(pid: int, grace: float = TERMINATE_GRACE_SECONDS) -> None:
    """Terminate a process and all of its descendants."""
    await asyncio.to_thread(_kill_tree, pid, grace)


class BashTool(BaseTool):
    """Shell command execution. Not concurrency-safe."""

    def __init__(
        self,
        cwd: str | None = None,
        shell: str = "/bin/bash",
        timeout_seconds: float | None = None,
        max_lines: int = DEFAULT_MAX_LINES,
        max_chars: int = DEFAULT_MAX_CHARS,
    ) -> None:
        self.cwd = cwd or os.getcwd()
        self.shell = shell
        self.timeout_seconds = timeout_seconds
        self.max_lines = max_lines
        self.max_chars = max_chars
        super().__init__()

    def get_name(self) -> str:
        return "bash"

    def get_description(self) -> str:
        return (
            "Execute a bash command in the working directory. Returns stdout and "
            "stderr combined. Output is truncated to the last "
            f"{self.max_lines} lines or {self.max_chars // 1024}KB. "
            "Optionally provide a timeout in seconds."
        )

    def get_parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Bash command to execute"},
                "timeout": {
                    "type": "number",
                    "description": "Timeout in seconds (optional, no default timeout)",
                },
            },
            "required": ["command"],
        }

    async def execute(
        self,
        parameters: dict[str, Any],
        abort_signal: AbortSignal | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ToolOutput:
        command = parameters.get("command")
        if not isinstance(command, str) or not command.strip():
            raise ToolExecutionError("Command cannot be empty")
        timeout = parameters.get("timeout")
        if not os.path.isdir(self.cwd):
            raise ToolExecutionError(f"Working directory does not exist: {self.cwd}")
        if abort_signal is not None:
            abort_signal.raise_if_aborted()

        process = await asyncio.create_subprocess_exec(
            self.shell,
            "-c",
            command,
            cwd=self.cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        logger.debug("bash_started", pid=process.pid, command=command[:200])

        chunks: list[str] = []

        async def collect() -> int:
            assert process.stdout is not None
            while True:
                data = await process.stdout.read(4096)
                if not data:
                    break
                chunks.append(data.decode("utf-8", errors="replace"))
                if on_progress is not None:
                    tail, _ = truncate_tail("".join(chunks), self.max_lines, self.max_chars)
                    on_progress(ToolOutput(content=tail))
            return await process.wait()

        try:
            exit_code = await race_abort(
                asyncio.wait_for(collect(), timeout=timeout if timeout else None),
                abort_signal,
            )
        except asyncio.TimeoutError:
            await terminate_process_tree(process.pid)
            output, _ = truncate_tail("".join(chunks), self.max_lines, self.max_chars)
            raise ToolExecutionError(
                f"{output}\n\nCommand timed out after {timeout:g} seconds".lstrip(),
                details={"timeout": timeout},
            )
        except (CancellationError, asyncio.CancelledError):
            await terminate_process_tree(process.pid)
            logger.info("bash_terminated", pid=process.pid)
            raise

        output, truncated = truncate_tail("".join(chunks), self.max_lines, self.max_chars)
        details = {"exit_code": exit_code, "truncated": truncated}
        if exit_code != 0:
            raise ToolExecutionError(
                f"{output}\n\nCommand exited with code {exit_code}".lstrip(), details=details
            )
        return ToolOutput(content=output or "(no output)", details=details)


__all__ = ["BashTool", "terminate_process_tree", "truncate_tail"]
