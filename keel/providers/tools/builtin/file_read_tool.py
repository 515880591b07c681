"""
FileReadTool - read a text file, optionally a window of lines.
"""

import asyncio
from pathlib import Path
from typing import Any

from keel.domain import ToolOutput
from keel.errors import ToolExecutionError
from keel.providers.tools.base import BaseTool, ProgressCallback
from keel.runtime.control import AbortSignal

DEFAULT_LINE_LIMIT = 2000


class FileReadTool(BaseTool):
    """Side-effect free, so concurrency-safe."""

    def __init__(self, base_dir: str | None = None, max_lines: int = DEFAULT_LINE_LIMIT) -> None:
        self.base_dir = Path(base_dir).expanduser() if base_dir else Path.cwd()
        self.max_lines = max_lines
        super().__init__()

    def get_name(self) -> str:
        return "read_file"

    def get_description(self) -> str:
        return (
            "Read the contents of a text file. Use offset (1-based line number) "
            f"and limit to read part of a large file; at most {self.max_lines} "
            "lines are returned per call."
        )

    def get_parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path of the file to read"},
                "offset": {"type": "integer", "description": "First line to read (1-based)"},
                "limit": {"type": "integer", "description": "Maximum number of lines"},
            },
            "required": ["path"],
        }

    def is_concurrency_safe(self) -> bool:
        return True

    def resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else self.base_dir / candidate

    async def execute(
        self,
        parameters: dict[str, Any],
        abort_signal: AbortSignal | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ToolOutput:
        path = parameters.get("path")
        if not path:
            raise ToolExecutionError("Missing required parameter: path")
        file_path = self.resolve(path)
        if not file_path.is_file():
            raise ToolExecutionError(f"File not found: {path}")

        try:
            text = await asyncio.to_thread(file_path.read_text, encoding="utf-8", errors="replace")
        except OSError as e:
            raise ToolExecutionError(f"Failed to read {path}: {e}") from e

        lines = text.splitlines()
        offset = max(int(parameters.get("offset") or 1), 1)
        limit = min(int(parameters.get("limit") or self.max_lines), self.max_lines)
        if offset > len(lines) and lines:
            raise ToolExecutionError(
                f"Offset {offset} is beyond end of file ({len(lines)} lines total)"
            )

        selected = lines[offset - 1 : offset - 1 + limit]
        content = "\n".join(selected)
        end = offset - 1 + len(selected)
        if end < len(lines):
            content += f"\n\n[Showing lines {offset}-{end} of {len(lines)}. Use offset={end + 1} to continue.]"

        return ToolOutput(
            content=content,
            details={"path": str(file_path), "total_lines": len(lines)},
        )


__all__ = ["FileReadTool"]
