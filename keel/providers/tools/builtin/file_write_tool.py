"""
FileWriteTool - create or overwrite a text file.
"""

import asyncio
from pathlib import Path
from typing import Any

from keel.domain import ToolOutput
from keel.errors import ToolExecutionError
from keel.providers.tools.base import BaseTool, ProgressCallback
from keel.runtime.control import AbortSignal


class FileWriteTool(BaseTool):
    """Writes files, so never concurrency-safe."""

    def __init__(self, base_dir: str | None = None) -> None:
        self.base_dir = Path(base_dir).expanduser() if base_dir else Path.cwd()
        super().__init__()

    def get_name(self) -> str:
        return "write_file"

    def get_description(self) -> str:
        return (
            "Write content to a file, creating parent directories as needed. "
            "Overwrites the file if it exists."
        )

    def get_parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Path of the file to write"},
                "content": {"type": "string", "description": "Full file content"},
            },
            "required": ["path", "content"],
        }

    def resolve(self, path: str) -> Path:
        candidate = Path(path).expanduser()
        return candidate if candidate.is_absolute() else self.base_dir / candidate

    def _write(self, file_path: Path, content: str) -> bool:
        existed = file_path.exists()
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_path.write_text(content, encoding="utf-8")
        return existed

    async def execute(
        self,
        parameters: dict[str, Any],
        abort_signal: AbortSignal | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ToolOutput:
        path = parameters.get("path")
        content = parameters.get("content")
        if not path:
            raise ToolExecutionError("Missing required parameter: path")
        if not isinstance(content, str):
            raise ToolExecutionError("Missing required parameter: content")
        if abort_signal is not None:
            abort_signal.raise_if_aborted()

        file_path = self.resolve(path)
        try:
            existed = await asyncio.to_thread(self._write, file_path, content)
        except OSError as e:
            raise ToolExecutionError(f"Failed to write {path}: {e}") from e

        action = "Updated" if existed else "Created"
        return ToolOutput(
            content=f"{action} {path} ({len(content)} characters)",
            details={"path": str(file_path), "type": "update" if existed else "create"},
        )


__all__ = ["FileWriteTool"]
