"""
Tool Registry - closed mapping from tool name to tool descriptor.

Dispatch is always by name lookup into the registry. Built-in tools are
imported lazily by name, the way custom tools are registered.
"""

from __future__ import annotations

import importlib
import inspect
from typing import Any, Iterable

from keel.providers.tools.base import BaseTool
from keel.utils.logging import get_logger

logger = get_logger(__name__)


class ToolRegistry:
    """
    Registry of the tools available to one agent session.

    Supports:
    - Registering tool instances (names are unique keys)
    - Looking tools up by name for dispatch
    - Answering the concurrency policy for a tool name (unknown → unsafe)
    - Creating built-in tools by name with constructor parameters
    """

    # Built-in tool mappings: name -> (module_path, class_name)
    BUILTIN_TOOLS: dict[str, tuple[str, str]] = {
        "read_file": ("keel.providers.tools.builtin.file_read_tool", "FileReadTool"),
        "write_file": ("keel.providers.tools.builtin.file_write_tool", "FileWriteTool"),
        "bash": ("keel.providers.tools.builtin.bash_tool", "BashTool"),
        "session_search": ("keel.providers.tools.builtin.session_search_tool", "SessionSearchTool"),
    }

    def __init__(self, tools: Iterable[BaseTool] | None = None) -> None:
        self._tools: dict[str, BaseTool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: BaseTool, replace: bool = False) -> None:
        """Register a tool instance under its name."""
        if tool.name in self._tools and not replace:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(
            "tool_registered",
            tool_name=tool.name,
            concurrency_safe=tool.is_concurrency_safe(),
        )

    def unregister(self, name: str) -> bool:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            return True
        return False

    def get(self, name: str) -> BaseTool | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def is_concurrency_safe(self, name: str) -> bool:
        """Concurrency policy by name. Unknown tools are treated as unsafe."""
        tool = self._tools.get(name)
        if tool is None:
            return False
        return bool(tool.is_concurrency_safe())

    def openai_schemas(self) -> list[dict]:
        return [tool.to_openai_schema() for tool in self._tools.values()]

    # --- Built-in tools ---

    @classmethod
    def get_builtin_class(cls, name: str) -> type:
        """Get built-in tool class by name."""
        if name not in cls.BUILTIN_TOOLS:
            raise KeyError(f"Tool not found: {name}. Available: {sorted(cls.BUILTIN_TOOLS)}")
        module_path, class_name = cls.BUILTIN_TOOLS[name]
        module = importlib.import_module(module_path)
        return getattr(module, class_name)

    @classmethod
    def create_builtin(cls, name: str, params: dict[str, Any] | None = None, **kwargs: Any) -> BaseTool:
        """Create a built-in tool instance, passing only accepted parameters."""
        tool_class = cls.get_builtin_class(name)
        merged_params = {**(params or {}), **kwargs}

        sig = inspect.signature(tool_class.__init__)
        accepts_var_kw = any(p.kind == inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values())
        valid_params = {
            key: value
            for key, value in merged_params.items()
            if key in sig.parameters or accepts_var_kw
        }
        return tool_class(**valid_params)


__all__ = ["ToolRegistry"]
