"""
Tools providers module.

This module contains the tool contract and registry:
- BaseTool: Abstract base class for tools
- FunctionTool: Wrap a coroutine function as a tool
- ToolRegistry: Name-keyed registry used for dispatch
"""

from .base import BaseTool, FunctionTool, ProgressCallback, ToolDefinition
from .registry import ToolRegistry

__all__ = [
    "BaseTool",
    "FunctionTool",
    "ProgressCallback",
    "ToolDefinition",
    "ToolRegistry",
]
