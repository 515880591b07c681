"""
Built-in reference tools.
"""

from .bash_tool import BashTool
from .file_read_tool import FileReadTool
from .file_write_tool import FileWriteTool
from .session_search_tool import SessionSearchTool

__all__ = ["BashTool", "FileReadTool", "FileWriteTool", "SessionSearchTool"]
