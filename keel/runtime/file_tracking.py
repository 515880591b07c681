"""
File operations observed in a window of session entries.

Tracking reads the tool calls themselves, so it never depends on a summary
mentioning the files.
"""

from typing import Iterable

from keel.config.schema import CompactionConfig
from keel.domain.compaction import DetailsAccumulator
from keel.domain.entries import BaseEntry, MessageEntry
from keel.domain.tools import ToolCall


class FileTracker:
    """Classifies tool calls into file reads and file modifications."""

    def __init__(
        self,
        read_tools: Iterable[str],
        write_tools: Iterable[str],
        path_argument_keys: Iterable[str],
    ):
        self.read_tools = set(read_tools)
        self.write_tools = set(write_tools)
        self.path_argument_keys = list(path_argument_keys)

    @classmethod
    def from_config(cls, config: CompactionConfig) -> "FileTracker":
        return cls(config.read_tools, config.write_tools, config.path_argument_keys)

    def paths_of(self, call: ToolCall) -> list[str]:
        paths = []
        for key in self.path_argument_keys:
            value = call.arguments.get(key)
            if isinstance(value, str) and value:
                paths.append(value)
            elif isinstance(value, list):
                paths.extend(v for v in value if isinstance(v, str) and v)
        return paths

    def track_call(self, call: ToolCall, accumulator: DetailsAccumulator) -> None:
        if call.name in self.write_tools:
            for path in self.paths_of(call):
                accumulator.add_modified(path)
        elif call.name in self.read_tools:
            for path in self.paths_of(call):
                accumulator.add_read(path)

    def track_entries(self, entries: Iterable[BaseEntry], accumulator: DetailsAccumulator) -> None:
        for entry in entries:
            if isinstance(entry, MessageEntry) and entry.has_tool_calls():
                for call in entry.tool_calls:
                    self.track_call(call, accumulator)


def format_file_lists(read_files: Iterable[str], modified_files: Iterable[str]) -> str:
    """Render tracked files as tagged blocks appended to a summary."""
    sections = []
    read_files = sorted(read_files)
    modified_files = sorted(modified_files)
    if read_files:
        sections.append("<read-files>\n" + "\n".join(read_files) + "\n</read-files>")
    if modified_files:
        sections.append("<modified-files>\n" + "\n".join(modified_files) + "\n</modified-files>")
    return "\n\n".join(sections)


__all__ = ["FileTracker", "format_file_lists"]
