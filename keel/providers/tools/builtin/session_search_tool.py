"""
SessionSearchTool - keyword search over the active branch of the session.

Lets the agent recall what compaction moved out of its context: compaction
summaries (with their tracked details), branch summaries, labels and
user/assistant messages. Returns snippets, never the full history.
"""

from typing import Any

from keel.domain import ToolOutput
from keel.domain.entries import (
    BaseEntry,
    BranchSummaryEntry,
    CompactionEntry,
    LabelEntry,
    MessageEntry,
)
from keel.errors import ToolExecutionError
from keel.providers.tools.base import BaseTool, ProgressCallback
from keel.runtime.control import AbortSignal
from keel.runtime.session_log import SessionLog

DEFAULT_LIMIT = 20
MAX_SNIPPET_LENGTH = 500
SCOPES = ("all", "compaction", "branch_summary", "label", "message")


def extract_snippet(text: str, keywords: list[str]) -> str:
    """Window of at most MAX_SNIPPET_LENGTH chars centered on the first match."""
    if len(text) <= MAX_SNIPPET_LENGTH:
        return text

    lower = text.lower()
    positions = [lower.find(kw) for kw in keywords]
    positions = [p for p in positions if p != -1]
    if not positions:
        return text[:MAX_SNIPPET_LENGTH] + "..."

    start = max(0, min(positions) - MAX_SNIPPET_LENGTH // 2)
    end = min(len(text), start + MAX_SNIPPET_LENGTH)
    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."
    return snippet


def compaction_search_text(entry: CompactionEntry) -> str:
    details = entry.details
    parts = [entry.summary]
    if details.modified_files:
        parts.append("Modified files: " + ", ".join(sorted(details.modified_files)))
    if details.read_files:
        parts.append("Read files: " + ", ".join(sorted(details.read_files)))
    if details.pending_tasks:
        parts.append("Pending tasks: " + ", ".join(details.pending_tasks))
    if details.decisions:
        parts.append("Decisions: " + ", ".join(d.description for d in details.decisions))
    if details.errors:
        parts.append("Errors: " + ", ".join(e.description for e in details.errors))
    return "\n".join(parts)


class SessionSearchTool(BaseTool):
    """Read-only over committed entries, so concurrency-safe."""

    def __init__(self, log: SessionLog) -> None:
        self.log = log
        super().__init__()

    def get_name(self) -> str:
        return "session_search"

    def get_description(self) -> str:
        return (
            "Search through session history including compaction summaries, branch "
            "summaries, labels, and messages. Use this to recall information that may "
            "have been compacted away from the current context. Returns matching "
            "snippets with entry IDs and timestamps. Does NOT load full history into context."
        )

    def get_parameters(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "query": {
                    "type": "string",
                    "description": "Keywords separated by spaces; an entry matches if it contains any of them",
                },
                "scope": {
                    "type": "string",
                    "enum": list(SCOPES),
                    "description": "Entry kinds to search (default all)",
                },
                "limit": {
                    "type": "integer",
                    "description": f"Maximum number of results (default {DEFAULT_LIMIT})",
                },
            },
            "required": ["query"],
        }

    def is_concurrency_safe(self) -> bool:
        return True

    def _search_entry(self, entry: BaseEntry, keywords: list[str]) -> dict | None:
        def matches(text: str) -> bool:
            lower = text.lower()
            return any(kw in lower for kw in keywords)

        if isinstance(entry, CompactionEntry):
            text = compaction_search_text(entry)
            kind = "compaction"
        elif isinstance(entry, BranchSummaryEntry):
            text = entry.summary
            kind = "branch_summary"
        elif isinstance(entry, LabelEntry):
            text = entry.label
            kind = "label"
        elif isinstance(entry, MessageEntry) and not entry.is_tool_result():
            text = entry.content
            kind = f"message:{entry.role.value}"
        else:
            return None

        if not matches(text):
            return None
        match = {
            "type": kind,
            "entry_id": entry.id,
            "timestamp": entry.timestamp.isoformat(),
            "snippet": extract_snippet(text, keywords),
        }
        if isinstance(entry, LabelEntry):
            match["label"] = entry.label
        return match

    async def execute(
        self,
        parameters: dict[str, Any],
        abort_signal: AbortSignal | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ToolOutput:
        query = parameters.get("query") or ""
        scope = parameters.get("scope") or "all"
        limit = int(parameters.get("limit") or DEFAULT_LIMIT)
        if scope not in SCOPES:
            raise ToolExecutionError(f"Invalid scope {scope!r}; expected one of {', '.join(SCOPES)}")

        keywords = [word.lower() for word in query.split() if word]
        if not keywords:
            raise ToolExecutionError("Search query cannot be empty")

        matches: list[dict] = []
        scanned = 0
        for entry in self.log.get_branch():
            if len(matches) >= limit:
                break
            if scope != "all" and entry.type != scope:
                continue
            scanned += 1
            match = self._search_entry(entry, keywords)
            if match is not None:
                matches.append(match)

        details = {"match_count": len(matches), "scope": scope, "total_entries_scanned": scanned}
        if not matches:
            return ToolOutput(
                content=f'No results for "{query}" (scope: {scope}, scanned {scanned} entries)',
                details=details,
            )

        lines = [f"Found {len(matches)} matches (scope: {scope}, scanned {scanned} entries):\n"]
        for index, match in enumerate(matches, start=1):
            lines.append(f"--- [{index}] {match['type']} | {match['timestamp']} | id:{match['entry_id']} ---")
            if "label" in match:
                lines.append(f"Label: {match['label']}")
            lines.append(match["snippet"])
            lines.append("")
        return ToolOutput(content="\n".join(lines), details=details)


__all__ = ["SessionSearchTool", "extract_snippet"]
