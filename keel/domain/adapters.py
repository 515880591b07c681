"""
Adapters for converting between domain models and external formats.

This module handles all format conversions, keeping domain models pure.
"""

from typing import Any

from .entries import BaseEntry, BranchSummaryEntry, CompactionEntry, MessageEntry, MessageRole

COMPACTION_SUMMARY_PREFIX = (
    "The conversation history before this point was compacted into the following summary:\n\n"
)
BRANCH_SUMMARY_PREFIX = "The following is a summary of a branch that this conversation came back from:\n\n"


class EntryAdapter:
    """Adapter for converting session entries to LLM message format"""

    @staticmethod
    def to_llm_message(entry: BaseEntry) -> dict[str, Any] | None:
        """
        Convert an entry to an OpenAI-compatible message.

        Returns None for entries that never reach the model (labels).
        """
        if isinstance(entry, MessageEntry):
            if entry.role == MessageRole.TOOL_RESULT:
                return {
                    "role": "tool",
                    "tool_call_id": entry.tool_call_id,
                    "name": entry.tool_name,
                    "content": entry.content,
                }
            msg: dict[str, Any] = {"role": entry.role.value, "content": entry.content}
            if entry.tool_calls:
                msg["tool_calls"] = [tc.to_openai() for tc in entry.tool_calls]
            return msg

        if isinstance(entry, CompactionEntry):
            return {
                "role": "user",
                "content": f"{COMPACTION_SUMMARY_PREFIX}<summary>\n{entry.summary}\n</summary>",
            }

        if isinstance(entry, BranchSummaryEntry):
            return {
                "role": "user",
                "content": f"{BRANCH_SUMMARY_PREFIX}<summary>\n{entry.summary}\n</summary>",
            }

        return None

    @staticmethod
    def entries_to_messages(entries: list[BaseEntry]) -> list[dict[str, Any]]:
        """
        Convert a list of entries to a list of LLM messages.

        Args:
            entries: Entries in root-to-leaf order

        Returns:
            list: Messages in OpenAI format
        """
        messages = []
        for entry in entries:
            msg = EntryAdapter.to_llm_message(entry)
            if msg is not None:
                messages.append(msg)
        return messages


__all__ = ["EntryAdapter", "COMPACTION_SUMMARY_PREFIX", "BRANCH_SUMMARY_PREFIX"]
