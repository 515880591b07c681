"""
Model context construction.

The effective context of a branch is its latest compaction summary followed
by the verbatim entries the compaction kept and everything appended after
it. Context transforms run over copies; the self-report is synthesized per
call and never written to the log.
"""

from dataclasses import dataclass

from keel.config.schema import CompactionConfig
from keel.domain.adapters import EntryAdapter
from keel.domain.entries import BaseEntry, CompactionEntry
from keel.runtime.hooks import HookRegistry
from keel.runtime.session_log import SessionLog
from keel.utils.logging import get_logger
from keel.utils.tokens import TokenCounter, get_token_counter

logger = get_logger(__name__)

SELF_REPORT_MAX_FILES = 20


def effective_entries(branch: list[BaseEntry]) -> list[BaseEntry]:
    """
    Entries of ``branch`` that reach the model:
    ``[latest compaction] + [kept suffix] + [entries after the compaction]``.
    """
    compaction_index = None
    for index in range(len(branch) - 1, -1, -1):
        if isinstance(branch[index], CompactionEntry):
            compaction_index = index
            break
    if compaction_index is None:
        return list(branch)

    compaction: CompactionEntry = branch[compaction_index]
    kept: list[BaseEntry] = []
    if compaction.first_kept_entry_id is not None:
        found = False
        for entry in branch[:compaction_index]:
            if entry.id == compaction.first_kept_entry_id:
                found = True
            if found and not isinstance(entry, CompactionEntry):
                kept.append(entry)

    after = [e for e in branch[compaction_index + 1 :] if not isinstance(e, CompactionEntry)]
    return [compaction, *kept, *after]


@dataclass
class BuiltContext:
    """Messages for one model call plus the token usage they represent."""

    messages: list[dict]
    used_tokens: int
    self_report: dict | None = None


class ContextBuilder:
    """Builds the message list for each model call from the session log."""

    def __init__(
        self,
        log: SessionLog,
        config: CompactionConfig | None = None,
        hooks: HookRegistry | None = None,
        token_counter: TokenCounter | None = None,
        system_prompt: str | None = None,
    ):
        self.log = log
        self.config = config or CompactionConfig()
        self.hooks = hooks or HookRegistry()
        self.token_counter = token_counter or get_token_counter()
        self.system_prompt = system_prompt

    def base_messages(self, leaf_id: str | None = None) -> list[dict]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        branch = self.log.get_branch(leaf_id)
        messages.extend(EntryAdapter.entries_to_messages(effective_entries(branch)))
        return messages

    def used_tokens(self, leaf_id: str | None = None) -> int:
        return self.token_counter.count_messages(self.base_messages(leaf_id))

    def self_report(self, used_tokens: int) -> dict | None:
        """Status message for the model once usage crosses the disclosure threshold."""
        window = self.config.context_window
        if used_tokens < self.config.disclosure_threshold * window:
            return None

        until_compaction = max(0, self.config.threshold - used_tokens)
        percent = used_tokens * 100 // window
        lines = [
            "[Context status]",
            f"Tokens used: {used_tokens} of {window} ({percent}%)",
            f"Tokens until next compaction: {until_compaction}",
        ]
        compaction = self.log.latest_compaction()
        if compaction is not None:
            files = sorted(compaction.details.touched_files)
            if files:
                shown = files[:SELF_REPORT_MAX_FILES]
                more = len(files) - len(shown)
                suffix = f" (+{more} more)" if more > 0 else ""
                lines.append("Files tracked by last compaction: " + ", ".join(shown) + suffix)
        return {"role": "system", "content": "\n".join(lines)}

    async def build(self) -> BuiltContext:
        """
        Transformed messages for the next model call.

        Transforms receive copies, so the returned list shares no dicts with
        anything the loop keeps.
        """
        messages = await self.hooks.apply_context_transforms(self.base_messages())
        used = self.token_counter.count_messages(messages)
        report = self.self_report(used)
        if report is not None:
            messages.append(report)
            logger.debug("context_self_report_injected", used_tokens=used)
        return BuiltContext(messages=messages, used_tokens=used, self_report=report)


__all__ = ["ContextBuilder", "BuiltContext", "effective_entries"]
