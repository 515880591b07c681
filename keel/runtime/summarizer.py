"""
Summary generation for compaction and branch summaries.

Two paths:
- ``Summarizer.summarize``: asks the model, optionally updating a previous
  summary (iterative summarization).
- ``Summarizer.fallback_summary``: deterministic, built only from data
  already in the log; never calls out.
"""

import json
import re
from collections import Counter
from typing import TYPE_CHECKING

from keel.domain.compaction import CompactionDetails, DetailsAccumulator
from keel.domain.entries import BaseEntry, BranchSummaryEntry, CompactionEntry, MessageEntry
from keel.errors import CancellationError, ModelCallError
from keel.runtime.control import AbortSignal, race_abort
from keel.runtime.file_tracking import format_file_lists
from keel.utils.logging import get_logger

if TYPE_CHECKING:
    from keel.providers.llm.base import Model

logger = get_logger(__name__)

TOOL_RESULT_MAX_CHARS = 2000
PREVIOUS_SUMMARY_MAX_CHARS = 4000
FALLBACK_TITLE = "## Summary (generated without the model)"

# Parts of an earlier summary the fallback regenerates instead of repeating
_REGENERATED_SECTIONS = {FALLBACK_TITLE, "## Earlier Summary", "## Pending"}
_REGENERATED_BLOCK_RE = re.compile(
    r"<(earlier-summary|read-files|modified-files)>.*?</\1>", re.DOTALL
)

SUMMARIZATION_SYSTEM_PROMPT = """You are a context summarization assistant. \
Your task is to read a conversation between a user and an AI coding assistant, \
then produce a structured summary following the exact format specified.

Do NOT continue the conversation. Do NOT respond to any questions in the \
conversation. ONLY output the structured summary."""

SUMMARY_FORMAT = """Use this format:

## Goal
[What the user is trying to accomplish]

## Progress
- [Work completed so far]

## Key Decisions
DECISION: <what was decided> | <why>

## Errors
ERROR: <what went wrong> | <how it was resolved, or "unresolved">

## Next Steps
- [Ordered list of what remains to be done]

## Critical Context
- [Any data, names or references needed to continue]

Keep each section concise. Preserve exact file paths, function names and error messages."""

SUMMARIZATION_PROMPT = (
    "The messages above are a conversation to summarize. Create a structured "
    "context checkpoint summary that another assistant will use to continue the work.\n\n"
    + SUMMARY_FORMAT
)

UPDATE_SUMMARIZATION_PROMPT = (
    "The messages above are NEW conversation messages to incorporate into the "
    "existing summary provided in <previous-summary> tags.\n\n"
    "Update the summary: keep everything still relevant, add new progress, "
    "decisions and errors, move completed items out of Next Steps.\n\n"
    + SUMMARY_FORMAT
)

BRANCH_SUMMARY_PROMPT = (
    "The messages above are a branch of the conversation that the user is "
    "leaving. Summarize what was tried on this branch and what was learned, "
    "so the work can continue from an earlier point without replaying it.\n\n"
    + SUMMARY_FORMAT
)

_DECISION_RE = re.compile(r"^\s*(?:[-*]\s*)?\**DECISION\**:\s*(.+)$", re.IGNORECASE)
_ERROR_RE = re.compile(r"^\s*(?:[-*]\s*)?\**ERROR\**:\s*(.+)$", re.IGNORECASE)
_PENDING_RE = re.compile(r"^\s*(?:[-*]\s*)?\**(?:TODO|PENDING)\**:\s*(.+)$", re.IGNORECASE)
_HEADER_RE = re.compile(r"^\s*#{1,6}\s*(.+?)\s*$")
_BULLET_RE = re.compile(r"^\s*(?:[-*]|\d+[.)])\s+(?:\[[ xX]?\]\s*)?(.+)$")
_PENDING_SECTIONS = {"pending", "pending tasks", "next steps", "todo"}


def _split_pair(text: str) -> tuple[str, str]:
    if "|" in text:
        first, second = text.split("|", 1)
        return first.strip(), second.strip()
    return text.strip(), ""


def parse_summary_markers(summary: str, accumulator: DetailsAccumulator) -> None:
    """
    Collect decisions, errors and pending tasks from a summary.

    Recognized forms:
        DECISION: <description> | <rationale>
        ERROR: <description> | <resolution>
        TODO: <task>  /  PENDING: <task>
        bullets under a "## Pending" or "## Next Steps" header
    """
    in_pending_section = False
    for line in summary.splitlines():
        header = _HEADER_RE.match(line)
        if header:
            in_pending_section = header.group(1).strip().rstrip(":").lower() in _PENDING_SECTIONS
            continue

        match = _DECISION_RE.match(line)
        if match:
            accumulator.add_decision(*_split_pair(match.group(1)))
            continue
        match = _ERROR_RE.match(line)
        if match:
            accumulator.add_error(*_split_pair(match.group(1)))
            continue
        match = _PENDING_RE.match(line)
        if match:
            accumulator.add_pending(match.group(1))
            continue

        if in_pending_section:
            bullet = _BULLET_RE.match(line)
            if bullet and not bullet.group(1).startswith("["):
                accumulator.add_pending(bullet.group(1))


def serialize_entries(entries: list[BaseEntry]) -> str:
    """Render entries as a plain transcript for the summarization prompt."""
    parts = []
    for entry in entries:
        if isinstance(entry, MessageEntry):
            if entry.is_user():
                parts.append(f"[User]: {entry.content}")
            elif entry.is_assistant():
                if entry.content:
                    parts.append(f"[Assistant]: {entry.content}")
                if entry.tool_calls:
                    calls = "; ".join(
                        f"{call.name}({json.dumps(call.arguments, ensure_ascii=False)})"
                        for call in entry.tool_calls
                    )
                    parts.append(f"[Assistant tool calls]: {calls}")
            else:
                content = entry.content
                if len(content) > TOOL_RESULT_MAX_CHARS:
                    content = content[:TOOL_RESULT_MAX_CHARS] + "... [truncated]"
                marker = "Tool error" if entry.is_error else "Tool result"
                parts.append(f"[{marker} {entry.tool_name}]: {content}")
        elif isinstance(entry, (CompactionEntry, BranchSummaryEntry)):
            parts.append(f"[Summary]: {entry.summary}")
    return "\n\n".join(parts)


def carry_forward_summary(previous_summary: str, max_chars: int = PREVIOUS_SUMMARY_MAX_CHARS) -> str:
    """
    The part of an earlier summary repeated by a fallback summary.

    Its own earlier summary, file blocks and pending tasks are dropped:
    the details carry files and tasks forward, and dropping the nested
    earlier summary keeps repeated fallbacks from growing. The result is
    capped at ``max_chars``.
    """
    text = _REGENERATED_BLOCK_RE.sub("", previous_summary)
    kept = []
    for section in re.split(r"\n(?=## )", text):
        section = section.strip()
        if section and section.split("\n", 1)[0].strip() not in _REGENERATED_SECTIONS:
            kept.append(section)
    text = "\n\n".join(kept)
    if len(text) > max_chars:
        text = text[:max_chars].rstrip() + "\n... [earlier summary truncated]"
    return text


def build_fallback_summary(
    entries: list[BaseEntry],
    details: CompactionDetails,
    previous_summary: str | None = None,
    user_chars: int = 200,
) -> str:
    """
    Rule-based summary: the head of each user message, the tools invoked
    with their counts, tracked files and carried-forward pending tasks.
    """
    user_lines = []
    tool_counts: Counter[str] = Counter()
    for entry in entries:
        if not isinstance(entry, MessageEntry):
            continue
        if entry.is_user():
            text = " ".join(entry.content.split())
            if len(text) > user_chars:
                text = text[:user_chars] + "..."
            if text:
                user_lines.append(f"- {text}")
        elif entry.has_tool_calls():
            tool_counts.update(call.name for call in entry.tool_calls)

    sections = [FALLBACK_TITLE]
    earlier = carry_forward_summary(previous_summary) if previous_summary else ""
    if earlier:
        sections.append(f"## Earlier Summary\n<earlier-summary>\n{earlier}\n</earlier-summary>")
    if user_lines:
        sections.append("## User Requests\n" + "\n".join(user_lines))
    if tool_counts:
        tools = "\n".join(f"- {name} ({count})" for name, count in sorted(tool_counts.items()))
        sections.append("## Tools Used\n" + tools)
    if details.pending_tasks:
        sections.append("## Pending\n" + "\n".join(f"- {task}" for task in details.pending_tasks))
    files = format_file_lists(details.read_files, details.modified_files)
    if files:
        sections.append(files)
    return "\n\n".join(sections)


class Summarizer:
    """
    Produces summaries for compaction and branch navigation.

    ``model`` may be None, in which case every request takes the fallback
    path.
    """

    def __init__(self, model: "Model | None" = None, max_tokens: int | None = None):
        self.model = model
        self.max_tokens = max_tokens

    def build_messages(
        self,
        entries: list[BaseEntry],
        previous_summary: str | None = None,
        instructions: str | None = None,
        prompt: str | None = None,
    ) -> list[dict]:
        transcript = serialize_entries(entries)
        if prompt is None:
            prompt = UPDATE_SUMMARIZATION_PROMPT if previous_summary else SUMMARIZATION_PROMPT

        content = f"<conversation>\n{transcript}\n</conversation>\n\n"
        if previous_summary:
            content += f"<previous-summary>\n{previous_summary}\n</previous-summary>\n\n"
        content += prompt
        if instructions:
            content += f"\n\nAdditional focus: {instructions}"

        return [
            {"role": "system", "content": SUMMARIZATION_SYSTEM_PROMPT},
            {"role": "user", "content": content},
        ]

    async def summarize(
        self,
        entries: list[BaseEntry],
        previous_summary: str | None = None,
        instructions: str | None = None,
        abort_signal: AbortSignal | None = None,
        prompt: str | None = None,
    ) -> str:
        """
        Ask the model for a summary.

        Raises:
            ModelCallError: No model, a failing call or an empty summary.
            CancellationError: The abort signal fired.
        """
        if self.model is None:
            raise ModelCallError("No summarization model configured")

        messages = self.build_messages(entries, previous_summary, instructions, prompt)

        async def collect() -> str:
            text = ""
            async for chunk in self.model.arun_stream(
                messages, abort_signal=abort_signal, max_tokens=self.max_tokens
            ):
                if chunk.content:
                    text += chunk.content
            return text

        try:
            summary = await race_abort(collect(), abort_signal)
        except (CancellationError, ModelCallError):
            raise
        except Exception as e:
            raise ModelCallError(f"Summarization call failed: {e}") from e

        if abort_signal is not None:
            abort_signal.raise_if_aborted()
        if not summary.strip():
            raise ModelCallError("Model returned an empty summary")

        logger.debug("summary_generated", summary_length=len(summary), entries=len(entries))
        return summary.strip()

    def fallback_summary(
        self,
        entries: list[BaseEntry],
        details: CompactionDetails,
        previous_summary: str | None = None,
        user_chars: int = 200,
    ) -> str:
        return build_fallback_summary(entries, details, previous_summary, user_chars)


__all__ = [
    "Summarizer",
    "parse_summary_markers",
    "serialize_entries",
    "build_fallback_summary",
    "carry_forward_summary",
    "SUMMARIZATION_PROMPT",
    "UPDATE_SUMMARIZATION_PROMPT",
    "BRANCH_SUMMARY_PROMPT",
]
