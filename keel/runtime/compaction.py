"""
CompactionEngine - keeps the active branch within the context window.

One trigger cycle:

    IDLE -> TRIGGERED -> SUMMARIZING -> APPLIED
                                     -> FALLBACK_SUMMARIZING -> APPLIED
                                                             -> FAILED

The prefix to compact is selected once, at trigger time, and never changes
during the cycle. The most recent ~``keep_recent_tokens`` stay verbatim;
the cut never separates a tool result from the assistant call that
requested it.
"""

import time
from dataclasses import dataclass, field
from enum import Enum

from keel.config.schema import CompactionConfig
from keel.domain.adapters import EntryAdapter
from keel.domain.compaction import CompactionDetails, CompactionStrategy, DetailsAccumulator
from keel.domain.entries import (
    BaseEntry,
    BranchSummaryEntry,
    CompactionEntry,
    MessageEntry,
)
from keel.errors import CancellationError
from keel.runtime.context import effective_entries
from keel.runtime.control import AbortSignal
from keel.runtime.file_tracking import FileTracker, format_file_lists
from keel.runtime.hooks import HookRegistry
from keel.runtime.session_log import SessionLog
from keel.runtime.summarizer import BRANCH_SUMMARY_PROMPT, Summarizer, parse_summary_markers
from keel.utils.logging import get_logger
from keel.utils.tokens import TokenCounter, get_token_counter

logger = get_logger(__name__)

SUMMARY_TRUNCATED_MARKER = "\n... [summary truncated to fit the context window]"
FIT_ATTEMPTS = 5


class CompactionState(str, Enum):
    IDLE = "idle"
    TRIGGERED = "triggered"
    SUMMARIZING = "summarizing"
    FALLBACK_SUMMARIZING = "fallback_summarizing"
    APPLIED = "applied"
    FAILED = "failed"


@dataclass(frozen=True)
class CompactionPreparation:
    """Window selected at trigger time."""

    entries_to_summarize: tuple[BaseEntry, ...]
    kept_entries: tuple[BaseEntry, ...]
    first_kept_entry_id: str | None
    tokens_before: int
    previous: CompactionEntry | None = None

    @property
    def covered_entry_ids(self) -> tuple[str, ...]:
        return tuple(entry.id for entry in self.entries_to_summarize)


@dataclass
class CompactionOutcome:
    """Path taken through one trigger cycle and its result."""

    states: list[CompactionState] = field(default_factory=lambda: [CompactionState.IDLE])
    entry_id: str | None = None
    entry: CompactionEntry | None = None
    strategy: CompactionStrategy | None = None
    error: str | None = None
    primary_error: str | None = None
    tokens_before: int = 0
    tokens_after: int = 0
    duration: float = 0.0

    @property
    def state(self) -> CompactionState:
        return self.states[-1]

    @property
    def applied(self) -> bool:
        return self.state == CompactionState.APPLIED

    @property
    def failed(self) -> bool:
        return self.state == CompactionState.FAILED

    def advance(self, state: CompactionState) -> None:
        self.states.append(state)


@dataclass(frozen=True)
class BranchSummaryResult:
    summary: str
    details: CompactionDetails
    strategy: CompactionStrategy
    abandoned_entry_ids: tuple[str, ...] = ()


def is_valid_cut_point(entry: BaseEntry) -> bool:
    """A kept suffix may only start at a user/assistant message or a branch summary."""
    if isinstance(entry, MessageEntry):
        return not entry.is_tool_result()
    return isinstance(entry, BranchSummaryEntry)


class CompactionEngine:
    """
    Decides when to compact and produces CompactionEntries.

    Args:
        config: Budget and file-tracking configuration
        summarizer: Model-backed summarizer; without a model every cycle
            goes straight to the fallback path
        hooks: Pre/post-compaction hooks
        token_counter: Token estimator for entries
    """

    def __init__(
        self,
        config: CompactionConfig | None = None,
        summarizer: Summarizer | None = None,
        hooks: HookRegistry | None = None,
        token_counter: TokenCounter | None = None,
    ):
        self.config = config or CompactionConfig()
        self.summarizer = summarizer or Summarizer()
        self.hooks = hooks or HookRegistry()
        self.token_counter = token_counter or get_token_counter()
        self.file_tracker = FileTracker.from_config(self.config)

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    def entry_tokens(self, entry: BaseEntry) -> int:
        message = EntryAdapter.to_llm_message(entry)
        return self.token_counter.count_message(message) if message else 0

    def used_tokens(self, log: SessionLog, leaf_id: str | None = None) -> int:
        """Tokens of the effective context of a branch (without system prompt)."""
        entries = effective_entries(log.get_branch(leaf_id))
        return sum(self.entry_tokens(entry) for entry in entries)

    def should_compact(self, used_tokens: int) -> bool:
        return self.config.enabled and used_tokens > self.config.threshold

    @property
    def keep_budget(self) -> int:
        # Never keep more than half the usable window verbatim
        return min(self.config.keep_recent_tokens, self.config.threshold // 2)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def find_cut_index(self, window: list[BaseEntry]) -> int | None:
        """
        Index of the first verbatim entry of ``window``.

        Walks back from the newest entry until the keep budget is reached,
        then moves forward to the nearest valid cut point (or backward when
        there is none).
        """
        budget = self.keep_budget
        accumulated = 0
        boundary = None
        for index in range(len(window) - 1, -1, -1):
            accumulated += self.entry_tokens(window[index])
            if accumulated >= budget:
                boundary = index
                break
        if boundary is None:
            return None

        for index in range(boundary, len(window)):
            if is_valid_cut_point(window[index]):
                return index
        for index in range(boundary - 1, -1, -1):
            if is_valid_cut_point(window[index]):
                return index
        return None

    def prepare(self, log: SessionLog) -> CompactionPreparation | None:
        """Select the prefix to compact; None when nothing can be compacted."""
        branch = log.get_branch()
        previous = log.latest_compaction()
        effective = effective_entries(branch)
        tokens_before = sum(self.entry_tokens(entry) for entry in effective)

        window = [entry for entry in effective if not isinstance(entry, CompactionEntry)]
        cut = self.find_cut_index(window)
        if not cut:
            return None

        return CompactionPreparation(
            entries_to_summarize=tuple(window[:cut]),
            kept_entries=tuple(window[cut:]),
            first_kept_entry_id=window[cut].id,
            tokens_before=tokens_before,
            previous=previous,
        )

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    def _seed_details(self, preparation: CompactionPreparation) -> DetailsAccumulator:
        accumulator = DetailsAccumulator()
        previous = preparation.previous
        if previous is not None:
            for path in previous.details.read_files:
                accumulator.add_read(path)
            for path in previous.details.modified_files:
                accumulator.add_modified(path)
            for decision in previous.details.decisions:
                accumulator.add_decision(decision.description, decision.rationale)
            for error in previous.details.errors:
                accumulator.add_error(error.description, error.resolution)
        self.file_tracker.track_entries(preparation.entries_to_summarize, accumulator)
        return accumulator

    async def compact(
        self,
        log: SessionLog,
        instructions: str | None = None,
        abort_signal: AbortSignal | None = None,
    ) -> CompactionOutcome:
        """
        Run one trigger cycle and append the CompactionEntry.

        Model failures fall back to the rule-based summary. A cycle that
        cannot produce any summary ends in FAILED; nothing is appended and
        the session stays at its pre-compaction state.

        Raises:
            CancellationError: Aborted while summarizing.
            PersistenceError: The CompactionEntry could not be written.
        """
        started = time.time()
        outcome = CompactionOutcome()
        outcome.advance(CompactionState.TRIGGERED)

        preparation = self.prepare(log)
        if preparation is None:
            outcome.error = "Nothing to compact: the active branch fits in the kept suffix"
            outcome.advance(CompactionState.FAILED)
            logger.warning("compaction_failed", error=outcome.error)
            return outcome
        outcome.tokens_before = preparation.tokens_before

        logger.info(
            "compaction_triggered",
            tokens_before=preparation.tokens_before,
            entries_to_summarize=len(preparation.entries_to_summarize),
            kept_entries=len(preparation.kept_entries),
            iterative=preparation.previous is not None,
        )

        try:
            accumulator = self._seed_details(preparation)
            await self.hooks.before_compaction(preparation, accumulator)
        except Exception as e:
            return self._fail(outcome, f"Pre-compaction failed: {e}")

        previous_summary = preparation.previous.summary if preparation.previous else None
        entries = list(preparation.entries_to_summarize)

        outcome.advance(CompactionState.SUMMARIZING)
        try:
            summary = await self.summarizer.summarize(
                entries,
                previous_summary=previous_summary,
                instructions=instructions,
                abort_signal=abort_signal,
            )
            parse_summary_markers(summary, accumulator)
            strategy = CompactionStrategy.LLM
        except CancellationError:
            raise
        except Exception as e:
            outcome.primary_error = str(e)
            logger.warning(
                "compaction_summary_failed",
                error=str(e),
                error_type=type(e).__name__,
            )
            outcome.advance(CompactionState.FALLBACK_SUMMARIZING)
            try:
                if preparation.previous is not None:
                    for task in preparation.previous.details.pending_tasks:
                        accumulator.add_pending(task)
                summary = self.summarizer.fallback_summary(
                    entries,
                    accumulator.build(),
                    previous_summary=previous_summary,
                    user_chars=self.config.fallback_user_chars,
                )
                strategy = CompactionStrategy.FALLBACK
            except Exception as fallback_error:
                return self._fail(outcome, f"Fallback summary failed: {fallback_error}")

        try:
            await self.hooks.after_compaction(preparation, accumulator)
        except Exception as e:
            return self._fail(outcome, f"Post-compaction failed: {e}")

        details = accumulator.build()
        if strategy == CompactionStrategy.LLM:
            files = format_file_lists(details.read_files, details.modified_files)
            if files:
                summary = f"{summary}\n\n{files}"

        kept_tokens = sum(self.entry_tokens(kept) for kept in preparation.kept_entries)
        fitted = self.fit_summary(summary, kept_tokens)
        if fitted is None:
            return self._fail(
                outcome,
                f"Kept suffix ({kept_tokens} tokens) leaves no room for a summary "
                f"under the threshold ({self.config.threshold})",
            )
        if fitted != summary:
            logger.warning(
                "compaction_summary_trimmed",
                strategy=strategy.value,
                original_chars=len(summary),
                trimmed_chars=len(fitted),
            )
        summary = fitted

        entry = CompactionEntry(
            summary=summary,
            details=details,
            strategy=strategy,
            covered_entry_ids=preparation.covered_entry_ids,
            first_kept_entry_id=preparation.first_kept_entry_id,
            tokens_before=preparation.tokens_before,
        )
        entry_id = await log.append(entry)

        outcome.entry_id = entry_id
        outcome.entry = log.get_entry(entry_id)
        outcome.strategy = strategy
        outcome.tokens_after = self.used_tokens(log)
        outcome.duration = time.time() - started
        outcome.advance(CompactionState.APPLIED)

        logger.info(
            "compaction_applied",
            entry_id=entry_id,
            strategy=strategy.value,
            tokens_before=outcome.tokens_before,
            tokens_after=outcome.tokens_after,
            read_files=len(details.read_files),
            modified_files=len(details.modified_files),
            duration=outcome.duration,
        )
        return outcome

    def fit_summary(self, summary: str, kept_tokens: int) -> str | None:
        """
        Trim ``summary`` so that it and the kept suffix stay within the
        threshold. None when even a minimal summary does not fit.
        """
        available = self.config.threshold - kept_tokens
        for _ in range(FIT_ATTEMPTS):
            candidate = CompactionEntry(summary=summary, strategy=CompactionStrategy.FALLBACK)
            tokens = self.entry_tokens(candidate)
            if tokens <= available:
                return summary
            keep = int(len(summary) * available / tokens * 0.9) - len(SUMMARY_TRUNCATED_MARKER)
            if keep <= 0:
                return None
            summary = summary[:keep].rstrip() + SUMMARY_TRUNCATED_MARKER
        return None

    def _fail(self, outcome: CompactionOutcome, error: str) -> CompactionOutcome:
        outcome.error = error
        outcome.advance(CompactionState.FAILED)
        logger.warning("compaction_failed", error=error, states=[s.value for s in outcome.states])
        return outcome

    # ------------------------------------------------------------------
    # Branch summaries
    # ------------------------------------------------------------------

    async def summarize_branch(
        self,
        log: SessionLog,
        target_id: str,
        abort_signal: AbortSignal | None = None,
    ) -> BranchSummaryResult | None:
        """
        Summarize the part of the active branch that navigating to
        ``target_id`` abandons. None when nothing would be abandoned.
        """
        target_path = {entry.id for entry in log.get_branch(target_id)}
        abandoned = [entry for entry in log.get_branch() if entry.id not in target_path]
        if not abandoned:
            return None

        accumulator = DetailsAccumulator()
        self.file_tracker.track_entries(abandoned, accumulator)

        try:
            summary = await self.summarizer.summarize(
                abandoned, abort_signal=abort_signal, prompt=BRANCH_SUMMARY_PROMPT
            )
            parse_summary_markers(summary, accumulator)
            strategy = CompactionStrategy.LLM
        except CancellationError:
            raise
        except Exception as e:
            logger.warning("branch_summary_failed", error=str(e), error_type=type(e).__name__)
            summary = self.summarizer.fallback_summary(
                abandoned, accumulator.build(), user_chars=self.config.fallback_user_chars
            )
            strategy = CompactionStrategy.FALLBACK

        details = accumulator.build()
        if strategy == CompactionStrategy.LLM:
            files = format_file_lists(details.read_files, details.modified_files)
            if files:
                summary = f"{summary}\n\n{files}"

        return BranchSummaryResult(
            summary=summary,
            details=details,
            strategy=strategy,
            abandoned_entry_ids=tuple(entry.id for entry in abandoned),
        )


__all__ = [
    "CompactionEngine",
    "CompactionState",
    "CompactionOutcome",
    "CompactionPreparation",
    "BranchSummaryResult",
    "is_valid_cut_point",
]
