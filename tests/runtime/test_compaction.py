"""
Tests for CompactionEngine: triggering, cut selection, summary paths,
file tracking and the trigger cycle states.
"""

import pytest
import pytest_asyncio

from keel.config.schema import CompactionConfig
from keel.domain import (
    CompactionEntry,
    CompactionStrategy,
    MessageEntry,
    ToolCall,
    ToolResult,
)
from keel.errors import CancellationError
from keel.runtime.compaction import CompactionEngine, CompactionState, is_valid_cut_point
from keel.runtime.context import effective_entries
from keel.runtime.control import AbortSignal
from keel.runtime.hooks import HookRegistry
from keel.runtime.session_log import Session
from keel.runtime.summarizer import Summarizer

CONFIG = CompactionConfig(context_window=2000, reserve_tokens=500, keep_recent_tokens=300)

LLM_SUMMARY = """## Goal
Refactor the module loader

## Key Decisions
DECISION: keep the cache in memory | restarts are rare

## Errors
ERROR: import cycle in loader.py | moved the import inside the function

## Next Steps
- Update the docs
"""


async def add_turn(log, i: int, tool: str = "read_file") -> None:
    """One user request, one tool round trip and a final answer (~325 tokens)."""
    await log.append(MessageEntry.user(f"request {i} " + "x" * 400))
    call = ToolCall(id=f"call{i}", name=tool, arguments={"path": f"src/m{i}.py"})
    await log.append(MessageEntry.assistant("", tool_calls=[call]))
    await log.append(
        MessageEntry.tool_result(
            ToolResult(tool_call_id=call.id, tool_name=tool, content="y" * 400)
        )
    )
    await log.append(MessageEntry.assistant(f"done {i} " + "z" * 400))


def tracked_paths(log, entry_ids, tool: str) -> set[str]:
    paths = set()
    for entry_id in entry_ids:
        entry = log.get_entry(entry_id)
        if isinstance(entry, MessageEntry):
            for call in entry.tool_calls:
                if call.name == tool:
                    paths.add(call.arguments["path"])
    return paths


@pytest_asyncio.fixture
async def log():
    session = await Session.in_memory()
    return session.log


def make_engine(counter, model=None, hooks=None, config=CONFIG) -> CompactionEngine:
    return CompactionEngine(
        config=config,
        summarizer=Summarizer(model),
        hooks=hooks,
        token_counter=counter,
    )


def test_should_compact_only_above_threshold(counter):
    engine = make_engine(counter)
    assert CONFIG.threshold == 1500
    assert engine.should_compact(1501)
    assert not engine.should_compact(1500)

    disabled = make_engine(
        counter, config=CompactionConfig(enabled=False, context_window=2000, reserve_tokens=500)
    )
    assert not disabled.should_compact(10_000)


def test_keep_budget_is_clamped_to_half_threshold(counter):
    engine = make_engine(
        counter, config=CompactionConfig(context_window=2000, reserve_tokens=500, keep_recent_tokens=20_000)
    )
    assert engine.keep_budget == 750


def test_reserve_must_fit_in_window():
    with pytest.raises(ValueError):
        CompactionConfig(context_window=1000, reserve_tokens=1000)


@pytest.mark.asyncio
async def test_compaction_brings_usage_below_threshold(log, counter, make_model, replies):
    """Applied compaction leaves the effective context under the threshold."""
    for i in range(6):
        await add_turn(log, i)
    engine = make_engine(counter, model=make_model(replies.text(LLM_SUMMARY)))
    used = engine.used_tokens(log)
    assert engine.should_compact(used)

    outcome = await engine.compact(log)

    assert outcome.states == [
        CompactionState.IDLE,
        CompactionState.TRIGGERED,
        CompactionState.SUMMARIZING,
        CompactionState.APPLIED,
    ]
    assert outcome.strategy == CompactionStrategy.LLM
    assert outcome.tokens_before == used
    assert outcome.tokens_after < CONFIG.threshold
    assert engine.used_tokens(log) == outcome.tokens_after
    assert log.get_tip() == outcome.entry_id
    assert isinstance(effective_entries(log.get_branch())[0], CompactionEntry)


@pytest.mark.asyncio
async def test_cut_never_splits_tool_round_trip(log, counter, make_model, replies):
    """The kept suffix starts at a valid cut point and every kept result has its call."""
    for i in range(6):
        await add_turn(log, i)
    engine = make_engine(counter, model=make_model(replies.text(LLM_SUMMARY)))

    preparation = engine.prepare(log)

    assert preparation is not None
    assert is_valid_cut_point(preparation.kept_entries[0])
    kept_call_ids = {
        call.id
        for entry in preparation.kept_entries
        if isinstance(entry, MessageEntry)
        for call in entry.tool_calls
    }
    for entry in preparation.kept_entries:
        if isinstance(entry, MessageEntry) and entry.is_tool_result():
            assert entry.tool_call_id in kept_call_ids
    kept_tokens = sum(engine.entry_tokens(e) for e in preparation.kept_entries)
    assert kept_tokens >= engine.keep_budget


@pytest.mark.asyncio
async def test_llm_summary_details_and_file_blocks(log, counter, make_model, replies):
    """Markers become details; tracked files are appended as tagged blocks."""
    for i in range(3):
        await add_turn(log, i, tool="write_file")
    for i in range(3, 6):
        await add_turn(log, i)
    engine = make_engine(counter, model=make_model(replies.text(LLM_SUMMARY)))

    outcome = await engine.compact(log)

    details = outcome.entry.details
    assert [d.description for d in details.decisions] == ["keep the cache in memory"]
    assert details.decisions[0].rationale == "restarts are rare"
    assert details.errors[0].resolution == "moved the import inside the function"
    assert details.pending_tasks == ("Update the docs",)
    assert details.modified_files == {"src/m0.py", "src/m1.py", "src/m2.py"}
    assert "<modified-files>\nsrc/m0.py\nsrc/m1.py\nsrc/m2.py\n</modified-files>" in outcome.entry.summary


@pytest.mark.asyncio
async def test_model_connectivity_error_uses_fallback(log, counter, make_model):
    """A failing summary call falls back; modified files match the covered writes exactly."""
    for i in range(3):
        await add_turn(log, i, tool="write_file")
    for i in range(3, 6):
        await add_turn(log, i)
    model = make_model(ConnectionError("connection refused"))
    engine = make_engine(counter, model=model)

    outcome = await engine.compact(log)

    assert outcome.states == [
        CompactionState.IDLE,
        CompactionState.TRIGGERED,
        CompactionState.SUMMARIZING,
        CompactionState.FALLBACK_SUMMARIZING,
        CompactionState.APPLIED,
    ]
    assert outcome.strategy == CompactionStrategy.FALLBACK
    assert "connection refused" in outcome.primary_error
    # Exactly one (failed) model call: the fallback never calls out
    assert len(model.requests) == 1

    entry = outcome.entry
    covered = entry.covered_entry_ids
    assert entry.details.modified_files == tracked_paths(log, covered, "write_file")
    assert "src/m0.py" in entry.details.modified_files
    assert entry.summary.startswith("## Summary (generated without the model)")
    assert "## User Requests" in entry.summary
    assert "- write_file (3)" in entry.summary


@pytest.mark.asyncio
async def test_no_model_goes_straight_to_fallback(log, counter):
    for i in range(6):
        await add_turn(log, i)
    engine = make_engine(counter)

    outcome = await engine.compact(log)

    assert outcome.applied
    assert outcome.strategy == CompactionStrategy.FALLBACK
    assert outcome.entry.details.read_files == tracked_paths(log, outcome.entry.covered_entry_ids, "read_file")


@pytest.mark.asyncio
async def test_iterative_compaction_carries_previous_state(log, counter, make_model, replies):
    """The second compaction updates the first summary and its files only grow."""
    for i in range(6):
        await add_turn(log, i)
    model = make_model(replies.text(LLM_SUMMARY), replies.text("## Goal\nSecond pass"))
    engine = make_engine(counter, model=model)
    first = await engine.compact(log)

    for i in range(6, 12):
        await add_turn(log, i, tool="write_file")
    second = await engine.compact(log)

    assert second.applied
    request = model.requests[1]["messages"][-1]["content"]
    assert "<previous-summary>" in request
    assert "Refactor the module loader" in request

    assert first.entry.details.touched_files <= second.entry.details.touched_files
    assert second.entry.details.decisions == first.entry.details.decisions
    # Only the newest compaction reaches the model context
    effective = effective_entries(log.get_branch())
    assert [e.id for e in effective if isinstance(e, CompactionEntry)] == [second.entry_id]
    assert engine.used_tokens(log) < CONFIG.threshold


@pytest.mark.asyncio
async def test_fallback_carries_forward_pending_tasks(log, counter, make_model, replies):
    for i in range(6):
        await add_turn(log, i)
    model = make_model(replies.text(LLM_SUMMARY), RuntimeError("provider down"))
    engine = make_engine(counter, model=model)
    await engine.compact(log)
    for i in range(6, 12):
        await add_turn(log, i)

    second = await engine.compact(log)

    assert second.strategy == CompactionStrategy.FALLBACK
    assert "Update the docs" in second.entry.details.pending_tasks
    assert "## Earlier Summary" in second.entry.summary
    assert "## Pending\n- Update the docs" in second.entry.summary


@pytest.mark.asyncio
async def test_nothing_to_compact_fails_without_appending(log, counter):
    """A branch that fits in the kept suffix cannot be compacted."""
    await log.append(MessageEntry.user("short"))
    engine = make_engine(counter)
    before = len(log)

    outcome = await engine.compact(log)

    assert outcome.failed
    assert outcome.states == [CompactionState.IDLE, CompactionState.TRIGGERED, CompactionState.FAILED]
    assert "Nothing to compact" in outcome.error
    assert len(log) == before


@pytest.mark.asyncio
async def test_failing_hook_fails_the_cycle(log, counter):
    """A cycle that cannot build its details ends in FAILED with the log unchanged."""
    for i in range(6):
        await add_turn(log, i)
    hooks = HookRegistry()

    def broken(preparation, details):
        raise RuntimeError("hook exploded")

    hooks.add_post_compaction(broken)
    engine = make_engine(counter, hooks=hooks)
    tip = log.get_tip()

    outcome = await engine.compact(log)

    assert outcome.failed
    assert "hook exploded" in outcome.error
    assert log.get_tip() == tip
    assert log.latest_compaction() is None


@pytest.mark.asyncio
async def test_hooks_enrich_details(log, counter, make_model, replies):
    for i in range(6):
        await add_turn(log, i)
    hooks = HookRegistry()
    seen = []

    def before(preparation, details):
        seen.append(len(preparation.entries_to_summarize))
        details.add_decision("pin dependency versions", "reproducible builds")

    async def after(preparation, details):
        details.add_modified("notes.md")

    hooks.add_pre_compaction(before)
    hooks.add_post_compaction(after)
    engine = make_engine(counter, model=make_model(replies.text("## Goal\nshort")), hooks=hooks)

    outcome = await engine.compact(log)

    assert seen and seen[0] > 0
    assert "notes.md" in outcome.entry.details.modified_files
    assert outcome.entry.details.decisions[0].description == "pin dependency versions"


@pytest.mark.asyncio
async def test_abort_during_summary_propagates(log, counter, make_model, replies):
    for i in range(6):
        await add_turn(log, i)
    engine = make_engine(counter, model=make_model(replies.text(LLM_SUMMARY)))
    signal = AbortSignal()
    signal.abort("user pressed escape")

    with pytest.raises(CancellationError):
        await engine.compact(log, abort_signal=signal)
    assert log.latest_compaction() is None


@pytest.mark.asyncio
async def test_manual_instructions_reach_the_model(log, counter, make_model, replies):
    for i in range(6):
        await add_turn(log, i)
    model = make_model(replies.text("## Goal\nfocused"))
    engine = make_engine(counter, model=model)

    await engine.compact(log, instructions="focus on the loader")

    assert "Additional focus: focus on the loader" in model.requests[0]["messages"][-1]["content"]


@pytest.mark.asyncio
async def test_summarize_branch_tracks_abandoned_files(log, counter, make_model, replies):
    root = await log.append(MessageEntry.user("start"))
    await add_turn(log, 0, tool="write_file")
    engine = make_engine(counter, model=make_model(replies.text("## Goal\nTried m0")))

    result = await engine.summarize_branch(log, root)

    assert result.strategy == CompactionStrategy.LLM
    assert root not in result.abandoned_entry_ids
    assert len(result.abandoned_entry_ids) == 4
    assert result.details.modified_files == {"src/m0.py"}
    assert "<modified-files>" in result.summary


@pytest.mark.asyncio
async def test_summarize_branch_falls_back_and_handles_no_abandoned(log, counter, make_model):
    root = await log.append(MessageEntry.user("start"))
    await add_turn(log, 0)
    engine = make_engine(counter, model=make_model(ConnectionError("offline")))

    assert await engine.summarize_branch(log, log.get_tip()) is None

    result = await engine.summarize_branch(log, root)
    assert result.strategy == CompactionStrategy.FALLBACK
    assert result.details.read_files == {"src/m0.py"}


async def run_session(log, engine, turns: int) -> list:
    """Add turns, compacting whenever usage crosses the threshold."""
    outcomes = []
    for i in range(turns):
        await add_turn(log, i, tool="write_file" if i % 3 == 0 else "read_file")
        if engine.should_compact(engine.used_tokens(log)):
            outcomes.append(await engine.compact(log))
    return outcomes


@pytest.mark.asyncio
async def test_repeated_fallback_compactions_stay_below_threshold(log, counter):
    """Without a model every cycle falls back, and none ends above the threshold."""
    engine = make_engine(counter)

    outcomes = await run_session(log, engine, turns=60)

    assert len(outcomes) >= 10
    for outcome in outcomes:
        assert outcome.applied
        assert outcome.strategy == CompactionStrategy.FALLBACK
        assert outcome.tokens_after <= CONFIG.threshold
    assert not engine.should_compact(engine.used_tokens(log))
    latest = log.latest_compaction()
    assert latest.summary.count("<earlier-summary>") == 1
    assert {"src/m0.py", "src/m30.py"} <= latest.details.modified_files


@pytest.mark.asyncio
async def test_repeated_model_compactions_stay_below_threshold(log, counter, make_model, replies):
    model = make_model(*[replies.text(LLM_SUMMARY) for _ in range(60)])
    engine = make_engine(counter, model=model)

    outcomes = await run_session(log, engine, turns=60)

    assert len(outcomes) >= 10
    assert all(o.applied and o.strategy == CompactionStrategy.LLM for o in outcomes)
    assert max(o.tokens_after for o in outcomes) <= CONFIG.threshold


@pytest.mark.asyncio
async def test_oversized_summary_is_trimmed_to_fit(log, counter, make_model, replies):
    for i in range(6):
        await add_turn(log, i)
    engine = make_engine(counter, model=make_model(replies.text("## Goal\n" + "w" * 8000)))

    outcome = await engine.compact(log)

    assert outcome.applied
    assert outcome.entry.summary.endswith("[summary truncated to fit the context window]")
    assert outcome.tokens_after <= CONFIG.threshold


@pytest.mark.asyncio
async def test_kept_suffix_over_threshold_fails(log, counter):
    """When the verbatim suffix alone exceeds the threshold no summary can help."""
    for i in range(3):
        await add_turn(log, i)
    await log.append(MessageEntry.user("q" * 6400))
    engine = make_engine(counter)

    outcome = await engine.compact(log)

    assert outcome.failed
    assert outcome.states[-2:] == [CompactionState.FALLBACK_SUMMARIZING, CompactionState.FAILED]
    assert "leaves no room" in outcome.error
    assert log.latest_compaction() is None
