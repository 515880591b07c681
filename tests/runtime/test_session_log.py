"""
Tests for SessionLog and Session: tree structure, durability, replay,
navigation and the single-writer lock.
"""

import json

import pytest

from keel.domain import (
    BranchSummaryEntry,
    CompactionDetails,
    LabelEntry,
    MessageEntry,
)
from keel.domain.tools import ToolCall
from keel.errors import PersistenceError, SessionLockedError
from keel.providers.storage import InMemoryLogStore
from keel.runtime.session_log import SESSION_FORMAT_VERSION, Session, SessionLog


@pytest.mark.asyncio
async def test_append_builds_tree_and_moves_tip():
    """Appends chain to the tip; children and branch follow the parent links."""
    session = await Session.in_memory()
    log = session.log

    root = await log.append(MessageEntry.user("hello"))
    reply = await log.append(MessageEntry.assistant("hi"))

    assert root == "00000001"
    assert reply == "00000002"
    assert log.get_tip() == reply
    assert log.get_children(root) == [reply]
    assert log.get_children(None) == [root]
    assert [e.id for e in log.get_branch()] == [root, reply]
    assert log.get_entry(reply).parent_id == root


@pytest.mark.asyncio
async def test_append_to_explicit_parent_creates_sibling():
    """Appending under an earlier entry forks the tree."""
    session = await Session.in_memory()
    log = session.log
    root = await log.append(MessageEntry.user("q"))
    first = await log.append(MessageEntry.assistant("a1"))

    second = await log.append(MessageEntry.assistant("a2"), parent_id=root)

    assert log.get_children(root) == [first, second]
    assert [e.id for e in log.get_branch()] == [root, second]
    assert [e.id for e in log.get_branch(first)] == [root, first]


@pytest.mark.asyncio
async def test_append_unknown_parent_raises():
    session = await Session.in_memory()
    with pytest.raises(KeyError):
        await session.log.append(MessageEntry.user("x"), parent_id="99999999")


@pytest.mark.asyncio
async def test_get_branch_unknown_leaf_raises():
    session = await Session.in_memory()
    with pytest.raises(KeyError):
        session.log.get_branch("nope")


@pytest.mark.asyncio
async def test_stored_entry_is_independent_of_caller_object():
    """The log stores its own copy with assigned id and parent."""
    session = await Session.in_memory()
    call = ToolCall(id="c1", name="read_file", arguments={"path": "a.py"})
    original = MessageEntry.assistant("", tool_calls=[call])

    entry_id = await session.log.append(original)

    stored = session.log.get_entry(entry_id)
    assert original.id == ""
    assert stored is not original
    assert stored.tool_calls[0].arguments == {"path": "a.py"}
    assert stored.tool_calls[0].arguments is not call.arguments


@pytest.mark.asyncio
async def test_user_message_is_committed_before_append_returns():
    """User messages are durable; assistant entries are buffered until flush."""
    store = InMemoryLogStore()
    session = await Session.in_memory(store)

    user_id = await session.log.append(MessageEntry.user("do the thing"))
    assert store.pending_count == 0
    assert any(json.loads(line).get("id") == user_id for line in store.committed)

    await session.log.append(MessageEntry.assistant("working"))
    assert store.pending_count == 1

    await session.log.flush()
    assert store.pending_count == 0


@pytest.mark.asyncio
async def test_restart_recovers_committed_user_message_as_tip():
    """After a crash before the assistant reply is flushed, the user message is the tip."""
    committed: list[str] = []
    store = InMemoryLogStore(committed)
    session = await Session.in_memory(store)
    await session.log.append(MessageEntry.user("first"))
    await session.log.append(MessageEntry.assistant("reply"))
    await session.log.flush()
    user_id = await session.log.append(MessageEntry.user("second"))
    await session.log.append(MessageEntry.assistant("never flushed"))
    # crash: the pending assistant entry is lost

    reopened = await Session.in_memory(InMemoryLogStore(committed))

    assert reopened.log.get_tip() == user_id
    assert reopened.log.get_entry(user_id).content == "second"
    assert len(reopened.log) == 3
    # Ids continue after the highest replayed id
    next_id = await reopened.log.append(MessageEntry.assistant("resumed"))
    assert next_id == "00000004"


@pytest.mark.asyncio
async def test_replay_preserves_record_bytes():
    """Records replay to exactly the same persisted lines."""
    committed: list[str] = []
    session = await Session.in_memory(InMemoryLogStore(committed))
    log = session.log
    user_id = await log.append(MessageEntry.user("héllo \"quoted\""))
    call = ToolCall(id="c1", name="bash", arguments={"command": "ls"})
    assistant_id = await log.append(MessageEntry.assistant("", tool_calls=[call]))
    await log.flush()

    reopened = await Session.in_memory(InMemoryLogStore(list(committed)))

    for entry_id in (user_id, assistant_id):
        assert reopened.log.get_record_line(entry_id) == log.get_record_line(entry_id)
        assert reopened.log.get_entry(entry_id) == log.get_entry(entry_id)


@pytest.mark.asyncio
async def test_header_written_once(tmp_path):
    """A new file starts with the session header; reopening does not add another."""
    path = tmp_path / "s.jsonl"
    session = await Session.open(path, cwd="/work")
    await session.log.append(MessageEntry.user("hi"))
    await session.close()

    session = await Session.open(path)
    await session.close()

    lines = path.read_text().splitlines()
    header = json.loads(lines[0])
    assert header["type"] == "session"
    assert header["version"] == SESSION_FORMAT_VERSION
    assert header["cwd"] == "/work"
    assert sum(1 for line in lines if json.loads(line)["type"] == "session") == 1


@pytest.mark.asyncio
async def test_jsonl_restart_after_durable_user_message(tmp_path):
    """A reader sees the durable user message even while the writer buffers."""
    path = tmp_path / "s.jsonl"
    writer = await Session.open(path)
    user_id = await writer.log.append(MessageEntry.user("persist me"))
    await writer.log.append(MessageEntry.assistant("buffered"))

    reader = await Session.open(path, read_only=True)

    assert reader.log.get_tip() == user_id
    assert len(reader.log) == 1
    await writer.close()


@pytest.mark.asyncio
async def test_torn_last_line_is_ignored(tmp_path):
    """A partially written final record is dropped on load."""
    path = tmp_path / "s.jsonl"
    session = await Session.open(path)
    user_id = await session.log.append(MessageEntry.user("ok"))
    await session.close()
    with open(path, "a", encoding="utf-8") as f:
        f.write('{"id":"00000002","parentId":"00000001","ty')

    reopened = await Session.open(path, read_only=True)

    assert reopened.log.get_tip() == user_id
    assert len(reopened.log) == 1
    assert path.read_text(encoding="utf-8").endswith('"ty')


@pytest.mark.asyncio
async def test_append_after_torn_last_line_survives_restart(tmp_path):
    """A writer discards the torn fragment so new records start on a fresh line."""
    path = tmp_path / "s.jsonl"
    session = await Session.open(path)
    await session.log.append(MessageEntry.user("first"))
    await session.close()
    with open(path, "a", encoding="utf-8") as f:
        f.write('{"id":"00000002","parentId":"000')

    session = await Session.open(path)
    second_id = await session.log.append(MessageEntry.user("second"))
    await session.log.append(MessageEntry.assistant("reply"))
    await session.close()

    reopened = await Session.open(path, read_only=True)

    assert second_id == "00000002"
    assert reopened.log.get_entry(second_id).content == "second"
    assert [e.content for e in reopened.log.get_branch()] == ["first", "second", "reply"]
    assert all(json.loads(line) for line in path.read_text(encoding="utf-8").splitlines())


@pytest.mark.asyncio
async def test_in_memory_torn_tail_is_discarded_by_writer():
    committed = [
        json.dumps({"type": "session", "id": "s", "version": 1, "timestamp": "t", "cwd": ""}),
        '{"id":"00000001","par',
    ]
    store = InMemoryLogStore(committed)
    session = await Session.in_memory(store)

    entry_id = await session.log.append(MessageEntry.user("hello"))

    assert entry_id == "00000001"
    assert len(store.committed) == 2
    assert json.loads(store.committed[-1])["id"] == entry_id


@pytest.mark.asyncio
async def test_corrupt_middle_line_raises():
    """Corruption anywhere but the last line is a persistence error."""
    committed = [
        json.dumps({"type": "session", "id": "s", "version": 1, "timestamp": "t", "cwd": ""}),
        "{not json",
        json.dumps({"type": "leaf", "id": None, "parentId": None, "timestamp": "t", "payload": {"targetId": None}}),
    ]
    with pytest.raises(PersistenceError):
        await Session.in_memory(InMemoryLogStore(committed))


@pytest.mark.asyncio
async def test_invalid_record_raises():
    committed = [json.dumps({"id": "00000001", "parentId": None, "type": "mystery", "timestamp": "t"})]
    with pytest.raises(PersistenceError):
        await Session.in_memory(InMemoryLogStore(committed))


@pytest.mark.asyncio
async def test_branch_moves_tip_and_survives_restart():
    """Navigation keeps descendants and is persisted as a leaf record."""
    committed: list[str] = []
    session = await Session.in_memory(InMemoryLogStore(committed))
    log = session.log
    root = await log.append(MessageEntry.user("q"))
    answer = await log.append(MessageEntry.assistant("a"))
    await log.flush()

    await log.branch(root)

    assert log.get_tip() == root
    assert answer in log
    assert log.get_children(root) == [answer]

    reopened = await Session.in_memory(InMemoryLogStore(list(committed)))
    assert reopened.log.get_tip() == root

    retry = await log.append(MessageEntry.user("again"))
    assert log.get_children(root) == [answer, retry]


@pytest.mark.asyncio
async def test_branch_unknown_entry_raises():
    session = await Session.in_memory()
    with pytest.raises(KeyError):
        await session.log.branch("00000042")


@pytest.mark.asyncio
async def test_branch_with_summary_records_abandoned_root():
    """The summary becomes a child of the target and names the abandoned subtree."""
    session = await Session.in_memory()
    log = session.log
    root = await log.append(MessageEntry.user("q"))
    abandoned = await log.append(MessageEntry.assistant("path A"))
    await log.append(MessageEntry.user("more on A"))

    summary_id = await log.branch_with_summary(
        root, "Tried path A", CompactionDetails(read_files=frozenset({"a.py"}))
    )

    summary = log.get_entry(summary_id)
    assert isinstance(summary, BranchSummaryEntry)
    assert summary.parent_id == root
    assert summary.abandoned_branch_root_id == abandoned
    assert summary.details.read_files == frozenset({"a.py"})
    assert log.get_tip() == summary_id
    assert log.get_children(root) == [abandoned, summary_id]


@pytest.mark.asyncio
async def test_abandoned_branch_root_none_when_target_on_branch():
    session = await Session.in_memory()
    log = session.log
    root = await log.append(MessageEntry.user("q"))
    assert log.abandoned_branch_root(root) is None


@pytest.mark.asyncio
async def test_label_and_clear():
    """Labels bookmark an entry; an empty label removes the bookmark."""
    session = await Session.in_memory()
    log = session.log
    root = await log.append(MessageEntry.user("q"))
    await log.append(MessageEntry.assistant("a"))

    label_id = await log.label("checkpoint", target_id=root)

    label = log.get_entry(label_id)
    assert isinstance(label, LabelEntry)
    assert label.target_id == root
    assert log.get_label(root) == "checkpoint"

    await log.label("", target_id=root)
    assert log.get_label(root) is None


@pytest.mark.asyncio
async def test_label_defaults_to_tip():
    session = await Session.in_memory()
    log = session.log
    tip = await log.append(MessageEntry.user("q"))
    await log.label("start")
    assert log.get_label(tip) == "start"


@pytest.mark.asyncio
async def test_get_tree_snapshot():
    """The tree snapshot mirrors the children index and carries labels."""
    session = await Session.in_memory()
    log = session.log
    root = await log.append(MessageEntry.user("q"))
    a = await log.append(MessageEntry.assistant("a"))
    b = await log.append(MessageEntry.assistant("b"), parent_id=root)
    await log.label("best", target_id=b)

    tree = log.get_tree()

    assert len(tree) == 1
    assert tree[0].entry.id == root
    assert [child.entry.id for child in tree[0].children] == [a, b]
    assert tree[0].children[1].label == "best"
    # Snapshot nodes are free to modify
    tree[0].children.clear()
    assert log.get_children(root) == [a, b]


@pytest.mark.asyncio
async def test_second_writer_is_rejected(tmp_path):
    """Only one writer may hold a session file."""
    path = tmp_path / "s.jsonl"
    first = await Session.open(path)

    with pytest.raises(SessionLockedError):
        await Session.open(path)

    await first.close()
    second = await Session.open(path)
    await second.close()


@pytest.mark.asyncio
async def test_in_memory_store_rejects_second_writer():
    store = InMemoryLogStore()
    await Session.in_memory(store)
    with pytest.raises(SessionLockedError):
        await Session.in_memory(store)


@pytest.mark.asyncio
async def test_read_only_log_rejects_writes(tmp_path):
    path = tmp_path / "s.jsonl"
    async with await Session.open(path) as writer:
        await writer.log.append(MessageEntry.user("hi"))

    reader = await Session.open(path, read_only=True)
    with pytest.raises(PersistenceError):
        await reader.log.append(MessageEntry.user("nope"))


@pytest.mark.asyncio
async def test_close_flushes_buffered_entries(tmp_path):
    path = tmp_path / "s.jsonl"
    session = await Session.open(path)
    await session.log.append(MessageEntry.user("q"))
    reply = await session.log.append(MessageEntry.assistant("buffered"))
    await session.close()

    reader = await Session.open(path, read_only=True)
    assert reader.log.get_tip() == reply
    assert session.closed


def test_session_log_is_empty_before_load():
    log = SessionLog(InMemoryLogStore())
    assert len(log) == 0
    assert log.get_tip() is None
    assert log.get_branch() == []
