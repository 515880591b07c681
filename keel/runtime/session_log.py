"""
SessionLog - append-only, branchable entry tree.

Entries live in an arena keyed by id. A children table is maintained on
every append and a single tip pointer selects the active branch. Nothing
is ever mutated or deleted: navigating to an earlier entry only moves the
tip.

Persisted layout (one JSON object per line):

    {"type": "session", "id": ..., "version": 1, "timestamp": ..., "cwd": ...}
    {"id": "00000001", "parentId": null, "type": "message", "timestamp": ..., "payload": {...}}
    {"id": null, "parentId": null, "type": "leaf", "timestamp": ..., "payload": {"targetId": ...}}

``leaf`` records persist tip moves so a restart restores a navigated branch.
"""

import asyncio
import json
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import ValidationError

from keel.domain.compaction import CompactionDetails
from keel.domain.entries import (
    BaseEntry,
    BranchSummaryEntry,
    CompactionEntry,
    LabelEntry,
    MessageEntry,
    entry_from_record,
    entry_to_record,
    utc_now,
)
from keel.errors import PersistenceError
from keel.providers.storage import InMemoryLogStore, JsonlLogStore, LogStore, dump_record
from keel.utils.logging import get_logger

logger = get_logger(__name__)

SESSION_FORMAT_VERSION = 1
HEADER_TYPE = "session"
LEAF_TYPE = "leaf"

_TIP = object()


@dataclass
class SessionTreeNode:
    """Node of a tree snapshot returned by ``SessionLog.get_tree``."""

    entry: BaseEntry
    children: list["SessionTreeNode"] = field(default_factory=list)
    label: str | None = None


class SessionLog:
    """
    Append-only log of session entries.

    Single writer: appends are serialized by an asyncio.Lock so entries get
    one total order. Readers may call any getter at any time; returned
    entries are frozen models and never change.
    """

    def __init__(self, store: LogStore, read_only: bool = False):
        self.store = store
        self.read_only = read_only
        self.header: dict | None = None

        self._entries: dict[str, BaseEntry] = {}
        self._lines: dict[str, str] = {}
        self._children: dict[str | None, list[str]] = {None: []}
        self._labels: dict[str, str] = {}
        self._tip: str | None = None
        self._next_seq = 1
        self._lock = asyncio.Lock()

    @property
    def session_id(self) -> str | None:
        return self.header.get("id") if self.header else None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Replay committed records from the store, rebuilding indices."""
        lines = await self.store.read_lines()
        for index, line in enumerate(lines):
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                if index == len(lines) - 1:
                    logger.warning(
                        "session_log_torn_line_ignored",
                        location=self.store.location,
                        line_number=index + 1,
                    )
                    # The next append must not land on the fragment.
                    if not self.read_only:
                        await self.store.discard_torn_tail()
                    break
                raise PersistenceError(
                    f"Corrupt session record at line {index + 1}: {e}"
                ) from e
            self._replay(record, line, index + 1)

        logger.debug(
            "session_log_loaded",
            location=self.store.location,
            entries=len(self._entries),
            tip=self._tip,
        )

    def _replay(self, record: dict, line: str, line_number: int) -> None:
        record_type = record.get("type")
        if record_type == HEADER_TYPE:
            self.header = record
            return
        if record_type == LEAF_TYPE:
            target_id = (record.get("payload") or {}).get("targetId")
            if target_id is not None and target_id not in self._entries:
                raise PersistenceError(
                    f"Leaf record at line {line_number} points to unknown entry {target_id}"
                )
            self._tip = target_id
            return

        try:
            entry = entry_from_record(record)
        except (ValidationError, KeyError) as e:
            raise PersistenceError(
                f"Invalid session record at line {line_number} (type={record_type!r}): {e}"
            ) from e
        self._index(entry, line)
        try:
            self._next_seq = max(self._next_seq, int(entry.id) + 1)
        except ValueError:
            pass

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    async def write_header(self, cwd: str | None = None, session_id: str | None = None) -> None:
        """Write the session header line. Only valid on an empty log."""
        if self.header is not None:
            return
        header = {
            "type": HEADER_TYPE,
            "id": session_id or uuid.uuid4().hex,
            "version": SESSION_FORMAT_VERSION,
            "timestamp": utc_now().isoformat(),
            "cwd": cwd if cwd is not None else os.getcwd(),
        }
        await self.store.append(dump_record(header), durable=True)
        self.header = header

    async def append(
        self,
        entry: BaseEntry,
        parent_id: "str | None | object" = _TIP,
        durable: bool | None = None,
    ) -> str:
        """
        Append an entry and move the tip to it.

        Args:
            entry: Entry to append. ``id``, ``parent_id`` and ``timestamp``
                are assigned here.
            parent_id: Parent entry; defaults to the current tip.
            durable: Commit to storage before returning. Defaults to True
                for user messages and False otherwise.

        Returns:
            The new entry id.
        """
        self._check_writable()
        async with self._lock:
            parent = self._tip if parent_id is _TIP else parent_id
            if parent is not None and parent not in self._entries:
                raise KeyError(f"Unknown parent entry: {parent}")

            update = {
                "id": f"{self._next_seq:08d}",
                "parent_id": parent,
                "timestamp": utc_now(),
            }
            if isinstance(entry, LabelEntry) and entry.target_id is None:
                update["target_id"] = parent

            record = entry_to_record(entry.model_copy(update=update))
            line = dump_record(record)
            # Rebuilt from the record so the stored entry shares no state
            # with the caller's object.
            stored = entry_from_record(record)

            if durable is None:
                durable = isinstance(stored, MessageEntry) and stored.is_user()

            await self.store.append(line, durable=durable)

            self._index(stored, line)
            self._next_seq += 1

        logger.debug(
            "session_entry_appended",
            entry_id=stored.id,
            entry_type=stored.type,
            parent_id=parent,
            durable=durable,
        )
        return stored.id

    def _index(self, entry: BaseEntry, line: str) -> None:
        self._entries[entry.id] = entry
        self._lines[entry.id] = line
        self._children.setdefault(entry.parent_id, []).append(entry.id)
        self._children.setdefault(entry.id, [])
        if isinstance(entry, LabelEntry) and entry.target_id is not None:
            if entry.label:
                self._labels[entry.target_id] = entry.label
            else:
                self._labels.pop(entry.target_id, None)
        self._tip = entry.id

    async def flush(self) -> None:
        """Commit every buffered record."""
        await self.store.flush()

    def _check_writable(self) -> None:
        if self.read_only:
            raise PersistenceError("Session log was opened read-only")

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def get_entry(self, entry_id: str) -> BaseEntry | None:
        return self._entries.get(entry_id)

    def get_record_line(self, entry_id: str) -> str | None:
        """Persisted JSON line of an entry."""
        return self._lines.get(entry_id)

    def get_children(self, entry_id: str | None) -> list[str]:
        """Ids of the direct children of an entry (``None`` for roots)."""
        return list(self._children.get(entry_id, ()))

    def get_tip(self) -> str | None:
        return self._tip

    def get_branch(self, leaf_id: str | None = None) -> list[BaseEntry]:
        """Entries from the root to ``leaf_id`` (default: the tip)."""
        current = self._tip if leaf_id is None else leaf_id
        if current is not None and current not in self._entries:
            raise KeyError(f"Unknown entry: {current}")

        path: list[BaseEntry] = []
        while current is not None:
            entry = self._entries[current]
            path.append(entry)
            current = entry.parent_id
        path.reverse()
        return path

    def entries(self) -> list[BaseEntry]:
        """All entries in append order."""
        return list(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, entry_id: str) -> bool:
        return entry_id in self._entries

    def get_label(self, entry_id: str) -> str | None:
        return self._labels.get(entry_id)

    def latest_compaction(self, leaf_id: str | None = None) -> CompactionEntry | None:
        """Most recent compaction on the branch ending at ``leaf_id``."""
        for entry in reversed(self.get_branch(leaf_id)):
            if isinstance(entry, CompactionEntry):
                return entry
        return None

    def get_tree(self) -> list[SessionTreeNode]:
        """Snapshot of the whole tree; callers may modify the nodes freely."""

        def build(entry_id: str) -> SessionTreeNode:
            return SessionTreeNode(
                entry=self._entries[entry_id],
                children=[build(child) for child in self._children.get(entry_id, ())],
                label=self._labels.get(entry_id),
            )

        return [build(root) for root in self._children.get(None, ())]

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    async def branch(self, entry_id: str) -> None:
        """Make ``entry_id`` the tip. Descendants are kept."""
        self._check_writable()
        if entry_id not in self._entries:
            raise KeyError(f"Unknown entry: {entry_id}")
        async with self._lock:
            await self._write_leaf(entry_id)
            self._tip = entry_id
        logger.info("session_branch_moved", tip=entry_id)

    async def branch_with_summary(
        self,
        entry_id: str,
        summary: str,
        details: CompactionDetails | None = None,
    ) -> str:
        """
        Move to ``entry_id`` and record a summary of the abandoned branch as
        its child. Returns the id of the BranchSummaryEntry (the new tip).
        """
        self._check_writable()
        if entry_id not in self._entries:
            raise KeyError(f"Unknown entry: {entry_id}")

        abandoned_root = self.abandoned_branch_root(entry_id)
        summary_entry = BranchSummaryEntry(
            summary=summary,
            abandoned_branch_root_id=abandoned_root or entry_id,
            details=details or CompactionDetails(),
        )
        new_id = await self.append(summary_entry, parent_id=entry_id, durable=True)
        logger.info(
            "session_branch_summarized",
            target_id=entry_id,
            abandoned_root_id=abandoned_root,
            summary_id=new_id,
        )
        return new_id

    def abandoned_branch_root(self, target_id: str) -> str | None:
        """
        First entry of the current branch that is not on the path to
        ``target_id``; None when the tip already lies on that path.
        """
        target_path = {entry.id for entry in self.get_branch(target_id)}
        for entry in self.get_branch():
            if entry.id not in target_path:
                return entry.id
        return None

    async def label(self, label: str, target_id: str | None = None) -> str:
        """
        Bookmark ``target_id`` (default: the tip). An empty label clears it.

        The LabelEntry is appended as a child of the tip without moving the
        active branch away from the labelled entry.
        """
        target = target_id if target_id is not None else self._tip
        if target is None or target not in self._entries:
            raise KeyError(f"Unknown entry: {target}")
        tip = self._tip
        label_id = await self.append(
            LabelEntry(label=label, target_id=target), parent_id=tip, durable=True
        )
        return label_id

    async def _write_leaf(self, target_id: str | None) -> None:
        record = {
            "id": None,
            "parentId": None,
            "type": LEAF_TYPE,
            "timestamp": utc_now().isoformat(),
            "payload": {"targetId": target_id},
        }
        await self.store.append(dump_record(record), durable=True)


class Session:
    """
    Scope of one session log: open (replay + writer lock) and close
    (flush + unlock).

    Examples:
        >>> async with await Session.open("~/.keel/sessions/abc.jsonl") as session:
        ...     await session.log.append(MessageEntry.user("hello"))
    """

    def __init__(self, log: SessionLog, path: Path | None = None):
        self.log = log
        self.path = path
        self._closed = False

    @property
    def id(self) -> str | None:
        return self.log.session_id

    @property
    def closed(self) -> bool:
        return self._closed

    @classmethod
    async def from_store(
        cls,
        store: LogStore,
        read_only: bool = False,
        cwd: str | None = None,
        session_id: str | None = None,
        path: Path | None = None,
    ) -> "Session":
        if not read_only:
            await store.acquire()
        try:
            log = SessionLog(store, read_only=read_only)
            await log.load()
            if log.header is None and not read_only:
                await log.write_header(cwd=cwd, session_id=session_id)
        except BaseException:
            if not read_only:
                await store.release()
            raise

        logger.info(
            "session_opened",
            session_id=log.session_id,
            location=store.location,
            entries=len(log),
            read_only=read_only,
        )
        return cls(log, path=path)

    @classmethod
    async def open(
        cls, path: str | Path, read_only: bool = False, cwd: str | None = None
    ) -> "Session":
        """Open (or create) a JSONL session file."""
        store = JsonlLogStore(path)
        return await cls.from_store(store, read_only=read_only, cwd=cwd, path=store.path)

    @classmethod
    async def create(
        cls,
        sessions_dir: str | Path | None = None,
        cwd: str | None = None,
    ) -> "Session":
        """Create a new session file named after a fresh session id."""
        from keel.config.settings import settings

        directory = Path(sessions_dir or settings.sessions_dir).expanduser()
        session_id = uuid.uuid4().hex
        store = JsonlLogStore(directory / f"{session_id}.jsonl")
        return await cls.from_store(store, cwd=cwd, session_id=session_id, path=store.path)

    @classmethod
    async def in_memory(cls, store: InMemoryLogStore | None = None) -> "Session":
        return await cls.from_store(store or InMemoryLogStore(), cwd="")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            if not self.log.read_only:
                await self.log.flush()
        finally:
            if not self.log.read_only:
                await self.log.store.release()
        logger.info("session_closed", session_id=self.id)

    async def __aenter__(self) -> "Session":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


__all__ = ["SessionLog", "Session", "SessionTreeNode", "SESSION_FORMAT_VERSION"]
