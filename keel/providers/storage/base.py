"""
Log store interface and in-memory implementation.
"""

import json
from abc import ABC, abstractmethod
from typing import Any


def dump_record(record: dict[str, Any]) -> str:
    """Serialize one record to its persisted line (without newline)."""
    return json.dumps(record, ensure_ascii=False, separators=(",", ":"))


class LogStore(ABC):
    """
    Append-only record store behind a SessionLog.

    Append is the only mutation: a complete line, once written, is never
    rewritten. The one exception is ``discard_torn_tail``, which drops an
    incomplete last line left by a crash.
    Non-durable writes may be buffered until ``flush``; a durable write
    commits every buffered line and the new one before returning.
    """

    @abstractmethod
    async def read_lines(self) -> list[str]:
        """Return all committed lines in write order."""
        pass

    @abstractmethod
    async def append(self, line: str, durable: bool = False) -> None:
        """Append one serialized record."""
        pass

    @abstractmethod
    async def flush(self) -> None:
        """Commit all buffered lines."""
        pass

    async def acquire(self) -> None:
        """Take single-writer authority. Raises SessionLockedError."""
        pass

    async def release(self) -> None:
        """Give up single-writer authority."""
        pass

    async def discard_torn_tail(self) -> None:
        """Drop the last committed line, left incomplete by a crash."""
        pass

    @property
    @abstractmethod
    def pending_count(self) -> int:
        """Number of buffered, not yet committed lines."""
        pass

    @property
    def location(self) -> str | None:
        """Human-readable location of the store, if any."""
        return None


class InMemoryLogStore(LogStore):
    """
    In-memory implementation (for testing and development).

    ``committed`` holds what a file would contain; ``pending`` what is still
    buffered. Pass an existing ``committed`` list to simulate reopening a
    log after a crash.
    """

    def __init__(self, committed: list[str] | None = None):
        self.committed: list[str] = committed if committed is not None else []
        self.pending: list[str] = []
        self._locked = False

    async def read_lines(self) -> list[str]:
        return list(self.committed)

    async def append(self, line: str, durable: bool = False) -> None:
        self.pending.append(line)
        if durable:
            await self.flush()

    async def flush(self) -> None:
        self.committed.extend(self.pending)
        self.pending.clear()

    async def acquire(self) -> None:
        from keel.errors import SessionLockedError

        if self._locked:
            raise SessionLockedError("In-memory session already has a writer")
        self._locked = True

    async def release(self) -> None:
        self._locked = False

    async def discard_torn_tail(self) -> None:
        if self.committed:
            self.committed.pop()

    @property
    def pending_count(self) -> int:
        return len(self.pending)


__all__ = ["LogStore", "InMemoryLogStore", "dump_record"]
