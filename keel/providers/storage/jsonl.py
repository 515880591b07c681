"""
JSONL file log store.

One record per line. Durable writes are flushed and fsync'ed before
returning; single-writer authority is an exclusive ``flock`` on a sibling
``.lock`` file, released automatically if the process dies.
"""

import asyncio
import fcntl
import os
from pathlib import Path

from keel.errors import PersistenceError, SessionLockedError
from keel.providers.storage.base import LogStore
from keel.utils.logging import get_logger

logger = get_logger(__name__)


class JsonlLogStore(LogStore):
    """Append-only JSONL file."""

    def __init__(self, path: str | Path, fsync: bool = True):
        self.path = Path(path).expanduser()
        self.fsync = fsync
        self._buffer: list[str] = []
        self._lock_fd: int | None = None

    @property
    def location(self) -> str:
        return str(self.path)

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @property
    def pending_count(self) -> int:
        return len(self._buffer)

    async def read_lines(self) -> list[str]:
        if not self.path.exists():
            return []
        try:
            text = await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Failed to read session log {self.path}: {e}") from e
        return [line for line in text.split("\n") if line.strip()]

    async def append(self, line: str, durable: bool = False) -> None:
        if "\n" in line:
            raise PersistenceError("Session records must be single-line")
        self._buffer.append(line)
        if durable:
            await self.flush()

    async def flush(self) -> None:
        if not self._buffer:
            return
        lines = self._buffer
        self._buffer = []
        try:
            await asyncio.to_thread(self._write_lines, lines)
        except OSError as e:
            logger.error("session_log_write_failed", path=str(self.path), error=str(e), exc_info=True)
            raise PersistenceError(f"Failed to write session log {self.path}: {e}") from e

    def _write_lines(self, lines: list[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write("".join(f"{line}\n" for line in lines))
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())

    async def discard_torn_tail(self) -> None:
        try:
            await asyncio.to_thread(self._truncate_last_line)
        except OSError as e:
            raise PersistenceError(f"Failed to repair session log {self.path}: {e}") from e

    def _truncate_last_line(self) -> None:
        with open(self.path, "rb+") as f:
            data = f.read()
            end = len(data.rstrip())
            cut = data.rfind(b"\n", 0, end) + 1
            f.truncate(cut)
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())
        logger.warning("session_log_torn_tail_discarded", path=str(self.path), bytes=len(data) - cut)

    async def acquire(self) -> None:
        if self._lock_fd is not None:
            return
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            raise SessionLockedError(f"Session {self.path} is open by another writer") from e
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._lock_fd = fd

    async def release(self) -> None:
        if self._lock_fd is None:
            return
        fd = self._lock_fd
        self._lock_fd = None
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


__all__ = ["JsonlLogStore"]
