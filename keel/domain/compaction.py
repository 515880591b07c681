"""
Structured metadata recorded with every compaction.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class CompactionStrategy(str, Enum):
    """How the summary of a compaction was produced."""

    LLM = "llm"
    FALLBACK = "fallback"


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    rationale: str = ""


class ErrorRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    resolution: str = ""


class CompactionDetails(BaseModel):
    """
    Auditable trail of a compacted window: files touched, decisions taken,
    errors met and work still pending.

    File sets serialize as sorted lists so the persisted form is stable.
    """

    model_config = ConfigDict(frozen=True)

    read_files: frozenset[str] = Field(default_factory=frozenset)
    modified_files: frozenset[str] = Field(default_factory=frozenset)
    decisions: tuple[Decision, ...] = ()
    errors: tuple[ErrorRecord, ...] = ()
    pending_tasks: tuple[str, ...] = ()

    @field_serializer("read_files", "modified_files")
    def _serialize_paths(self, paths: frozenset[str]) -> list[str]:
        return sorted(paths)

    @property
    def touched_files(self) -> frozenset[str]:
        return self.read_files | self.modified_files

    def is_empty(self) -> bool:
        return not (
            self.read_files or self.modified_files or self.decisions or self.errors or self.pending_tasks
        )


class DetailsAccumulator:
    """
    Add-only builder for CompactionDetails.

    Within one compaction event the collected details only ever grow:
    there is no way to remove a file, decision, error or task once added.
    Files both read and modified are reported as modified only.
    """

    def __init__(self, seed: CompactionDetails | None = None):
        self._read: set[str] = set()
        self._modified: set[str] = set()
        self._decisions: list[Decision] = []
        self._errors: list[ErrorRecord] = []
        self._pending: list[str] = []
        if seed is not None:
            self.merge(seed)

    def add_read(self, path: str) -> None:
        if path:
            self._read.add(path)

    def add_modified(self, path: str) -> None:
        if path:
            self._modified.add(path)

    def add_decision(self, description: str, rationale: str = "") -> None:
        decision = Decision(description=description.strip(), rationale=rationale.strip())
        if decision.description and decision not in self._decisions:
            self._decisions.append(decision)

    def add_error(self, description: str, resolution: str = "") -> None:
        record = ErrorRecord(description=description.strip(), resolution=resolution.strip())
        if record.description and record not in self._errors:
            self._errors.append(record)

    def add_pending(self, task: str) -> None:
        task = task.strip()
        if task and task not in self._pending:
            self._pending.append(task)

    def merge(self, details: CompactionDetails) -> None:
        for path in details.read_files:
            self.add_read(path)
        for path in details.modified_files:
            self.add_modified(path)
        for decision in details.decisions:
            self.add_decision(decision.description, decision.rationale)
        for error in details.errors:
            self.add_error(error.description, error.resolution)
        for task in details.pending_tasks:
            self.add_pending(task)

    @property
    def read_files(self) -> frozenset[str]:
        return frozenset(self._read - self._modified)

    @property
    def modified_files(self) -> frozenset[str]:
        return frozenset(self._modified)

    def build(self) -> CompactionDetails:
        return CompactionDetails(
            read_files=self.read_files,
            modified_files=self.modified_files,
            decisions=tuple(self._decisions),
            errors=tuple(self._errors),
            pending_tasks=tuple(self._pending),
        )


__all__ = [
    "CompactionStrategy",
    "Decision",
    "ErrorRecord",
    "CompactionDetails",
    "DetailsAccumulator",
]
