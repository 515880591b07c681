"""
Session log storage module.

Contains LogStore implementations backing a SessionLog.
"""

from .base import InMemoryLogStore, LogStore, dump_record
from .jsonl import JsonlLogStore

__all__ = [
    "LogStore",
    "InMemoryLogStore",
    "JsonlLogStore",
    "dump_record",
]
