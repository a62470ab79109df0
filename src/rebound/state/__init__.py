"""Attempt record persistence."""

from rebound.state.base import AttemptRecord, AttemptRecorder, CategoryStats, RetryStats
from rebound.state.memory import InMemoryAttemptRecorder
from rebound.state.sqlite_backend import SQLiteAttemptRecorder

__all__ = [
    "AttemptRecord",
    "AttemptRecorder",
    "CategoryStats",
    "InMemoryAttemptRecorder",
    "RetryStats",
    "SQLiteAttemptRecorder",
]
