"""Abstract base for attempt recorders and the records they keep."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class AttemptRecord:
    """Latest failure state of one job run.

    One record exists per (job_id, run_id); every failure of that run
    overwrites it. Records are never deleted by Rebound.
    """

    job_id: str
    category: str
    attempts_made: int
    last_error_summary: str
    run_id: str = ""
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "run_id": self.run_id,
            "category": self.category,
            "attempts_made": self.attempts_made,
            "last_error_summary": self.last_error_summary,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class CategoryStats:
    """Aggregate over records of one category."""

    category: str
    count: int
    average_attempts: float


@dataclass(frozen=True)
class RetryStats:
    """Retry statistics over a recent time window."""

    window_hours: float
    total_records: int
    categories: list[CategoryStats]

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_hours": self.window_hours,
            "total_records": self.total_records,
            "categories": [
                {
                    "category": c.category,
                    "count": c.count,
                    "average_attempts": round(c.average_attempts, 2),
                }
                for c in self.categories
            ],
        }


class AttemptRecorder(ABC):
    """Persistence boundary for attempt records.

    The engine treats writes as best-effort: it bounds each call with a
    timeout and logs failures without changing the decision.
    """

    @abstractmethod
    async def record_attempt(
        self,
        job_id: str,
        category: str,
        attempts_made: int,
        error_summary: str,
        run_id: str | None = None,
    ) -> None:
        """Upsert the attempt record for a job run.

        Args:
            job_id: Queue job identifier.
            category: Category the failure was classified into.
            attempts_made: Attempts made before this failure.
            error_summary: Truncated error text.
            run_id: Job run identity; the job itself if omitted.
        """
        ...

    @abstractmethod
    async def get_record(self, job_id: str, run_id: str | None = None) -> AttemptRecord | None:
        """Load the current record for a job run, if any."""
        ...

    @abstractmethod
    async def get_retry_stats(self, hours: float = 24) -> RetryStats:
        """Per-category counts and average attempts over the last ``hours``."""
        ...

    async def open(self) -> None:
        """Acquire resources. Default: nothing to acquire."""
        return None

    async def health_check(self) -> bool:
        """Whether the store is reachable. Never raises."""
        return True

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""
        return None


def summarize_categories(records: list[AttemptRecord]) -> list[CategoryStats]:
    """Group records by category, most frequent first."""
    grouped: dict[str, list[int]] = {}
    for record in records:
        grouped.setdefault(record.category, []).append(record.attempts_made)
    stats = [
        CategoryStats(
            category=name,
            count=len(attempts),
            average_attempts=sum(attempts) / len(attempts),
        )
        for name, attempts in grouped.items()
    ]
    stats.sort(key=lambda s: (-s.count, s.category))
    return stats


__all__ = [
    "AttemptRecord",
    "AttemptRecorder",
    "CategoryStats",
    "RetryStats",
    "summarize_categories",
]
