"""In-memory attempt recorder.

Keeps records in a dict without filesystem I/O. Used by the CLI dry-run and
by tests that need a real AttemptRecorder.
"""

from __future__ import annotations

import time

from rebound.core.constants import SECONDS_PER_HOUR
from rebound.state.base import AttemptRecord, AttemptRecorder, RetryStats, summarize_categories


class InMemoryAttemptRecorder(AttemptRecorder):
    """Attempt recorder backed by a dict keyed by (job_id, run_id)."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str], AttemptRecord] = {}

    async def record_attempt(
        self,
        job_id: str,
        category: str,
        attempts_made: int,
        error_summary: str,
        run_id: str | None = None,
    ) -> None:
        key = (job_id, run_id or "")
        self.records[key] = AttemptRecord(
            job_id=job_id,
            run_id=run_id or "",
            category=category,
            attempts_made=attempts_made,
            last_error_summary=error_summary,
        )

    async def get_record(self, job_id: str, run_id: str | None = None) -> AttemptRecord | None:
        return self.records.get((job_id, run_id or ""))

    async def get_retry_stats(self, hours: float = 24) -> RetryStats:
        since = time.time() - hours * SECONDS_PER_HOUR
        recent = [r for r in self.records.values() if r.updated_at >= since]
        return RetryStats(
            window_hours=hours,
            total_records=len(recent),
            categories=summarize_categories(recent),
        )
