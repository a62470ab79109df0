"""SQLite attempt recorder.

Stores one row per job run in an ``attempt_records`` table and upserts it on
every failure. All database methods are async (via ``aiosqlite``) so they
never block the event loop that runs the decision engine.
"""

from __future__ import annotations

import sqlite3
import time
from pathlib import Path
from types import TracebackType

import aiosqlite

from rebound.core.constants import SECONDS_PER_HOUR
from rebound.core.logging import get_logger
from rebound.state.base import AttemptRecord, AttemptRecorder, CategoryStats, RetryStats

_logger = get_logger("state.sqlite")


class SQLiteAttemptRecorder(AttemptRecorder):
    """Async SQLite-backed attempt recorder.

    Usage::

        recorder = SQLiteAttemptRecorder(Path("state/attempts.db"))
        await recorder.open()   # creates tables, sets WAL mode
        ...
        await recorder.close()

    Or as an async context manager::

        async with SQLiteAttemptRecorder(db_path) as recorder:
            engine = RetryDecisionEngine(recorder=recorder)
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def db_path(self) -> Path:
        return self._db_path

    async def open(self) -> None:
        """Open the database connection and create tables."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self._db_path))
        try:
            conn.row_factory = aiosqlite.Row
            await conn.execute("PRAGMA journal_mode=WAL")
            await self._create_tables(conn)
        except Exception:
            await conn.close()
            raise
        self._conn = conn
        _logger.info("attempt_store.opened", path=str(self._db_path))

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> SQLiteAttemptRecorder:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("SQLiteAttemptRecorder not opened - call open() first")
        return self._conn

    @staticmethod
    async def _create_tables(conn: aiosqlite.Connection) -> None:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS attempt_records (
                job_id TEXT NOT NULL,
                run_id TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL,
                attempts_made INTEGER NOT NULL,
                last_error_summary TEXT NOT NULL DEFAULT '',
                updated_at REAL NOT NULL,
                PRIMARY KEY (job_id, run_id)
            )
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_attempt_records_updated
            ON attempt_records (updated_at DESC)
        """)
        await conn.commit()

    async def record_attempt(
        self,
        job_id: str,
        category: str,
        attempts_made: int,
        error_summary: str,
        run_id: str | None = None,
    ) -> None:
        await self._db.execute(
            """
            INSERT INTO attempt_records
                (job_id, run_id, category, attempts_made, last_error_summary, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_id, run_id) DO UPDATE SET
                category=excluded.category,
                attempts_made=excluded.attempts_made,
                last_error_summary=excluded.last_error_summary,
                updated_at=excluded.updated_at
            """,
            (job_id, run_id or "", category, attempts_made, error_summary, time.time()),
        )
        await self._db.commit()

    async def get_record(self, job_id: str, run_id: str | None = None) -> AttemptRecord | None:
        cursor = await self._db.execute(
            """
            SELECT job_id, run_id, category, attempts_made, last_error_summary, updated_at
            FROM attempt_records WHERE job_id = ? AND run_id = ?
            """,
            (job_id, run_id or ""),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return AttemptRecord(
            job_id=row["job_id"],
            run_id=row["run_id"],
            category=row["category"],
            attempts_made=row["attempts_made"],
            last_error_summary=row["last_error_summary"],
            updated_at=row["updated_at"],
        )

    async def get_retry_stats(self, hours: float = 24) -> RetryStats:
        since = time.time() - hours * SECONDS_PER_HOUR
        cursor = await self._db.execute(
            """
            SELECT category, COUNT(*) AS count, AVG(attempts_made) AS average_attempts
            FROM attempt_records
            WHERE updated_at >= ?
            GROUP BY category
            ORDER BY count DESC, category ASC
            """,
            (since,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        categories = [
            CategoryStats(
                category=row["category"],
                count=row["count"],
                average_attempts=float(row["average_attempts"] or 0.0),
            )
            for row in rows
        ]
        return RetryStats(
            window_hours=hours,
            total_records=sum(c.count for c in categories),
            categories=categories,
        )

    async def health_check(self) -> bool:
        try:
            cursor = await self._db.execute("SELECT 1")
            await cursor.fetchone()
            await cursor.close()
        except (RuntimeError, sqlite3.Error, ValueError):
            _logger.warning("attempt_store.health_check_failed", exc_info=True)
            return False
        return True


__all__ = ["SQLiteAttemptRecorder"]
