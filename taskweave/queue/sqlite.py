"""SQLite implementation of the job store."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .models import JobRecord, JobState
from .store import JobStore


class SQLiteJobStore(JobStore):
    """Persist jobs in a SQLite database.

    The full record is kept as JSON next to the columns used for claiming.
    Claims run inside ``BEGIN IMMEDIATE`` so concurrent workers, including
    workers in other processes sharing the file, never claim the same job.
    """

    def __init__(self, db_path: str | Path = ":memory:"):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    queue_name TEXT NOT NULL,
                    state TEXT NOT NULL,
                    priority_rank INTEGER NOT NULL,
                    available_at REAL NOT NULL,
                    data TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS jobs_claim ON jobs "
                "(queue_name, state, priority_rank, sequence)"
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    def _insert(self, record: JobRecord) -> JobRecord:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                cur = self._conn.execute(
                    "INSERT INTO jobs (id, queue_name, state, priority_rank, available_at, data) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.queue_name,
                        record.state.value,
                        record.priority.rank,
                        record.available_at.timestamp(),
                        "{}",
                    ),
                )
                stored = record.model_copy(update={"sequence": cur.lastrowid})
                self._conn.execute(
                    "UPDATE jobs SET data = ? WHERE sequence = ?",
                    (stored.model_dump_json(), stored.sequence),
                )
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            return stored

    def _claim(self, queue_name: str, now: datetime) -> Optional[JobRecord]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                row = self._conn.execute(
                    "SELECT data FROM jobs WHERE queue_name = ? AND state = ? "
                    "AND available_at <= ? ORDER BY priority_rank, sequence LIMIT 1",
                    (queue_name, JobState.WAITING.value, now.timestamp()),
                ).fetchone()
                if row is None:
                    self._conn.execute("COMMIT")
                    return None
                record = JobRecord.model_validate_json(row["data"])
                record.state = JobState.ACTIVE
                record.attempts += 1
                record.processed_at = now
                self._conn.execute(
                    "UPDATE jobs SET state = ?, data = ? WHERE id = ?",
                    (record.state.value, record.model_dump_json(), record.id),
                )
                self._conn.execute("COMMIT")
            except Exception:
                self._conn.execute("ROLLBACK")
                raise
            return record

    # ------------------------------------------------------------------
    # Store API
    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._conn.close()

    async def ping(self) -> bool:
        try:
            await asyncio.to_thread(self._fetchone, "SELECT 1")
        except sqlite3.Error:
            return False
        return True

    async def insert(self, record: JobRecord) -> JobRecord:
        return await asyncio.to_thread(self._insert, record)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM jobs WHERE id = ?", job_id
        )
        return JobRecord.model_validate_json(row["data"]) if row else None

    async def claim_next(self, queue_name: str, now: datetime) -> Optional[JobRecord]:
        return await asyncio.to_thread(self._claim, queue_name, now)

    async def update(self, record: JobRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE jobs SET state = ?, priority_rank = ?, available_at = ?, data = ? WHERE id = ?",
            record.state.value,
            record.priority.rank,
            record.available_at.timestamp(),
            record.model_dump_json(),
            record.id,
        )

    async def list_jobs(
        self,
        queue_name: Optional[str] = None,
        states: Optional[Iterable[JobState]] = None,
    ) -> List[JobRecord]:
        clauses: List[str] = []
        params: List[Any] = []
        if queue_name is not None:
            clauses.append("queue_name = ?")
            params.append(queue_name)
        if states is not None:
            values = [JobState(s).value for s in states]
            if not values:
                return []
            clauses.append(f"state IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        query = "SELECT data FROM jobs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY sequence"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [JobRecord.model_validate_json(r["data"]) for r in rows]

    async def delete(self, job_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute, "DELETE FROM jobs WHERE id = ?", job_id
        )
        return deleted > 0

    async def count_by_state(self, queue_name: str, now: datetime) -> Dict[str, int]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT
                CASE WHEN state = ? AND available_at > ? THEN 'delayed' ELSE state END AS bucket,
                COUNT(*) AS n
            FROM jobs WHERE queue_name = ? GROUP BY bucket
            """,
            JobState.WAITING.value,
            now.timestamp(),
            queue_name,
        )
        counts = {state.value: 0 for state in JobState}
        counts["delayed"] = 0
        for row in rows:
            counts[row["bucket"]] = row["n"]
        return counts
