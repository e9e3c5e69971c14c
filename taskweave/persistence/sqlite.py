"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, Optional

from ..contracts import ExecutionStatus, WorkflowExecution
from .repository import ExecutionRepository


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist execution snapshots using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                data TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS executions_workflow ON executions (workflow_id, created_at)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    # ------------------------------------------------------------------
    # Repository API
    async def save_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO executions (id, workflow_id, status, created_at, data)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET status = excluded.status, data = excluded.data
            """,
            execution.id,
            execution.workflow_id,
            execution.status.value,
            execution.created_at.isoformat(),
            execution.model_dump_json(),
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM executions WHERE id = ?", execution_id
        )
        if not row:
            return None
        return WorkflowExecution.model_validate_json(row["data"])

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if statuses is not None:
            values = [ExecutionStatus(s).value for s in statuses]
            if not values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        query = "SELECT data FROM executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowExecution.model_validate_json(r["data"]) for r in rows]

    async def delete_executions(self, execution_ids: Iterable[str]) -> int:
        removed = 0
        for execution_id in execution_ids:
            removed += await asyncio.to_thread(
                self._execute, "DELETE FROM executions WHERE id = ?", execution_id
            )
        return removed
