"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

from typing import Any, Iterable, Optional

import asyncpg

from ..contracts import ExecutionStatus, WorkflowExecution
from .repository import ExecutionRepository


class PostgresExecutionRepository(ExecutionRepository):
    """Persist execution snapshots using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS workflow_executions_workflow
            ON workflow_executions (workflow_id, created_at DESC)
            """
        )

    # ------------------------------------------------------------------
    async def save_execution(self, execution: WorkflowExecution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO workflow_executions (id, workflow_id, status, created_at, data)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE
                SET status = EXCLUDED.status, data = EXCLUDED.data
                """,
                execution.id,
                execution.workflow_id,
                execution.status.value,
                execution.created_at,
                execution.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM workflow_executions WHERE id = $1", execution_id
            )
        finally:
            await conn.close()
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
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if statuses is not None:
            params.append([ExecutionStatus(s).value for s in statuses])
            clauses.append(f"status = ANY(${len(params)})")
        query = "SELECT data FROM workflow_executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            params.append(limit)
            query += f" LIMIT ${len(params)}"

        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [WorkflowExecution.model_validate_json(r["data"]) for r in rows]

    async def delete_executions(self, execution_ids: Iterable[str]) -> int:
        ids = list(execution_ids)
        if not ids:
            return 0
        conn = await self._connect()
        try:
            status = await conn.execute(
                "DELETE FROM workflow_executions WHERE id = ANY($1)", ids
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(status.split()[-1])
