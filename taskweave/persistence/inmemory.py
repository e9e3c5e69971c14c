"""In-memory implementation of the execution repository."""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from ..contracts import ExecutionStatus, WorkflowExecution
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution snapshots in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowExecution] = {}

    async def save_execution(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = execution.snapshot()

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.snapshot() if execution else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        wanted = {ExecutionStatus(s) for s in statuses} if statuses is not None else None
        matches = [
            e
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (wanted is None or e.status in wanted)
        ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        if limit is not None:
            matches = matches[:limit]
        return [e.snapshot() for e in matches]

    async def delete_executions(self, execution_ids: Iterable[str]) -> int:
        removed = 0
        for execution_id in execution_ids:
            if self._executions.pop(execution_id, None) is not None:
                removed += 1
        return removed
