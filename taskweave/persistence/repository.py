"""Repository abstraction for execution history."""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

from ..contracts import ExecutionStatus, WorkflowExecution


class ExecutionRepository(Protocol):
    """Protocol for execution history backends.

    The engine is the only writer. Stored executions are snapshots, so
    mutating a returned object never changes what is stored.
    """

    async def save_execution(self, execution: WorkflowExecution) -> None:
        """Insert or replace the stored snapshot of ``execution``."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        statuses: Optional[Iterable[ExecutionStatus]] = None,
        limit: Optional[int] = None,
    ) -> list[WorkflowExecution]:
        """Return matching executions, newest first."""

    async def delete_executions(self, execution_ids: Iterable[str]) -> int:
        """Delete executions and return how many were removed."""
