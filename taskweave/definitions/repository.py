"""Repository abstraction for workflow definitions."""

from __future__ import annotations

from typing import Iterable, Protocol

from ..contracts import WorkflowDefinition


class DefinitionRepository(Protocol):
    """Protocol for workflow definition backends."""

    async def load(self) -> list[WorkflowDefinition]:
        """Return every stored definition."""

    async def save(self, definitions: Iterable[WorkflowDefinition]) -> None:
        """Replace the stored set with ``definitions``."""

    async def load_one(self, workflow_id: str) -> WorkflowDefinition | None:
        """Return one definition by id."""

    async def save_one(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a single definition."""

    async def delete(self, workflow_id: str) -> bool:
        """Remove a definition, returning whether it existed."""
