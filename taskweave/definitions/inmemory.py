"""In-memory implementation of the definition repository."""

from __future__ import annotations

from typing import Dict, Iterable

from ..contracts import WorkflowDefinition
from .repository import DefinitionRepository


class InMemoryDefinitionStore(DefinitionRepository):
    """Keep definitions in a dict. Nothing survives a restart."""

    def __init__(self, definitions: Iterable[WorkflowDefinition] = ()) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {
            d.id: d.model_copy(deep=True) for d in definitions
        }

    async def load(self) -> list[WorkflowDefinition]:
        return [d.model_copy(deep=True) for d in self._definitions.values()]

    async def save(self, definitions: Iterable[WorkflowDefinition]) -> None:
        self._definitions = {d.id: d.model_copy(deep=True) for d in definitions}

    async def load_one(self, workflow_id: str) -> WorkflowDefinition | None:
        definition = self._definitions.get(workflow_id)
        return definition.model_copy(deep=True) if definition else None

    async def save_one(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition.model_copy(deep=True)

    async def delete(self, workflow_id: str) -> bool:
        return self._definitions.pop(workflow_id, None) is not None
