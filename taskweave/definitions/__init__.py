"""Workflow definition storage."""

from __future__ import annotations

import os
from typing import Optional

from ..config import TaskweaveConfig, load_config
from .inmemory import InMemoryDefinitionStore
from .json_store import JsonDefinitionStore, apply_step_defaults, expand_step
from .repository import DefinitionRepository


def get_definition_store(
    path: Optional[str] = None, config: Optional[TaskweaveConfig] = None
) -> DefinitionRepository:
    """Return a JSON definition store for ``path`` or the configured file.

    ``path=":memory:"`` selects the in-memory store.
    """
    config = config or load_config()
    path = path or os.getenv("TASKWEAVE_DEFINITIONS") or config.definitions_path
    if path == ":memory:":
        return InMemoryDefinitionStore()
    return JsonDefinitionStore(path)


__all__ = [
    "DefinitionRepository",
    "InMemoryDefinitionStore",
    "JsonDefinitionStore",
    "apply_step_defaults",
    "expand_step",
    "get_definition_store",
]
