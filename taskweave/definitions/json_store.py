"""Versioned JSON file holding workflow definitions."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from ..constants import (
    DEFAULT_DEFINITION_VERSION,
    DEFAULT_DEFINITIONS_PATH,
    SUPPORTED_DEFINITION_VERSIONS,
)
from ..contracts import (
    DefinitionSettings,
    RetryPolicy,
    ValidationResult,
    WorkflowDefinition,
)
from ..errors import ConfigVersionError, DefinitionLoadError
from ..validation import validate_definition
from .repository import DefinitionRepository

logger = logging.getLogger(__name__)


def expand_step(step: Mapping[str, Any], templates: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    """Merge the step's template under it, keeping the step's own id."""
    template_name = step.get("template")
    template = templates.get(template_name) if template_name else None
    if template is None:
        if template_name:
            logger.warning(f"Step {step.get('id')} references unknown template {template_name}")
        return dict(step)

    merged = {**template, **step}
    merged["id"] = step.get("id")
    merged["config"] = {**(template.get("config") or {}), **(step.get("config") or {})}
    return merged


def apply_step_defaults(step: Dict[str, Any], settings: DefinitionSettings) -> Dict[str, Any]:
    if not step.get("dependencies"):
        step["dependencies"] = []
    if not (step.get("retryPolicy") or step.get("retry_policy")):
        step["retryPolicy"] = RetryPolicy(max_retries=settings.max_retries).model_dump(
            mode="json", by_alias=True
        )
    return step


class JsonDefinitionStore(DefinitionRepository):
    """Load and persist definitions in a versioned JSON document.

    The document looks like ``{"version": ..., "workflows": [...],
    "templates": {...}, "settings": {...}}``. Steps may name a template;
    templates are expanded on load. Writes go to a temporary file that
    replaces the original, so readers never see a partial document.
    """

    def __init__(self, path: str | Path = DEFAULT_DEFINITIONS_PATH) -> None:
        self.path = Path(path)
        self.settings = DefinitionSettings()
        self.templates: Dict[str, Dict[str, Any]] = {}
        self.version = DEFAULT_DEFINITION_VERSION
        self._cache: Dict[str, WorkflowDefinition] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # File access
    def _read_document(self) -> Optional[Dict[str, Any]]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise DefinitionLoadError(f"Failed to read {self.path}: {exc}") from exc
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DefinitionLoadError(f"Invalid JSON in {self.path}: {exc}") from exc
        if not isinstance(document, dict):
            raise DefinitionLoadError(f"{self.path} must contain a JSON object")
        return document

    def _write_document(self, document: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2)
                fh.write("\n")
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def _parse(self, document: Dict[str, Any]) -> List[WorkflowDefinition]:
        version = document.get("version")
        if version not in SUPPORTED_DEFINITION_VERSIONS:
            raise ConfigVersionError(version)
        self.version = version

        try:
            self.settings = DefinitionSettings.model_validate(document.get("settings") or {})
        except ValidationError as exc:
            raise DefinitionLoadError(f"Invalid settings in {self.path}: {exc}") from exc
        templates = document.get("templates") or {}
        if not isinstance(templates, dict):
            raise DefinitionLoadError(f"Templates in {self.path} must be an object")
        self.templates = templates

        raw_workflows = document.get("workflows") or []
        if not isinstance(raw_workflows, list):
            raise DefinitionLoadError(f"Workflows in {self.path} must be a list")

        definitions: List[WorkflowDefinition] = []
        for index, raw in enumerate(raw_workflows):
            if not isinstance(raw, dict):
                raise DefinitionLoadError(f"Workflow {index} must be an object")
            workflow = dict(raw)
            workflow["steps"] = [
                apply_step_defaults(expand_step(step, templates), self.settings)
                for step in workflow.get("steps") or []
                if isinstance(step, Mapping)
            ]
            try:
                definitions.append(WorkflowDefinition.model_validate(workflow))
            except ValidationError as exc:
                raise DefinitionLoadError(
                    f"Invalid workflow {raw.get('id', index)}: {exc}"
                ) from exc
        return definitions

    # ------------------------------------------------------------------
    # Repository API
    async def load(self) -> list[WorkflowDefinition]:
        document = await asyncio.to_thread(self._read_document)
        if document is None:
            logger.info(f"No workflow definitions at {self.path}")
            self._cache = {}
            return []
        definitions = self._parse(document)
        self._cache = {d.id: d for d in definitions}
        logger.info(f"Loaded {len(definitions)} workflow definitions from {self.path}")
        return [d.model_copy(deep=True) for d in definitions]

    async def save(self, definitions: Iterable[WorkflowDefinition]) -> None:
        definitions = list(definitions)
        document = {
            "version": self.version,
            "workflows": [
                d.model_dump(mode="json", by_alias=True, exclude_none=True)
                for d in definitions
            ],
            "templates": self.templates,
            "settings": self.settings.model_dump(mode="json", by_alias=True),
        }
        await asyncio.to_thread(self._write_document, document)
        self._cache = {d.id: d.model_copy(deep=True) for d in definitions}

    async def load_one(self, workflow_id: str) -> WorkflowDefinition | None:
        if workflow_id not in self._cache:
            await self.load()
        definition = self._cache.get(workflow_id)
        return definition.model_copy(deep=True) if definition else None

    async def save_one(self, definition: WorkflowDefinition) -> None:
        async with self._lock:
            definitions = await self.load()
            for index, existing in enumerate(definitions):
                if existing.id == definition.id:
                    definitions[index] = definition
                    break
            else:
                definitions.append(definition)
            await self.save(definitions)

    async def delete(self, workflow_id: str) -> bool:
        async with self._lock:
            definitions = await self.load()
            remaining = [d for d in definitions if d.id != workflow_id]
            if len(remaining) == len(definitions):
                return False
            await self.save(remaining)
            return True

    # ------------------------------------------------------------------
    # Validation
    def validate(self, definition: WorkflowDefinition | Mapping[str, Any]) -> ValidationResult:
        return validate_definition(definition)

    def validate_document(self, document: Mapping[str, Any]) -> ValidationResult:
        """Check a whole definition document without loading it."""
        errors: List[str] = []
        warnings: List[str] = []

        version = document.get("version")
        if not version:
            errors.append("Config version is required")
        elif version not in SUPPORTED_DEFINITION_VERSIONS:
            errors.append(f"Incompatible workflow config version: {version}")

        workflows = document.get("workflows")
        if not isinstance(workflows, list):
            errors.append("Workflows must be an array")
            workflows = []

        templates = document.get("templates") or {}
        seen: set[str] = set()
        for index, raw in enumerate(workflows):
            if not isinstance(raw, Mapping):
                errors.append(f"Workflow {index}: must be an object")
                continue
            workflow = dict(raw)
            steps = workflow.get("steps")
            if isinstance(steps, list):
                workflow["steps"] = [
                    expand_step(s, templates) if isinstance(s, Mapping) else s for s in steps
                ]
            result = validate_definition(workflow)
            errors.extend(f"Workflow {index}: {e}" for e in result.errors)
            warnings.extend(f"Workflow {index}: {w}" for w in result.warnings)
            workflow_id = raw.get("id")
            if workflow_id:
                if workflow_id in seen:
                    errors.append(f"Workflow {index}: Duplicate workflow ID: {workflow_id}")
                seen.add(workflow_id)

        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    @staticmethod
    def create_workflow_template() -> Dict[str, Any]:
        """Skeleton of an empty definition, handy as a starting point."""
        return {
            "id": "",
            "name": "",
            "description": "",
            "steps": [],
            "triggers": [],
            "enabled": True,
        }
