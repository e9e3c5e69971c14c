"""Structural validation of workflow definitions."""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Union

from pydantic import BaseModel, ValidationError

from .contracts import (
    TRIGGER_ADAPTER,
    RetryPolicy,
    StepType,
    ValidationResult,
    parse_step_config,
)
from .errors import InvalidScheduleError
from .triggers.scheduler import build_cron_trigger

_STEP_TYPES = {t.value for t in StepType}


def _get(data: Mapping[str, Any], name: str, alias: str | None = None) -> Any:
    if name in data:
        return data[name]
    if alias and alias in data:
        return data[alias]
    return None


def _format_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "kind")
        parts.append(f"{loc}: {err['msg']}" if loc else err["msg"])
    return "; ".join(parts)


def find_cycles(graph: Mapping[str, Iterable[str]]) -> List[List[str]]:
    """Return every dependency cycle found by depth-first search.

    ``graph`` maps a node to the nodes it depends on. Each cycle is returned
    as a closed path, e.g. ``["A", "B", "A"]``. Edges to unknown nodes are
    ignored.
    """
    white, grey, black = 0, 1, 2
    color: Dict[str, int] = {node: white for node in graph}
    stack: List[str] = []
    cycles: List[List[str]] = []

    def visit(node: str) -> None:
        color[node] = grey
        stack.append(node)
        for dep in graph.get(node, ()):
            if dep not in color:
                continue
            if color[dep] == grey:
                start = stack.index(dep)
                cycles.append(stack[start:] + [dep])
            elif color[dep] == white:
                visit(dep)
        stack.pop()
        color[node] = black

    for node in graph:
        if color[node] == white:
            visit(node)
    return cycles


def topological_layers(graph: Mapping[str, Iterable[str]]) -> List[List[str]]:
    """Group nodes into layers where each layer only depends on earlier ones.

    Raises:
        ValueError: If the graph contains a cycle.
    """
    deps = {node: {d for d in graph[node] if d in graph} for node in graph}
    dependants: Dict[str, List[str]] = {node: [] for node in graph}
    for node, node_deps in deps.items():
        for dep in node_deps:
            dependants[dep].append(node)

    remaining = {node: len(node_deps) for node, node_deps in deps.items()}
    layer = [node for node in graph if remaining[node] == 0]
    layers: List[List[str]] = []
    seen = 0
    while layer:
        layers.append(layer)
        seen += len(layer)
        next_layer = []
        for node in layer:
            for child in dependants[node]:
                remaining[child] -= 1
                if remaining[child] == 0:
                    next_layer.append(child)
        layer = next_layer

    if seen != len(deps):
        raise ValueError("Step graph contains cycles")
    return layers


def _check_cron(expression: Any, timezone: Any, label: str, errors: List[str]) -> None:
    if not isinstance(expression, str) or not expression.strip():
        errors.append(f"{label}: cron expression is required")
        return
    try:
        build_cron_trigger(expression, timezone or "UTC")
    except InvalidScheduleError as exc:
        errors.append(str(exc))


def _validate_steps(steps: Sequence[Any], errors: List[str], warnings: List[str]) -> None:
    step_ids: List[str] = []
    graph: Dict[str, List[str]] = {}
    for index, step in enumerate(steps):
        if not isinstance(step, Mapping):
            errors.append(f"Step {index} must be an object")
            continue
        step_id = step.get("id")
        if not step_id:
            errors.append("Step ID is required")
            step_id = f"#{index}"
        elif step_id in graph:
            errors.append(f"Duplicate step ID: {step_id}")
        step_ids.append(step_id)

        if not step.get("name"):
            errors.append(f"Step {step_id} must have a name")

        step_type = step.get("type")
        if not step_type:
            errors.append(f"Step {step_id} must have a type")
        elif step_type not in _STEP_TYPES:
            errors.append(f"Step {step_id} has unknown type: {step_type}")
        else:
            try:
                parse_step_config(step_type, step.get("config") or {})
            except ValidationError as exc:
                errors.append(f"Step {step_id} has invalid config: {_format_error(exc)}")

        policy = _get(step, "retry_policy", "retryPolicy")
        if policy is not None:
            try:
                RetryPolicy.model_validate(policy)
            except ValidationError as exc:
                errors.append(f"Step {step_id} has invalid retry policy: {_format_error(exc)}")

        timeout = step.get("timeout")
        if timeout is not None and (not isinstance(timeout, int) or timeout <= 0):
            errors.append(f"Step {step_id} timeout must be a positive number of milliseconds")

        dependencies = step.get("dependencies") or []
        if not isinstance(dependencies, list):
            errors.append(f"Step {step_id} dependencies must be a list")
            dependencies = []
        graph.setdefault(step_id, [])
        graph[step_id].extend(d for d in dependencies if d not in graph[step_id])

    known = set(graph)
    for step_id, dependencies in graph.items():
        for dep in dependencies:
            if dep not in known:
                errors.append(f"Step {step_id} depends on non-existent step: {dep}")

    for cycle in find_cycles(graph):
        errors.append(f"Dependency cycle detected: {' -> '.join(cycle)}")

    if len(graph) > 1:
        referenced = {dep for deps in graph.values() for dep in deps}
        for step_id in step_ids:
            if not graph.get(step_id) and step_id not in referenced:
                warnings.append(f"Step {step_id} is not connected to any other step")


def validate_definition(
    definition: Union[BaseModel, Mapping[str, Any]],
) -> ValidationResult:
    """Validate a workflow definition and collect every violation.

    Accepts a ``WorkflowDefinition`` or a raw mapping (snake_case or
    camelCase keys), so that definitions rejected by the model can still be
    reported in full.
    """
    if isinstance(definition, BaseModel):
        data: Mapping[str, Any] = definition.model_dump(mode="json")
    else:
        data = definition

    errors: List[str] = []
    warnings: List[str] = []

    if not data.get("id"):
        errors.append("Workflow ID is required")
    if not data.get("name"):
        errors.append("Workflow name is required")

    steps = data.get("steps")
    if not isinstance(steps, list) or not steps:
        errors.append("Workflow must have at least one step")
    else:
        _validate_steps(steps, errors, warnings)

    schedule = data.get("schedule")
    if schedule is not None:
        if not isinstance(schedule, Mapping):
            errors.append("Schedule must be an object")
        else:
            expression = _get(schedule, "expression") or _get(
                schedule, "cron_expression", "cronExpression"
            )
            _check_cron(expression, schedule.get("timezone"), "Schedule", errors)

    has_schedule_trigger = False
    for index, trigger in enumerate(data.get("triggers") or []):
        try:
            parsed = TRIGGER_ADAPTER.validate_python(trigger)
        except ValidationError as exc:
            errors.append(f"Trigger {index} is invalid: {_format_error(exc)}")
            continue
        if parsed.type == "schedule":
            has_schedule_trigger = True
            _check_cron(
                parsed.config.cron_expression,
                parsed.config.timezone,
                f"Trigger {index}",
                errors,
            )
        elif parsed.type == "file-watch":
            for label, pattern in (
                ("pattern", parsed.config.pattern),
                ("ignore pattern", parsed.config.ignore_pattern),
            ):
                if pattern is None:
                    continue
                try:
                    re.compile(pattern)
                except re.error as exc:
                    errors.append(f"Trigger {index} has invalid {label}: {exc}")

    enabled = data.get("enabled", True)
    if schedule is not None or has_schedule_trigger:
        if enabled is False:
            warnings.append("Workflow is disabled; its schedule will not fire")
    if schedule is not None and not has_schedule_trigger:
        warnings.append("Workflow has a schedule but no schedule trigger")

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
