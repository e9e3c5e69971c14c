"""Tests for workflow definition validation."""

from taskweave.contracts import WorkflowDefinition
from taskweave.validation import find_cycles, topological_layers, validate_definition


def _definition(steps, **extra):
    return {"id": "wf", "name": "Workflow", "steps": steps, **extra}


def _step(step_id, deps=(), step_type="document-analysis", **extra):
    return {
        "id": step_id,
        "name": step_id.upper(),
        "type": step_type,
        "dependencies": list(deps),
        **extra,
    }


def test_valid_linear_workflow():
    result = validate_definition(_definition([_step("a"), _step("b", ["a"])]))
    assert result.valid, result.errors
    assert result.errors == []
    assert result.warnings == []


def test_cycle_is_reported_with_its_path():
    result = validate_definition(_definition([_step("a", ["b"]), _step("b", ["a"])]))
    assert not result.valid
    cycle_errors = [e for e in result.errors if e.startswith("Dependency cycle detected")]
    assert len(cycle_errors) == 1
    assert "a" in cycle_errors[0] and "b" in cycle_errors[0]


def test_missing_dependency_named():
    result = validate_definition(_definition([_step("a", ["ghost"])]))
    assert "Step a depends on non-existent step: ghost" in result.errors


def test_header_and_step_errors_are_collected_together():
    result = validate_definition(
        {
            "id": "",
            "name": "",
            "steps": [
                {"id": "x", "name": "", "type": "teleport"},
                {"id": "x", "name": "X", "type": "estimation"},
            ],
        }
    )
    assert "Workflow ID is required" in result.errors
    assert "Workflow name is required" in result.errors
    assert "Step x must have a name" in result.errors
    assert "Step x has unknown type: teleport" in result.errors
    assert "Duplicate step ID: x" in result.errors


def test_empty_steps_rejected():
    result = validate_definition(_definition([]))
    assert result.errors == ["Workflow must have at least one step"]


def test_invalid_step_config_rejected():
    result = validate_definition(
        _definition([_step("copy", step_type="file-operation", config={"operation": "shred"})])
    )
    assert not result.valid
    assert result.errors[0].startswith("Step copy has invalid config")


def test_invalid_cron_rejected():
    result = validate_definition(
        _definition([_step("a")], schedule={"expression": "not a cron"})
    )
    assert not result.valid
    assert any("not a cron" in e for e in result.errors)


def test_unknown_timezone_rejected():
    result = validate_definition(
        _definition(
            [_step("a")],
            triggers=[
                {"type": "schedule", "config": {"cronExpression": "0 9 * * *", "timezone": "Mars/Olympus"}}
            ],
        )
    )
    assert any("unknown timezone Mars/Olympus" in e for e in result.errors)


def test_warnings_do_not_invalidate():
    result = validate_definition(
        _definition(
            [_step("a"), _step("b"), _step("c", ["b"])],
            schedule={"expression": "0 9 * * 1-5"},
            enabled=False,
        )
    )
    assert result.valid, result.errors
    assert "Step a is not connected to any other step" in result.warnings
    assert "Workflow is disabled; its schedule will not fire" in result.warnings
    assert "Workflow has a schedule but no schedule trigger" in result.warnings


def test_accepts_model_instances():
    definition = WorkflowDefinition.model_validate(
        _definition([_step("a"), _step("b", ["a"])])
    )
    assert validate_definition(definition).valid


def test_find_cycles_returns_closed_paths():
    cycles = find_cycles({"a": ["b"], "b": ["c"], "c": ["a"], "d": []})
    assert len(cycles) == 1
    cycle = cycles[0]
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_topological_layers_groups_parallel_steps():
    layers = topological_layers({"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"]})
    assert layers == [["a"], ["b", "c"], ["d"]]
