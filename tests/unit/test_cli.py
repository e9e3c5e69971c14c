import asyncio
import json

import pytest
from typer.testing import CliRunner

import taskweave.persistence as persistence
from taskweave.cli import app
from taskweave.contracts import ExecutionStatus, StepState, StepStatus, WorkflowExecution
from taskweave.persistence import InMemoryExecutionRepository

DOCUMENT = {
    "version": "1.0.0",
    "workflows": [
        {
            "id": "review",
            "name": "Document review",
            "steps": [
                {"id": "analyze", "name": "Analyze", "type": "document-analysis"},
                {
                    "id": "estimate",
                    "name": "Estimate",
                    "type": "estimation",
                    "dependencies": ["analyze"],
                },
            ],
        }
    ],
}


@pytest.fixture
def definitions(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("TASKWEAVE_CONFIG", "TASKWEAVE_QUEUE_BACKEND", "TASKWEAVE_DEFINITIONS",
                 "TASKWEAVE_DATABASE_URL", "DATABASE_URL"):
        monkeypatch.delenv(name, raising=False)
    path = tmp_path / "workflows.json"
    path.write_text(json.dumps(DOCUMENT))
    return path


def test_workflow_list_and_show(definitions):
    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "list", "--path", str(definitions)])
    assert result.exit_code == 0, result.stdout
    assert "review\tDocument review\tenabled\t2 steps" in result.stdout

    result = runner.invoke(app, ["workflow", "show", "review", "--path", str(definitions)])
    assert result.exit_code == 0, result.stdout
    assert "- estimate [estimation] on ai-analysis <- analyze" in result.stdout

    missing = runner.invoke(app, ["workflow", "show", "nope", "--path", str(definitions)])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.stdout


def test_workflow_validate_reports_errors(definitions, tmp_path):
    runner = CliRunner()
    ok = runner.invoke(app, ["workflow", "validate", str(definitions)])
    assert ok.exit_code == 0, ok.stdout
    assert "Definitions are valid" in ok.stdout

    broken = json.loads(json.dumps(DOCUMENT))
    broken["workflows"][0]["steps"][0]["dependencies"] = ["estimate"]
    bad_path = tmp_path / "broken.json"
    bad_path.write_text(json.dumps(broken))
    result = runner.invoke(app, ["workflow", "validate", str(bad_path)])
    assert result.exit_code == 1
    assert "Dependency cycle detected" in result.stdout

    missing = runner.invoke(app, ["workflow", "validate", str(tmp_path / "none.json")])
    assert missing.exit_code == 1


def test_workflow_run_completes_with_built_in_processors(definitions):
    runner = CliRunner()
    result = runner.invoke(
        app,
        ["workflow", "run", "review", "--path", str(definitions), "-p", "client=acme", "--wait-timeout", "10"],
    )
    assert result.exit_code == 0, result.stdout
    assert ": completed in" in result.stdout
    assert '"analyze"' in result.stdout and '"estimate"' in result.stdout


def test_workflow_run_unknown_workflow_fails(definitions):
    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "run", "ghost", "--path", str(definitions)])
    assert result.exit_code == 1
    assert "Workflow not found: ghost" in result.stdout


def test_workflow_template_prints_json():
    result = CliRunner().invoke(app, ["workflow", "template"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["steps"] == []


def test_execution_list_and_show(monkeypatch):
    repo = InMemoryExecutionRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repo)
    execution = WorkflowExecution(
        id="exec_1",
        workflow_id="review",
        status=ExecutionStatus.FAILED,
        progress=50,
        step_states={
            "analyze": StepState(step_id="analyze", status=StepStatus.COMPLETED),
            "estimate": StepState(step_id="estimate", status=StepStatus.FAILED, error="model offline"),
        },
    )
    asyncio.run(repo.save_execution(execution))

    runner = CliRunner()
    result = runner.invoke(app, ["execution", "list"])
    assert result.exit_code == 0, result.stdout
    assert "exec_1\treview\tfailed\t50%" in result.stdout

    result = runner.invoke(app, ["execution", "show", "exec_1"])
    assert result.exit_code == 0, result.stdout
    assert "- estimate: failed (model offline)" in result.stdout

    missing = runner.invoke(app, ["execution", "show", "exec_2"])
    assert missing.exit_code == 1
    assert "Execution not found" in missing.stdout


def test_queue_stats_lists_default_queues(definitions):
    result = CliRunner().invoke(app, ["queue", "stats"])
    assert result.exit_code == 0, result.stdout
    assert "document-processing\t0\t0\t0\t0\t0" in result.stdout
    assert "healthy: True" in result.stdout
