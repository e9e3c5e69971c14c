"""Workflow management, triggers and maintenance through the engine."""

import asyncio
import json
from datetime import timedelta

import pytest

from taskweave.config import EngineSettings, WatcherSettings
from taskweave.contracts import ExecutionStatus, Priority, utcnow
from taskweave.definitions import JsonDefinitionStore
from taskweave.engine import WorkflowEngine
from taskweave.errors import (
    InvalidWorkflowError,
    WorkflowDisabledError,
    WorkflowNotFoundError,
)
from taskweave.persistence import SQLiteExecutionRepository
from taskweave.processors import ProcessorInfo
from taskweave.queue import QueueManager

SIMPLE = {
    "id": "intake",
    "name": "Intake",
    "tags": ["docs"],
    "steps": [
        {"id": "read", "name": "Read", "type": "document-analysis"},
        {"id": "tell", "name": "Tell", "type": "notification", "dependencies": ["read"]},
    ],
}


def _engine(**kwargs):
    return WorkflowEngine(QueueManager(poll_interval=0.01), **kwargs)


@pytest.mark.asyncio
async def test_create_update_list_and_delete():
    engine = _engine()
    try:
        created = await engine.create_workflow(SIMPLE)
        assert created.id == "intake"

        with pytest.raises(InvalidWorkflowError) as duplicate:
            await engine.create_workflow(SIMPLE)
        assert "already exists" in duplicate.value.errors[0]

        updated = await engine.update_workflow("intake", {"name": "Intake v2", "enabled": False})
        assert updated.name == "Intake v2"
        assert updated.created_at == created.created_at
        assert updated.updated_at >= created.updated_at

        assert [w.id for w in await engine.list_workflows(tags=["docs"])] == ["intake"]
        assert await engine.list_workflows(enabled=True) == []

        with pytest.raises(WorkflowDisabledError):
            await engine.execute_workflow_async("intake")

        with pytest.raises(InvalidWorkflowError):
            await engine.update_workflow("intake", {"steps": []})

        assert await engine.delete_workflow("intake")
        assert not await engine.delete_workflow("intake")
        assert await engine.get_workflow("intake") is None
        with pytest.raises(WorkflowNotFoundError):
            await engine.execute_workflow_async("intake")
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_invalid_definition_reports_every_error():
    engine = _engine()
    broken = {
        "id": "broken",
        "name": "Broken",
        "steps": [
            {"id": "a", "name": "A", "type": "estimation", "dependencies": ["b"]},
            {"id": "b", "name": "B", "type": "estimation", "dependencies": ["a"]},
            {"id": "c", "name": "C", "type": "estimation", "dependencies": ["ghost"]},
        ],
    }
    with pytest.raises(InvalidWorkflowError) as info:
        await engine.create_workflow(broken)
    errors = info.value.errors
    assert any(e.startswith("Dependency cycle detected") for e in errors)
    assert "Step c depends on non-existent step: ghost" in errors
    assert await engine.get_workflow("broken") is None


@pytest.mark.asyncio
async def test_definitions_persist_to_json_and_load_on_start(tmp_path):
    path = tmp_path / "workflows.json"
    engine = _engine(definitions=JsonDefinitionStore(path))
    try:
        await engine.create_workflow(SIMPLE)
    finally:
        await engine.shutdown()
    assert json.loads(path.read_text())["workflows"][0]["id"] == "intake"

    restarted = _engine(definitions=JsonDefinitionStore(path))
    try:
        await restarted.start()
        assert (await restarted.get_workflow("intake")).name == "Intake"
        result = await restarted.execute_workflow("intake", options={"waitTimeout": 5})
        assert result.status is ExecutionStatus.COMPLETED
    finally:
        await restarted.shutdown()


@pytest.mark.asyncio
async def test_history_is_stored_in_the_repository(tmp_path):
    repository = SQLiteExecutionRepository(tmp_path / "history.db")
    engine = _engine(repository=repository)
    try:
        await engine.create_workflow(SIMPLE)
        result = await engine.execute_workflow("intake", options={"waitTimeout": 5})
    finally:
        await engine.shutdown()

    stored = await repository.get_execution(result.execution_id)
    assert stored.status is ExecutionStatus.COMPLETED
    assert stored.progress == 100
    assert any(entry.message == "Workflow execution completed" for entry in stored.logs)


@pytest.mark.asyncio
async def test_test_workflow_runs_a_temporary_copy():
    engine = _engine()
    try:
        outcome = await engine.test_workflow(SIMPLE, {"files": ["sample.pdf"]})
        assert outcome.success, outcome.errors
        assert set(outcome.result.outputs) == {"read", "tell"}
        assert await engine.list_workflows() == []

        invalid = await engine.test_workflow({**SIMPLE, "steps": []})
        assert not invalid.success
        assert invalid.errors == ["Workflow must have at least one step"]
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_test_workflow_reports_step_failures():
    engine = _engine()

    def broken(ctx):
        raise RuntimeError("cannot read")

    engine.registry.register_processor(ProcessorInfo("document-analysis", "document-processing", broken))
    definition = json.loads(json.dumps(SIMPLE))
    definition["steps"][0]["retryPolicy"] = {"maxRetries": 0}
    try:
        outcome = await engine.test_workflow(definition)
    finally:
        await engine.shutdown()
    assert not outcome.success
    assert any("cannot read" in e for e in outcome.errors)


@pytest.mark.asyncio
async def test_cleanup_and_archive_remove_old_finished_executions():
    engine = _engine()
    try:
        await engine.create_workflow(SIMPLE)
        first = await engine.execute_workflow("intake", options={"waitTimeout": 5})
        second = await engine.execute_workflow("intake", options={"waitTimeout": 5})

        assert await engine.cleanup_completed_executions(utcnow() - timedelta(hours=1)) == 0
        assert await engine.cleanup_completed_executions(utcnow() + timedelta(seconds=1)) == 2
        assert await engine.get_workflow_execution(first.execution_id) is None
        assert await engine.get_workflow_execution(second.execution_id) is None

        await engine.execute_workflow("intake", options={"waitTimeout": 5})
        assert await engine.archive_workflow_data("intake", utcnow() + timedelta(seconds=1))
        assert await engine.get_execution_history("intake") == []
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_engine_config_updates():
    engine = _engine(config=EngineSettings(max_concurrent_workflows=3))
    updated = await engine.update_engine_config(max_concurrent_workflows=7)
    assert updated.max_concurrent_workflows == 7
    assert (await engine.get_engine_config()).max_concurrent_workflows == 7
    with pytest.raises(ValueError):
        await engine.update_engine_config(max_concurrent_workflows=0)


@pytest.mark.asyncio
async def test_schedules_are_activated_for_enabled_workflows():
    engine = _engine()
    scheduled = {
        **SIMPLE,
        "triggers": [
            {"type": "schedule", "config": {"cronExpression": "0 9 * * 1-5", "timezone": "Europe/Berlin"}}
        ],
    }
    try:
        await engine.start()
        await engine.create_workflow(scheduled)
        [entry] = await engine.list_scheduled_workflows()
        assert entry.workflow_id == "intake"
        assert entry.timezone == "Europe/Berlin"

        execution_id = await engine.scheduler._fire("intake")
        execution = await engine.wait_for_execution(execution_id, timeout=5)
        assert execution.input.context == {"trigger": "schedule"}
        assert execution.status is ExecutionStatus.COMPLETED

        assert await engine.unschedule_workflow("intake")
        assert await engine.list_scheduled_workflows() == []
        assert await engine.schedule_workflow("intake", "*/10 * * * *")
        with pytest.raises(WorkflowNotFoundError):
            await engine.schedule_workflow("missing", "* * * * *")

        await engine.delete_workflow("intake")
        assert await engine.list_scheduled_workflows() == []
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_file_watch_trigger_starts_executions(tmp_path):
    inbox = tmp_path / "inbox"
    inbox.mkdir()
    engine = _engine(watcher=WatcherSettings(poll_interval=0.02, debounce=0.05))
    watched = {
        **SIMPLE,
        "triggers": [{"type": "file-watch", "config": {"path": str(inbox), "pattern": r"\.pdf$"}}],
    }
    try:
        await engine.start()
        await engine.create_workflow(watched)
        [registration] = await engine.list_file_watchers()
        assert registration.workflow_id == "intake"

        (inbox / "skip.txt").write_text("ignored")
        (inbox / "rfp.pdf").write_text("content")

        for _ in range(300):
            history = await engine.get_execution_history("intake")
            if history and history[0].status.is_terminal:
                break
            await asyncio.sleep(0.01)

        assert len(history) == 1
        execution = history[0]
        assert execution.status is ExecutionStatus.COMPLETED
        assert execution.input.files == [str(inbox / "rfp.pdf")]
        assert execution.input.context["event_type"] == "created"

        assert await engine.remove_file_watcher(registration.id)
        assert await engine.list_file_watchers() == []
    finally:
        await engine.shutdown()


@pytest.mark.asyncio
async def test_lifecycle_events_and_priority_option():
    engine = _engine()
    started = []
    engine.on_workflow_start(lambda execution: started.append(execution.status))
    try:
        await engine.create_workflow(SIMPLE)
        result = await engine.execute_workflow(
            "intake", options={"priority": "critical", "waitTimeout": 5}
        )
        jobs = await engine.queue_manager.get_completed_jobs()
    finally:
        await engine.shutdown()
    assert result.status is ExecutionStatus.COMPLETED
    assert started == [ExecutionStatus.RUNNING]
    assert {job.priority for job in jobs} == {Priority.HIGH}
    assert {job.id for job in jobs} == {
        f"{result.execution_id}:read",
        f"{result.execution_id}:tell",
    }
