"""End-to-end execution tests for the workflow engine on the in-memory queue."""

import asyncio

import pytest

from taskweave.config import EngineSettings
from taskweave.contracts import ExecutionStatus, StepStatus
from taskweave.engine import WorkflowEngine
from taskweave.errors import WorkflowExecutionError
from taskweave.processors import ProcessorInfo
from taskweave.queue import QueueManager


class RecordingQueueManager(QueueManager):
    """Queue manager that remembers every job the engine enqueues."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.added = []

    async def add_job(self, queue_name, data, priority=None):
        job_id = await super().add_job(queue_name, data, priority)
        self.added.append((queue_name, data.payload["step_id"], data.options.priority.value))
        return job_id


def _engine(**settings):
    manager = RecordingQueueManager(poll_interval=0.01)
    return WorkflowEngine(manager, config=EngineSettings(**settings))


def _register(engine, name, queue, handler):
    engine.registry.register_processor(ProcessorInfo(name, queue, handler))


NO_RETRY = {"maxRetries": 0}


def _fan_out(**step_a):
    return {
        "id": "fan-out",
        "name": "Fan out",
        "steps": [
            {"id": "A", "name": "Analyze", "type": "document-analysis", "retryPolicy": NO_RETRY, **step_a},
            {"id": "B", "name": "Estimate", "type": "estimation", "dependencies": ["A"], "retryPolicy": NO_RETRY},
            {"id": "C", "name": "Notify", "type": "notification", "dependencies": ["A"], "retryPolicy": NO_RETRY},
        ],
    }


async def _wait_for(predicate, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_dependencies_run_in_order_and_outputs_flow_downstream():
    engine = _engine()
    ran = []
    seen_dependencies = {}

    def handler(ctx):
        step_id = ctx.payload["step_id"]
        ran.append(step_id)
        seen_dependencies[step_id] = ctx.payload["dependencies"]
        return {"step": step_id, "files": ctx.payload["input"]["files"]}

    _register(engine, "document-analysis", "document-processing", handler)
    _register(engine, "estimation", "ai-analysis", handler)
    _register(engine, "notification", "notifications", handler)

    progress = []
    completed = []
    engine.on_workflow_progress(lambda execution: progress.append(execution.progress))
    engine.on_workflow_complete(lambda execution: completed.append(execution.id))
    try:
        await engine.create_workflow(_fan_out())
        result = await engine.execute_workflow(
            "fan-out", {"files": ["rfp.pdf"]}, {"waitTimeout": 5}
        )
        execution = await engine.get_workflow_execution(result.execution_id)
    finally:
        await engine.shutdown()

    assert result.status is ExecutionStatus.COMPLETED
    assert set(result.outputs) == {"A", "B", "C"}
    assert result.outputs["A"] == {"step": "A", "files": ["rfp.pdf"]}
    assert execution.progress == 100
    assert all(s.status is StepStatus.COMPLETED for s in execution.step_states.values())

    added = engine.queue_manager.added
    assert added[0][:2] == ("document-processing", "A")
    assert {step for _, step, _ in added[1:]} == {"B", "C"}
    assert ran[0] == "A"
    assert seen_dependencies["B"] == {"A": result.outputs["A"]}
    assert progress[-1] == 100
    assert completed == [result.execution_id]


@pytest.mark.asyncio
async def test_failed_step_halts_its_dependants():
    engine = _engine()

    def broken(ctx):
        raise RuntimeError("parser crashed")

    _register(engine, "document-analysis", "document-processing", broken)
    errors = []
    engine.on_workflow_error(lambda execution, error: errors.append((execution.status, error)))
    try:
        await engine.create_workflow(_fan_out())
        with pytest.raises(WorkflowExecutionError) as info:
            await engine.execute_workflow("fan-out", options={"waitTimeout": 5})
        execution = await engine.get_workflow_execution(info.value.execution_id)
    finally:
        await engine.shutdown()

    assert info.value.status == "failed"
    assert any("parser crashed" in e for e in info.value.errors)
    assert execution.status is ExecutionStatus.FAILED
    assert execution.step_states["A"].status is StepStatus.FAILED
    assert execution.step_states["B"].status is StepStatus.PENDING
    assert [step for _, step, _ in engine.queue_manager.added] == ["A"]
    assert errors and errors[0][0] is ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_continue_on_failure_skips_only_dependants():
    engine = _engine()

    def broken(ctx):
        raise RuntimeError("no text layer")

    _register(engine, "document-analysis", "document-processing", broken)
    _register(engine, "notification", "notifications", lambda ctx: "sent")
    definition = _fan_out(continueOnFailure=True)
    definition["steps"][2]["dependencies"] = []
    try:
        await engine.create_workflow(definition)
        result = await engine.execute_workflow("fan-out", options={"waitTimeout": 5})
        execution = await engine.get_workflow_execution(result.execution_id)
    finally:
        await engine.shutdown()

    assert result.status is ExecutionStatus.COMPLETED
    assert result.outputs == {"C": "sent"}
    assert any("no text layer" in e for e in result.errors)
    assert execution.step_states["A"].status is StepStatus.FAILED
    assert execution.step_states["B"].status is StepStatus.SKIPPED
    assert execution.step_states["C"].status is StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_stops_further_enqueues():
    engine = _engine()
    release = asyncio.Event()

    async def slow(ctx):
        await release.wait()
        return "late"

    _register(engine, "document-analysis", "document-processing", slow)
    errors = []
    engine.on_workflow_error(lambda execution, error: errors.append(error))
    try:
        await engine.create_workflow(_fan_out())
        execution_id = await engine.execute_workflow_async("fan-out")
        assert await engine.cancel_workflow(execution_id)
        assert await engine.get_workflow_status(execution_id) is ExecutionStatus.CANCELLED
        assert not await engine.cancel_workflow(execution_id)

        release.set()
        await asyncio.sleep(0.2)
        execution = await engine.get_workflow_execution(execution_id)
    finally:
        await engine.shutdown()

    assert execution.status is ExecutionStatus.CANCELLED
    assert execution.result.errors == ["Execution cancelled"]
    assert [step for _, step, _ in engine.queue_manager.added] == ["A"]
    assert execution.step_states["B"].status is StepStatus.PENDING
    assert len(errors) == 1 and isinstance(errors[0], WorkflowExecutionError)


@pytest.mark.asyncio
async def test_pause_holds_next_steps_until_resume():
    engine = _engine()
    release = asyncio.Event()
    started = asyncio.Event()

    async def gated(ctx):
        started.set()
        await release.wait()
        return "analyzed"

    _register(engine, "document-analysis", "document-processing", gated)
    try:
        await engine.create_workflow(_fan_out())
        execution_id = await engine.execute_workflow_async("fan-out")
        await asyncio.wait_for(started.wait(), 2)

        assert await engine.pause_workflow(execution_id)
        assert not await engine.pause_workflow(execution_id)
        release.set()

        async def step_a_done():
            execution = await engine.get_workflow_execution(execution_id)
            return execution.step_states["A"].status is StepStatus.COMPLETED

        await _wait_for(step_a_done)
        await asyncio.sleep(0.05)
        paused = await engine.get_workflow_execution(execution_id)
        assert paused.status is ExecutionStatus.PAUSED
        assert paused.step_states["B"].status is StepStatus.PENDING
        assert [step for _, step, _ in engine.queue_manager.added] == ["A"]
        assert [e.id for e in await engine.list_active_workflows()] == [execution_id]

        assert await engine.resume_workflow(execution_id)
        finished = await engine.wait_for_execution(execution_id, timeout=5)
    finally:
        await engine.shutdown()

    assert finished.status is ExecutionStatus.COMPLETED
    assert finished.progress == 100


@pytest.mark.asyncio
async def test_retry_starts_a_high_priority_copy():
    engine = _engine()
    attempts = []

    def flaky(ctx):
        attempts.append(ctx.payload["execution_id"])
        if len(attempts) == 1:
            raise RuntimeError("temporary outage")
        return "ok"

    single = {
        "id": "single",
        "name": "Single",
        "steps": [{"id": "A", "name": "A", "type": "document-analysis", "retryPolicy": NO_RETRY}],
    }
    _register(engine, "document-analysis", "document-processing", flaky)
    try:
        await engine.create_workflow(single)
        with pytest.raises(WorkflowExecutionError) as info:
            await engine.execute_workflow(
                "single", {"parameters": {"client": "acme"}}, {"waitTimeout": 5}
            )
        failed_id = info.value.execution_id

        retry_id = await engine.retry_workflow(failed_id)
        assert retry_id is not None and retry_id != failed_id
        retried = await engine.wait_for_execution(retry_id, timeout=5)

        assert await engine.retry_workflow(retry_id) is None
        assert await engine.retry_workflow("unknown") is None
    finally:
        await engine.shutdown()

    assert retried.status is ExecutionStatus.COMPLETED
    assert retried.retry_of == failed_id
    assert retried.input.parameters == {"client": "acme"}
    assert engine.queue_manager.added[-1][2] == "high"


@pytest.mark.asyncio
async def test_executions_beyond_the_limit_wait_for_a_slot():
    engine = _engine(max_concurrent_workflows=1)
    release = asyncio.Event()

    async def gated(ctx):
        await release.wait()
        return ctx.payload["execution_id"]

    single = {
        "id": "single",
        "name": "Single",
        "steps": [{"id": "A", "name": "A", "type": "document-analysis"}],
    }
    _register(engine, "document-analysis", "document-processing", gated)
    try:
        await engine.create_workflow(single)
        first = await engine.execute_workflow_async("single")
        second = await engine.execute_workflow_async("single")

        assert await engine.get_workflow_status(first) is ExecutionStatus.RUNNING
        assert await engine.get_workflow_status(second) is ExecutionStatus.PENDING
        metrics = await engine.get_system_metrics()
        assert metrics.active_workflows == 1
        assert metrics.pending_workflows == 1
        assert metrics.system_load == 1.0

        release.set()
        done_first = await engine.wait_for_execution(first, timeout=5)
        done_second = await engine.wait_for_execution(second, timeout=5)
    finally:
        await engine.shutdown()

    assert done_first.status is ExecutionStatus.COMPLETED
    assert done_second.status is ExecutionStatus.COMPLETED
    assert done_second.started_at >= done_first.completed_at


@pytest.mark.asyncio
async def test_workflow_and_system_metrics():
    engine = _engine()
    calls = []

    def alternating(ctx):
        calls.append(1)
        if len(calls) % 2 == 0:
            raise RuntimeError("odd failure")
        return "ok"

    single = {
        "id": "single",
        "name": "Single",
        "steps": [{"id": "A", "name": "A", "type": "document-analysis", "retryPolicy": NO_RETRY}],
    }
    _register(engine, "document-analysis", "document-processing", alternating)
    try:
        await engine.create_workflow(single)
        await engine.execute_workflow("single", options={"waitTimeout": 5})
        with pytest.raises(WorkflowExecutionError):
            await engine.execute_workflow("single", options={"waitTimeout": 5})

        metrics = await engine.get_workflow_metrics("single")
        system = await engine.get_system_metrics()
        history = await engine.get_execution_history("single")
    finally:
        await engine.shutdown()

    assert metrics.total_executions == 2
    assert metrics.success_rate == 0.5
    assert metrics.error_rate == 0.5
    assert metrics.average_duration > 0
    assert metrics.last_execution == history[0].created_at
    assert system.completed_today == 1
    assert system.failed_today == 1
    assert system.active_workflows == 0
    assert [e.status for e in history] == [ExecutionStatus.FAILED, ExecutionStatus.COMPLETED]


@pytest.mark.asyncio
async def test_pause_during_retry_backoff_keeps_the_attempt_budget():
    engine = _engine()
    attempts = []
    backoffs = asyncio.Queue()

    def always_broken(ctx):
        attempts.append(ctx.attempt)
        raise RuntimeError("scanner offline")

    single = {
        "id": "single",
        "name": "Single",
        "steps": [
            {
                "id": "A",
                "name": "A",
                "type": "document-analysis",
                "retryPolicy": {"maxRetries": 2, "backoffStrategy": "linear", "initialDelay": 200},
            }
        ],
    }
    _register(engine, "document-analysis", "document-processing", always_broken)
    engine.queue_manager.on_job_retrying(None, lambda job, reason, delay: backoffs.put_nowait(job.id))
    try:
        await engine.create_workflow(single)
        execution_id = await engine.execute_workflow_async("single")
        for _ in range(2):
            await asyncio.wait_for(backoffs.get(), 3)
            assert await engine.pause_workflow(execution_id)
            assert await engine.resume_workflow(execution_id)
        finished = await engine.wait_for_execution(execution_id, timeout=5)
        job = await engine.queue_manager.get_job(f"{execution_id}:A")
    finally:
        await engine.shutdown()

    assert finished.status is ExecutionStatus.FAILED
    assert attempts == [1, 2, 3]
    assert job.attempts == 3
    assert [step for _, step, _ in engine.queue_manager.added] == ["A"]


@pytest.mark.asyncio
async def test_failed_execution_is_stored_as_it_ended():
    engine = _engine()

    def broken(ctx):
        raise RuntimeError("parser crashed")

    definition = _fan_out()
    definition["steps"][2]["dependencies"] = []
    _register(engine, "document-analysis", "document-processing", broken)
    try:
        await engine.start()
        await engine.queue_manager.pause_queue("notifications")
        await engine.create_workflow(definition)
        with pytest.raises(WorkflowExecutionError) as info:
            await engine.execute_workflow("fan-out", options={"waitTimeout": 5})
        execution_id = info.value.execution_id
        live = await engine.get_workflow_execution(execution_id)
        stored = await engine.repository.get_execution(execution_id)
        leftover = await engine.queue_manager.get_job(f"{execution_id}:C")
    finally:
        await engine.shutdown()

    assert live.status is stored.status is ExecutionStatus.FAILED
    assert live.step_states["C"].status is StepStatus.PENDING
    assert stored.step_states == live.step_states
    assert leftover is None


@pytest.mark.asyncio
async def test_ready_steps_are_enqueued_shallowest_first():
    engine = _engine()
    release = asyncio.Event()

    async def handler(ctx):
        if ctx.payload["step_id"] in ("A", "Y"):
            await release.wait()
        return ctx.payload["step_id"]

    def step(step_id, *deps):
        return {"id": step_id, "name": step_id, "type": "document-analysis", "dependencies": list(deps)}

    layered = {
        "id": "layered",
        "name": "Layered",
        "steps": [step("W", "Y"), step("B", "A"), step("Y", "Z"), step("A"), step("Z")],
    }
    _register(engine, "document-analysis", "document-processing", handler)
    try:
        await engine.create_workflow(layered)
        execution_id = await engine.execute_workflow_async("layered")

        async def y_queued():
            return any(step == "Y" for _, step, _ in engine.queue_manager.added)

        await _wait_for(y_queued)
        assert await engine.pause_workflow(execution_id)
        release.set()

        async def a_and_y_done():
            execution = await engine.get_workflow_execution(execution_id)
            return all(execution.step_states[s].status is StepStatus.COMPLETED for s in ("A", "Y"))

        await _wait_for(a_and_y_done)
        assert await engine.resume_workflow(execution_id)
        finished = await engine.wait_for_execution(execution_id, timeout=5)
    finally:
        await engine.shutdown()

    assert finished.status is ExecutionStatus.COMPLETED
    assert [step for _, step, _ in engine.queue_manager.added] == ["A", "Z", "Y", "B", "W"]
