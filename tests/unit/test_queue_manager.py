"""Tests for the queue manager running on the in-memory store."""

import asyncio

import pytest

from taskweave.contracts import RetryPolicy
from taskweave.errors import QueueNotFoundError
from taskweave.queue import JobData, JobOptions, JobState, QueueConfig, QueueManager


async def _wait_for(predicate, timeout=3.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def _manager(concurrency=1, retry_policy=None):
    manager = QueueManager(poll_interval=0.01)
    await manager.initialize()
    manager.create_queue(
        QueueConfig(
            name="jobs",
            concurrency=concurrency,
            retry_policy=retry_policy or RetryPolicy(max_retries=0),
        )
    )
    return manager


@pytest.mark.asyncio
async def test_jobs_run_in_priority_then_insertion_order():
    manager = await _manager()
    order = []

    async def processor(ctx):
        order.append(ctx.payload["name"])
        return ctx.payload["name"]

    try:
        await manager.add_job("jobs", {"type": "t", "payload": {"name": "L1"}}, "low")
        await manager.add_job("jobs", {"type": "t", "payload": {"name": "M1"}}, "medium")
        await manager.add_job("jobs", {"type": "t", "payload": {"name": "H1"}}, "high")
        await manager.add_job("jobs", {"type": "t", "payload": {"name": "H2"}}, "critical")
        manager.register_job_processor("jobs", processor)
        await manager.start()

        async def all_done():
            return len(await manager.get_completed_jobs("jobs")) == 4

        await _wait_for(all_done)
    finally:
        await manager.shutdown()

    assert order == ["H1", "H2", "M1", "L1"]


@pytest.mark.asyncio
async def test_failing_job_is_attempted_max_retries_plus_one_times():
    manager = await _manager(retry_policy=RetryPolicy(max_retries=2, initial_delay=10))
    attempts = []
    retrying = []
    failed = []

    def processor(ctx):
        attempts.append(ctx.attempt)
        raise RuntimeError("boom")

    manager.on_job_retrying("jobs", lambda job, reason, delay: retrying.append(delay))
    manager.on_job_failed(None, lambda job, reason: failed.append((job.id, reason)))
    manager.register_job_processor("jobs", processor)
    try:
        await manager.start()
        job_id = await manager.add_job("jobs", JobData(type="t"))

        async def is_failed():
            job = await manager.get_job(job_id)
            return job.status is JobState.FAILED

        await _wait_for(is_failed)
        job = await manager.get_job(job_id)
    finally:
        await manager.shutdown()

    assert attempts == [1, 2, 3]
    assert retrying == [10, 20]
    assert failed == [(job_id, "boom")]
    assert job.attempts == 3
    assert job.max_attempts == 3
    assert job.failed_reason == "boom"


@pytest.mark.asyncio
async def test_job_retries_option_overrides_queue_policy():
    manager = await _manager(retry_policy=RetryPolicy(max_retries=5, initial_delay=1))
    job_id = await manager.add_job(
        "jobs", JobData(type="t", options=JobOptions(retries=0))
    )
    job = await manager.get_job(job_id)
    await manager.shutdown()
    assert job.max_attempts == 1


@pytest.mark.asyncio
async def test_job_timeout_fails_the_attempt():
    manager = await _manager()

    async def slow(ctx):
        await asyncio.sleep(5)

    manager.register_job_processor("jobs", slow)
    try:
        await manager.start()
        job_id = await manager.add_job(
            "jobs", JobData(type="t", options=JobOptions(timeout=50))
        )

        async def is_failed():
            return (await manager.get_job(job_id)).status is JobState.FAILED

        await _wait_for(is_failed)
        job = await manager.get_job(job_id)
    finally:
        await manager.shutdown()
    assert job.failed_reason == f"Job {job_id} timed out after 50ms"


@pytest.mark.asyncio
async def test_paused_queue_holds_jobs_until_resumed():
    manager = await _manager()
    manager.register_job_processor("jobs", lambda ctx: "done")
    try:
        await manager.pause_queue("jobs")
        await manager.start()
        job_id = await manager.add_job("jobs", JobData(type="t"))
        await asyncio.sleep(0.1)
        assert (await manager.get_job(job_id)).status is JobState.WAITING
        stats = await manager.get_queue_stats("jobs")
        assert stats.paused and stats.waiting == 1

        await manager.resume_queue("jobs")

        async def is_done():
            return (await manager.get_job(job_id)).status is JobState.COMPLETED

        await _wait_for(is_done)
        assert (await manager.get_job(job_id)).result == "done"
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_adding_a_live_job_id_is_idempotent():
    manager = await _manager()
    first = await manager.add_job("jobs", JobData(id="exec:step", type="t"))
    second = await manager.add_job("jobs", JobData(id="exec:step", type="t"))
    waiting = await manager.get_waiting_jobs("jobs")
    await manager.shutdown()
    assert first == second == "exec:step"
    assert len(waiting) == 1


@pytest.mark.asyncio
async def test_remove_and_retry_job():
    manager = await _manager()
    job_id = await manager.add_job("jobs", JobData(type="t"))
    assert await manager.remove_job(job_id)
    assert await manager.get_job(job_id) is None
    assert not await manager.retry_job(job_id)
    await manager.shutdown()


@pytest.mark.asyncio
async def test_clean_queue_removes_finished_jobs_only():
    manager = await _manager()
    manager.register_job_processor("jobs", lambda ctx: None)
    try:
        await manager.start()
        done_id = await manager.add_job("jobs", JobData(type="t"))

        async def is_done():
            return (await manager.get_job(done_id)).status is JobState.COMPLETED

        await _wait_for(is_done)
        await manager.pause_queue("jobs")
        waiting_id = await manager.add_job("jobs", JobData(type="t"))

        assert await manager.clean_queue("jobs", older_than_ms=60_000) == 0
        assert await manager.clean_queue("jobs") == 1
        assert await manager.get_job(done_id) is None
        assert await manager.get_job(waiting_id) is not None
        with pytest.raises(ValueError):
            await manager.clean_queue("jobs", state="waiting")
    finally:
        await manager.shutdown()


@pytest.mark.asyncio
async def test_progress_events_and_system_stats():
    manager = await _manager(concurrency=2)
    progress = []

    async def processor(ctx):
        await ctx.update_progress(50)
        return {"ok": True}

    manager.on_job_progress("jobs", lambda job, value: progress.append(value))
    manager.register_job_processor("jobs", processor)
    try:
        await manager.start()
        await manager.add_bulk_jobs("jobs", [JobData(type="t"), JobData(type="t")])

        async def all_done():
            return len(await manager.get_completed_jobs()) == 2

        await _wait_for(all_done)
        stats = await manager.get_system_stats()
    finally:
        await manager.shutdown()

    assert progress == [50, 50]
    assert stats.total_completed == 2
    assert stats.queues["jobs"].waiting == 0
    assert stats.healthy


@pytest.mark.asyncio
async def test_unknown_queue_raises():
    manager = await _manager()
    with pytest.raises(QueueNotFoundError):
        await manager.add_job("missing", JobData(type="t"))
    with pytest.raises(QueueNotFoundError):
        manager.on_job_completed("missing", lambda *args: None)
    await manager.shutdown()
