"""Named job queues with priority, retries and bounded concurrency."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Union

from ..contracts import Priority, utcnow
from ..errors import JobTimeoutError, QueueNotFoundError
from ..events import EventBus, Subscription
from .inmemory import InMemoryJobStore
from .models import (
    JobData,
    JobRecord,
    JobState,
    JobStatus,
    QueueConfig,
    QueueStats,
    SystemStats,
)
from .store import JobStore

logger = logging.getLogger(__name__)

JobProcessor = Callable[["JobContext"], Union[Any, Awaitable[Any]]]

ALL_QUEUES = "*"


@dataclass
class JobContext:
    """What a processor receives for one attempt of one job."""

    job: JobStatus
    manager: "QueueManager" = field(repr=False)

    @property
    def id(self) -> str:
        return self.job.id

    @property
    def type(self) -> str:
        return self.job.type

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload

    @property
    def attempt(self) -> int:
        return self.job.attempts

    async def update_progress(self, progress: int) -> None:
        await self.manager._update_progress(self.job.id, progress)


class QueueManager:
    """Run jobs from named queues on per-queue pools of asyncio workers.

    The manager is the only writer of job records. Each queue gets
    ``concurrency`` worker tasks which claim jobs from the store, hand them
    to the queue's processor and record the outcome. Failed attempts are
    retried with the job's retry policy until its attempts are used up.
    """

    def __init__(self, store: Optional[JobStore] = None, *, poll_interval: float = 0.05) -> None:
        self.store: JobStore = store or InMemoryJobStore()
        self.poll_interval = poll_interval
        self.events = EventBus("queue")
        self._queues: Dict[str, QueueConfig] = {}
        self._processors: Dict[str, JobProcessor] = {}
        self._paused: Set[str] = set()
        self._wakeups: Dict[str, asyncio.Event] = {}
        self._workers: Dict[str, List[asyncio.Task]] = {}
        self._active: Dict[str, JobRecord] = {}
        self._timers: Set[asyncio.TimerHandle] = set()
        self._initialized = False
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.store.connect()
        self._initialized = True
        logger.info("Queue manager initialized")

    async def start(self) -> None:
        await self.initialize()
        if self._running:
            return
        self._running = True
        for name in self._queues:
            self._spawn_workers(name)
        logger.info(f"Queue manager started with queues: {sorted(self._queues)}")

    async def shutdown(self, timeout: float = 10.0) -> None:
        """Stop workers, letting active jobs finish within ``timeout`` seconds."""
        if not self._initialized:
            return
        self._running = False
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        for wakeup in self._wakeups.values():
            wakeup.set()

        tasks = [task for tasks in self._workers.values() for task in tasks]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
            if pending:
                logger.warning("Shutdown timeout, cancelling workers")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
        self._workers.clear()
        await self.events.drain()
        await self.store.close()
        self._initialized = False
        logger.info("Queue manager stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def is_healthy(self) -> bool:
        if not self._initialized:
            return False
        return await self.store.ping()

    # ------------------------------------------------------------------
    # Queues and processors
    def create_queue(self, config: Union[QueueConfig, str]) -> QueueConfig:
        if isinstance(config, str):
            config = QueueConfig(name=config)
        existing = self._queues.get(config.name)
        if existing is not None:
            return existing
        self._queues[config.name] = config
        self._wakeups[config.name] = asyncio.Event()
        if self._running:
            self._spawn_workers(config.name)
        logger.debug(f"Created queue {config.name} (concurrency={config.concurrency})")
        return config

    def has_queue(self, name: str) -> bool:
        return name in self._queues

    @property
    def queue_names(self) -> List[str]:
        return list(self._queues)

    def get_queue_config(self, name: str) -> QueueConfig:
        return self._require_queue(name)

    def register_job_processor(self, queue_name: str, processor: JobProcessor) -> None:
        self._require_queue(queue_name)
        self._processors[queue_name] = processor
        self._wake(queue_name)

    def _require_queue(self, name: str) -> QueueConfig:
        try:
            return self._queues[name]
        except KeyError:
            raise QueueNotFoundError(name) from None

    # ------------------------------------------------------------------
    # Jobs
    async def add_job(
        self,
        queue_name: str,
        data: Union[JobData, Mapping[str, Any]],
        priority: Union[Priority, str, None] = None,
    ) -> str:
        """Enqueue a job and return its id.

        Adding an id that is still waiting or active returns that id without
        creating a second job. A finished job with the same id is replaced.
        """
        config = self._require_queue(queue_name)
        if not isinstance(data, JobData):
            data = JobData.model_validate(data)

        existing = await self.store.get(data.id)
        if existing is not None:
            if not existing.state.is_terminal:
                return existing.id
            await self.store.delete(existing.id)

        options = data.options
        policy = options.retry_policy or config.retry_policy
        if options.retries is not None:
            policy = policy.model_copy(update={"max_retries": options.retries})

        record = JobRecord(
            id=data.id,
            queue_name=queue_name,
            type=data.type,
            payload=data.payload,
            priority=Priority.parse(priority) if priority is not None else options.priority,
            max_attempts=policy.max_retries + 1,
            retry_policy=policy,
            timeout=options.timeout or config.default_timeout,
            created_at=data.created_at,
            available_at=utcnow(),
        )
        stored = await self.store.insert(record)
        self._wake(queue_name)
        logger.debug(f"Added job {stored.id} ({stored.type}) to {queue_name} [{stored.priority.value}]")
        return stored.id

    async def add_bulk_jobs(
        self,
        queue_name: str,
        items: Iterable[Union[JobData, Mapping[str, Any]]],
    ) -> List[str]:
        return [await self.add_job(queue_name, item) for item in items]

    async def get_job(self, job_id: str) -> Optional[JobStatus]:
        record = await self.store.get(job_id)
        return record.to_status() if record else None

    async def remove_job(self, job_id: str) -> bool:
        """Remove a job that is not currently being processed."""
        record = await self.store.get(job_id)
        if record is None or record.state is JobState.ACTIVE:
            return False
        return await self.store.delete(job_id)

    async def retry_job(self, job_id: str) -> bool:
        """Re-queue a permanently failed job with a fresh attempt budget."""
        record = await self.store.get(job_id)
        if record is None or record.state is not JobState.FAILED:
            return False
        record.state = JobState.WAITING
        record.attempts = 0
        record.failed_reason = None
        record.finished_at = None
        record.processed_at = None
        record.available_at = utcnow()
        await self.store.update(record)
        self._wake(record.queue_name)
        logger.info(f"Job {job_id} re-queued on {record.queue_name}")
        return True

    # ------------------------------------------------------------------
    # Pause / resume
    async def pause_queue(self, name: str) -> None:
        self._require_queue(name)
        self._paused.add(name)
        logger.info(f"Queue {name} paused")

    async def resume_queue(self, name: str) -> None:
        self._require_queue(name)
        self._paused.discard(name)
        self._wake(name)
        logger.info(f"Queue {name} resumed")

    async def pause_all_queues(self) -> None:
        for name in self._queues:
            await self.pause_queue(name)

    async def resume_all_queues(self) -> None:
        for name in self._queues:
            await self.resume_queue(name)

    def is_paused(self, name: str) -> bool:
        return name in self._paused

    # ------------------------------------------------------------------
    # Maintenance and stats
    async def clean_queue(
        self,
        name: str,
        older_than_ms: int = 0,
        state: Union[JobState, str, None] = None,
    ) -> int:
        """Delete finished jobs that finished at least ``older_than_ms`` ago."""
        self._require_queue(name)
        if state is None:
            states = [JobState.COMPLETED, JobState.FAILED]
        else:
            state = JobState(state)
            if not state.is_terminal:
                raise ValueError(f"Only completed or failed jobs can be cleaned, got {state.value}")
            states = [state]

        cutoff = utcnow() - timedelta(milliseconds=older_than_ms)
        removed = 0
        for record in await self.store.list_jobs(name, states):
            finished = record.finished_at or record.created_at
            if finished <= cutoff and await self.store.delete(record.id):
                removed += 1
        if removed:
            logger.info(f"Cleaned {removed} jobs from {name}")
        return removed

    async def get_queue_stats(self, name: str) -> QueueStats:
        self._require_queue(name)
        counts = await self.store.count_by_state(name, utcnow())
        return QueueStats(name=name, paused=name in self._paused, **counts)

    async def get_system_stats(self) -> SystemStats:
        stats = SystemStats(healthy=await self.is_healthy())
        for name in self._queues:
            queue_stats = await self.get_queue_stats(name)
            stats.queues[name] = queue_stats
            stats.total_waiting += queue_stats.waiting + queue_stats.delayed
            stats.total_active += queue_stats.active
            stats.total_completed += queue_stats.completed
            stats.total_failed += queue_stats.failed
        return stats

    async def _jobs_in_state(self, state: JobState, queue_name: Optional[str]) -> List[JobStatus]:
        if queue_name is not None:
            self._require_queue(queue_name)
        return [r.to_status() for r in await self.store.list_jobs(queue_name, [state])]

    async def get_waiting_jobs(self, queue_name: Optional[str] = None) -> List[JobStatus]:
        return await self._jobs_in_state(JobState.WAITING, queue_name)

    async def get_active_jobs(self, queue_name: Optional[str] = None) -> List[JobStatus]:
        return await self._jobs_in_state(JobState.ACTIVE, queue_name)

    async def get_failed_jobs(self, queue_name: Optional[str] = None) -> List[JobStatus]:
        return await self._jobs_in_state(JobState.FAILED, queue_name)

    async def get_completed_jobs(self, queue_name: Optional[str] = None) -> List[JobStatus]:
        return await self._jobs_in_state(JobState.COMPLETED, queue_name)

    # ------------------------------------------------------------------
    # Events
    def _subscribe(self, event: str, queue_name: Optional[str], callback: Callable[..., Any]) -> Subscription:
        if queue_name is not None:
            self._require_queue(queue_name)
        return self.events.subscribe(f"{queue_name or ALL_QUEUES}:{event}", callback)

    def _emit(self, event: str, queue_name: str, *args: Any) -> None:
        self.events.publish(f"{queue_name}:{event}", *args)
        self.events.publish(f"{ALL_QUEUES}:{event}", *args)

    def on_job_progress(self, queue_name: Optional[str], callback: Callable[..., Any]) -> Subscription:
        """``callback(job, progress)``; ``queue_name=None`` listens to every queue."""
        return self._subscribe("progress", queue_name, callback)

    def on_job_completed(self, queue_name: Optional[str], callback: Callable[..., Any]) -> Subscription:
        """``callback(job, result)``."""
        return self._subscribe("completed", queue_name, callback)

    def on_job_failed(self, queue_name: Optional[str], callback: Callable[..., Any]) -> Subscription:
        """``callback(job, reason)``, fired once retries are exhausted."""
        return self._subscribe("failed", queue_name, callback)

    def on_job_retrying(self, queue_name: Optional[str], callback: Callable[..., Any]) -> Subscription:
        """``callback(job, reason, delay_ms)`` for every failed attempt that will be retried."""
        return self._subscribe("retrying", queue_name, callback)

    # ------------------------------------------------------------------
    # Workers
    def _wake(self, queue_name: str) -> None:
        wakeup = self._wakeups.get(queue_name)
        if wakeup is not None:
            wakeup.set()

    def _wake_later(self, queue_name: str, delay_ms: int) -> None:
        if not self._running:
            return
        loop = asyncio.get_running_loop()
        timer: asyncio.TimerHandle

        def fire() -> None:
            self._timers.discard(timer)
            self._wake(queue_name)

        timer = loop.call_later(delay_ms / 1000, fire)
        self._timers.add(timer)

    def _spawn_workers(self, queue_name: str) -> None:
        config = self._queues[queue_name]
        self._workers[queue_name] = [
            asyncio.create_task(
                self._worker_loop(queue_name),
                name=f"taskweave-worker-{queue_name}-{slot}",
            )
            for slot in range(config.concurrency)
        ]

    async def _idle(self, queue_name: str) -> None:
        wakeup = self._wakeups[queue_name]
        try:
            await asyncio.wait_for(wakeup.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
        wakeup.clear()

    async def _worker_loop(self, queue_name: str) -> None:
        while self._running:
            try:
                if queue_name in self._paused or queue_name not in self._processors:
                    await self._idle(queue_name)
                    continue
                record = await self.store.claim_next(queue_name, utcnow())
                if record is None:
                    await self._idle(queue_name)
                    continue
                if queue_name in self._paused or not self._running:
                    await self._release(record)
                    continue
                await self._process(record)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Worker loop error on {queue_name}")
                await asyncio.sleep(self.poll_interval)

    async def _release(self, record: JobRecord) -> None:
        """Give a claimed but unstarted job back to the queue."""
        record.state = JobState.WAITING
        record.attempts = max(0, record.attempts - 1)
        record.processed_at = None
        await self.store.update(record)

    async def _run_processor(self, processor: JobProcessor, context: JobContext) -> Any:
        result = processor(context)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _process(self, record: JobRecord) -> None:
        processor = self._processors[record.queue_name]
        context = JobContext(job=record.to_status(), manager=self)
        self._active[record.id] = record
        logger.debug(f"Processing job {record.id} attempt {record.attempts}/{record.max_attempts}")
        try:
            coro = self._run_processor(processor, context)
            if record.timeout:
                result = await asyncio.wait_for(coro, timeout=record.timeout / 1000)
            else:
                result = await coro
        except asyncio.CancelledError:
            await self._release(record)
            raise
        except asyncio.TimeoutError:
            await self._handle_failure(record, JobTimeoutError(record.id, record.timeout or 0))
        except Exception as exc:
            await self._handle_failure(record, exc)
        else:
            await self._handle_success(record, result)
        finally:
            self._active.pop(record.id, None)

    async def _handle_success(self, record: JobRecord, result: Any) -> None:
        record.state = JobState.COMPLETED
        record.result = result
        record.progress = 100
        record.failed_reason = None
        record.finished_at = utcnow()
        await self.store.update(record)
        logger.debug(f"Job {record.id} completed")
        self._emit("completed", record.queue_name, record.to_status(), result)

    async def _handle_failure(self, record: JobRecord, error: BaseException) -> None:
        reason = str(error) or error.__class__.__name__
        record.failed_reason = reason
        if record.attempts < record.max_attempts:
            delay = record.retry_policy.compute_delay(record.attempts)
            record.state = JobState.WAITING
            record.available_at = utcnow() + timedelta(milliseconds=delay)
            await self.store.update(record)
            logger.warning(
                f"Job {record.id} failed attempt {record.attempts}/{record.max_attempts}: "
                f"{reason}; retrying in {delay}ms"
            )
            self._emit("retrying", record.queue_name, record.to_status(), reason, delay)
            self._wake_later(record.queue_name, delay)
            return

        record.state = JobState.FAILED
        record.finished_at = utcnow()
        await self.store.update(record)
        logger.error(f"Job {record.id} failed permanently after {record.attempts} attempts: {reason}")
        self._emit("failed", record.queue_name, record.to_status(), reason)

    async def _update_progress(self, job_id: str, progress: int) -> None:
        record = self._active.get(job_id)
        if record is None:
            return
        record.progress = max(0, min(100, int(progress)))
        await self.store.update(record)
        self._emit("progress", record.queue_name, record.to_status(), record.progress)
