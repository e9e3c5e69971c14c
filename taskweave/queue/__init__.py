"""Job queue layer: stores, models and the queue manager."""

from __future__ import annotations

import os
from typing import List, Optional

from ..config import TaskweaveConfig, load_config
from ..constants import DEFAULT_CONCURRENCY
from ..contracts import QueueName, RetryPolicy
from .inmemory import InMemoryJobStore
from .manager import JobContext, JobProcessor, QueueManager
from .models import (
    JobData,
    JobOptions,
    JobRecord,
    JobState,
    JobStatus,
    QueueConfig,
    QueueStats,
    SystemStats,
)
from .sqlite import SQLiteJobStore
from .store import JobStore


def get_job_store(
    backend: Optional[str] = None, config: Optional[TaskweaveConfig] = None
) -> JobStore:
    """Factory function to get the configured job store."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("TASKWEAVE_QUEUE_BACKEND")
        or config.queue.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryJobStore()
    elif backend == "sqlite":
        return SQLiteJobStore(config.queue.sqlite_path)
    elif backend == "redis":
        from .redis import RedisJobStore

        redis_conf = config.queue.redis
        return RedisJobStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            prefix=redis_conf.prefix,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


def default_queue_configs(
    concurrency: int = DEFAULT_CONCURRENCY,
    retry_policy: Optional[RetryPolicy] = None,
) -> List[QueueConfig]:
    """The five well-known queues, sized from a base ``concurrency``."""
    policy = retry_policy or RetryPolicy()

    def with_retries(retries: int) -> RetryPolicy:
        return policy.model_copy(update={"max_retries": retries})

    return [
        QueueConfig(
            name=QueueName.DOCUMENT_PROCESSING.value,
            concurrency=concurrency,
            retry_policy=policy,
        ),
        QueueConfig(
            name=QueueName.AI_ANALYSIS.value,
            concurrency=max(1, concurrency // 2),
            retry_policy=with_retries(2),
        ),
        QueueConfig(
            name=QueueName.WORKFLOW_EXECUTION.value,
            concurrency=concurrency,
            retry_policy=policy,
        ),
        QueueConfig(
            name=QueueName.FILE_OPERATIONS.value,
            concurrency=concurrency * 2,
            retry_policy=with_retries(5),
        ),
        QueueConfig(
            name=QueueName.NOTIFICATIONS.value,
            concurrency=concurrency,
            retry_policy=with_retries(2),
        ),
    ]


async def create_queue_manager(
    config: Optional[TaskweaveConfig] = None,
    store: Optional[JobStore] = None,
) -> QueueManager:
    """Build an initialized queue manager with the default queues created."""
    config = config or load_config()
    manager = QueueManager(
        store or get_job_store(config=config),
        poll_interval=config.queue.poll_interval,
    )
    await manager.initialize()
    for queue_config in default_queue_configs(
        config.queue.concurrency, config.engine.retry_policy
    ):
        manager.create_queue(queue_config)
    return manager


__all__ = [
    "InMemoryJobStore",
    "JobContext",
    "JobData",
    "JobOptions",
    "JobProcessor",
    "JobRecord",
    "JobState",
    "JobStatus",
    "JobStore",
    "QueueConfig",
    "QueueManager",
    "QueueStats",
    "SQLiteJobStore",
    "SystemStats",
    "create_queue_manager",
    "default_queue_configs",
    "get_job_store",
]
