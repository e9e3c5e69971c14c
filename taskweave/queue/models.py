"""Job and queue models shared by the queue manager and its stores."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from ..constants import DEFAULT_CONCURRENCY
from ..contracts import CamelModel, Priority, RetryPolicy, utcnow


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class JobOptions(CamelModel):
    """Per-job options. ``timeout`` is in milliseconds.

    ``retries`` overrides ``retry_policy.max_retries``; when both are unset
    the owning queue's policy applies.
    """

    priority: Priority = Priority.MEDIUM
    retries: Optional[int] = Field(default=None, ge=0)
    timeout: Optional[int] = Field(default=None, ge=1)
    retry_policy: Optional[RetryPolicy] = None

    @field_validator("priority", mode="before")
    @classmethod
    def _parse_priority(cls, value: Any) -> Priority:
        return Priority.parse(value)


class JobData(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    options: JobOptions = Field(default_factory=JobOptions)
    created_at: datetime = Field(default_factory=utcnow)


class JobStatus(CamelModel):
    """Read-only view of a job handed out by the queue manager."""

    id: str
    queue_name: str
    type: str
    status: JobState
    priority: Priority
    payload: Dict[str, Any] = Field(default_factory=dict)
    failed_reason: Optional[str] = None
    attempts: int = 0
    max_attempts: int = 1
    progress: int = 0
    result: Any = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class JobRecord(BaseModel):
    """Stored state of a job. Only the queue manager writes these."""

    id: str
    queue_name: str
    type: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    priority: Priority = Priority.MEDIUM
    state: JobState = JobState.WAITING
    sequence: int = 0
    attempts: int = 0
    max_attempts: int = 1
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    timeout: Optional[int] = None
    progress: int = 0
    result: Any = None
    failed_reason: Optional[str] = None
    available_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def is_delayed(self, now: datetime) -> bool:
        return self.state is JobState.WAITING and self.available_at > now

    def to_status(self) -> JobStatus:
        return JobStatus(
            id=self.id,
            queue_name=self.queue_name,
            type=self.type,
            status=self.state,
            priority=self.priority,
            payload=dict(self.payload),
            failed_reason=self.failed_reason,
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            progress=self.progress,
            result=self.result,
            created_at=self.created_at,
            processed_at=self.processed_at,
            finished_at=self.finished_at,
        )


class QueueConfig(CamelModel):
    name: str
    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    default_timeout: Optional[int] = Field(default=None, ge=1)


class QueueStats(CamelModel):
    name: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False


class SystemStats(CamelModel):
    queues: Dict[str, QueueStats] = Field(default_factory=dict)
    total_waiting: int = 0
    total_active: int = 0
    total_completed: int = 0
    total_failed: int = 0
    healthy: bool = True
