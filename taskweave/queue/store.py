"""Interface every job store implements."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol

from .models import JobRecord, JobState


class JobStore(Protocol):
    """Durable backing store for queued jobs.

    ``claim_next`` must be atomic: a waiting job is handed to at most one
    caller, which then owns it until it writes the job back with ``update``.
    Jobs are claimed by priority rank, then by insertion sequence, skipping
    jobs whose ``available_at`` lies in the future.
    """

    async def connect(self) -> None:
        ...

    async def close(self) -> None:
        ...

    async def ping(self) -> bool:
        ...

    async def insert(self, record: JobRecord) -> JobRecord:
        """Store a new job and assign its sequence number."""

    async def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    async def claim_next(self, queue_name: str, now: datetime) -> Optional[JobRecord]:
        """Move the next ready job of ``queue_name`` to ``active``."""

    async def update(self, record: JobRecord) -> None:
        ...

    async def list_jobs(
        self,
        queue_name: Optional[str] = None,
        states: Optional[Iterable[JobState]] = None,
    ) -> List[JobRecord]:
        """Return matching jobs ordered by sequence."""

    async def delete(self, job_id: str) -> bool:
        ...

    async def count_by_state(self, queue_name: str, now: datetime) -> Dict[str, int]:
        """Counts keyed by state name plus ``delayed`` for future waiting jobs.

        Delayed jobs are not included in ``waiting``.
        """
