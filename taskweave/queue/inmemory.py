"""In-process job store."""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .models import JobRecord, JobState
from .store import JobStore


class InMemoryJobStore(JobStore):
    """Keep jobs in a dict guarded by an ``asyncio.Lock``.

    Useful for tests and single-process deployments. Records are copied on
    the way in and out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    # ------------------------------------------------------------------
    async def insert(self, record: JobRecord) -> JobRecord:
        async with self._lock:
            stored = record.model_copy(deep=True)
            stored.sequence = next(self._sequence)
            self._jobs[stored.id] = stored
            return stored.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[JobRecord]:
        record = self._jobs.get(job_id)
        return record.model_copy(deep=True) if record else None

    async def claim_next(self, queue_name: str, now: datetime) -> Optional[JobRecord]:
        async with self._lock:
            ready = [
                job
                for job in self._jobs.values()
                if job.queue_name == queue_name
                and job.state is JobState.WAITING
                and job.available_at <= now
            ]
            if not ready:
                return None
            job = min(ready, key=lambda j: (j.priority.rank, j.sequence))
            job.state = JobState.ACTIVE
            job.attempts += 1
            job.processed_at = now
            return job.model_copy(deep=True)

    async def update(self, record: JobRecord) -> None:
        async with self._lock:
            self._jobs[record.id] = record.model_copy(deep=True)

    async def list_jobs(
        self,
        queue_name: Optional[str] = None,
        states: Optional[Iterable[JobState]] = None,
    ) -> List[JobRecord]:
        wanted = set(states) if states is not None else None
        jobs = [
            job.model_copy(deep=True)
            for job in self._jobs.values()
            if (queue_name is None or job.queue_name == queue_name)
            and (wanted is None or job.state in wanted)
        ]
        return sorted(jobs, key=lambda j: j.sequence)

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(job_id, None) is not None

    async def count_by_state(self, queue_name: str, now: datetime) -> Dict[str, int]:
        counts = {state.value: 0 for state in JobState}
        counts["delayed"] = 0
        for job in self._jobs.values():
            if job.queue_name != queue_name:
                continue
            if job.is_delayed(now):
                counts["delayed"] += 1
            else:
                counts[job.state.value] += 1
        return counts
