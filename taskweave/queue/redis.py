"""Redis implementation of the job store."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from .models import JobRecord, JobState
from .store import JobStore

# Priority rank dominates the waiting score; the sequence breaks ties.
_RANK_WEIGHT = 10**12


class RedisJobStore(JobStore):
    """Job store backed by Redis sorted sets.

    Each queue keeps a ``waiting`` sorted set scored by priority then
    sequence, a ``delayed`` sorted set scored by due time, and plain sets for
    the other states. ``ZPOPMIN`` on the waiting set is the atomic claim.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "taskweave",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisJobStore")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    # ------------------------------------------------------------------
    # Keys
    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _queue_key(self, queue_name: str, bucket: str) -> str:
        return f"{self.prefix}:queue:{queue_name}:{bucket}"

    @property
    def _queues_key(self) -> str:
        return f"{self.prefix}:queues"

    @property
    def _sequence_key(self) -> str:
        return f"{self.prefix}:sequence"

    @staticmethod
    def _waiting_score(record: JobRecord) -> int:
        return record.priority.rank * _RANK_WEIGHT + record.sequence

    # ------------------------------------------------------------------
    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def ping(self) -> bool:
        try:
            client = await self._client()
            return bool(await client.ping())
        except Exception:
            return False

    def _index(self, pipe: Any, record: JobRecord) -> None:
        """Queue commands placing ``record`` in exactly one state bucket."""
        q = record.queue_name
        pipe.zrem(self._queue_key(q, "waiting"), record.id)
        pipe.zrem(self._queue_key(q, "delayed"), record.id)
        for state in (JobState.ACTIVE, JobState.COMPLETED, JobState.FAILED):
            pipe.srem(self._queue_key(q, state.value), record.id)

        if record.state is JobState.WAITING:
            pipe.zadd(
                self._queue_key(q, "delayed"),
                {record.id: record.available_at.timestamp()},
            )
        else:
            pipe.sadd(self._queue_key(q, record.state.value), record.id)

    # ------------------------------------------------------------------
    async def insert(self, record: JobRecord) -> JobRecord:
        client = await self._client()
        sequence = await client.incr(self._sequence_key)
        stored = record.model_copy(update={"sequence": sequence})
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(stored.id), stored.model_dump_json())
            pipe.sadd(self._queues_key, stored.queue_name)
            self._index(pipe, stored)
            await pipe.execute()
        return stored

    async def get(self, job_id: str) -> Optional[JobRecord]:
        client = await self._client()
        raw = await client.get(self._job_key(job_id))
        return JobRecord.model_validate_json(raw) if raw else None

    async def _promote_due(self, queue_name: str, now: datetime) -> None:
        client = await self._client()
        delayed_key = self._queue_key(queue_name, "delayed")
        due = await client.zrangebyscore(delayed_key, "-inf", now.timestamp())
        for job_id in due:
            # only the caller that removes the id moves it to waiting
            if not await client.zrem(delayed_key, job_id):
                continue
            record = await self.get(job_id)
            if record is None or record.state is not JobState.WAITING:
                continue
            await client.zadd(
                self._queue_key(queue_name, "waiting"),
                {job_id: self._waiting_score(record)},
            )

    async def claim_next(self, queue_name: str, now: datetime) -> Optional[JobRecord]:
        client = await self._client()
        await self._promote_due(queue_name, now)
        popped = await client.zpopmin(self._queue_key(queue_name, "waiting"))
        if not popped:
            return None
        job_id, _score = popped[0]
        record = await self.get(job_id)
        if record is None:
            return None
        record.state = JobState.ACTIVE
        record.attempts += 1
        record.processed_at = now
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(record.id), record.model_dump_json())
            pipe.sadd(self._queue_key(queue_name, JobState.ACTIVE.value), record.id)
            await pipe.execute()
        return record

    async def update(self, record: JobRecord) -> None:
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(record.id), record.model_dump_json())
            self._index(pipe, record)
            await pipe.execute()

    async def list_jobs(
        self,
        queue_name: Optional[str] = None,
        states: Optional[Iterable[JobState]] = None,
    ) -> List[JobRecord]:
        client = await self._client()
        queues = [queue_name] if queue_name else sorted(await client.smembers(self._queues_key))
        wanted = [JobState(s) for s in states] if states is not None else list(JobState)

        ids: List[str] = []
        for q in queues:
            for state in wanted:
                if state is JobState.WAITING:
                    ids.extend(await client.zrange(self._queue_key(q, "waiting"), 0, -1))
                    ids.extend(await client.zrange(self._queue_key(q, "delayed"), 0, -1))
                else:
                    ids.extend(await client.smembers(self._queue_key(q, state.value)))
        if not ids:
            return []
        raws = await client.mget([self._job_key(i) for i in ids])
        records = [JobRecord.model_validate_json(raw) for raw in raws if raw]
        return sorted(records, key=lambda r: r.sequence)

    async def delete(self, job_id: str) -> bool:
        record = await self.get(job_id)
        if record is None:
            return False
        client = await self._client()
        q = record.queue_name
        async with client.pipeline(transaction=True) as pipe:
            pipe.zrem(self._queue_key(q, "waiting"), job_id)
            pipe.zrem(self._queue_key(q, "delayed"), job_id)
            for state in (JobState.ACTIVE, JobState.COMPLETED, JobState.FAILED):
                pipe.srem(self._queue_key(q, state.value), job_id)
            pipe.delete(self._job_key(job_id))
            await pipe.execute()
        return True

    async def count_by_state(self, queue_name: str, now: datetime) -> Dict[str, int]:
        client = await self._client()
        delayed_key = self._queue_key(queue_name, "delayed")
        due = await client.zcount(delayed_key, "-inf", now.timestamp())
        delayed = await client.zcard(delayed_key) - due
        counts = {
            JobState.WAITING.value: await client.zcard(self._queue_key(queue_name, "waiting")) + due,
            "delayed": delayed,
        }
        for state in (JobState.ACTIVE, JobState.COMPLETED, JobState.FAILED):
            counts[state.value] = await client.scard(self._queue_key(queue_name, state.value))
        return counts
