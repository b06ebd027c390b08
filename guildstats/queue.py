"""
Job Queue
Redis-backed priority queue with retry, exponential backoff and parking
"""
import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple
import redis.asyncio as aioredis
from redis.exceptions import RedisError
from structlog import get_logger

from .exceptions import EnqueueError, StalledJobError

logger = get_logger()

EVENTS_QUEUE = 'events-processing'
AGGREGATION_QUEUE = 'stats-aggregation'
MAINTENANCE_QUEUE = 'maintenance'

# Waiting score: priority first, then enqueue order
PRIORITY_SCALE = 10 ** 13


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Job:
    id: str
    queue: str
    name: str
    data: Dict[str, Any]
    priority: int = 10
    attempts_made: int = 0
    max_attempts: int = 3
    enqueued_at: int = 0
    sequence: int = 0
    last_error: Optional[str] = None
    history: List[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw) -> 'Job':
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        return cls(**json.loads(raw))


class JobQueue:
    """
    One named queue stored under ``{prefix}:{name}:*``

    Delivery is at least once: a job leaves the queue only through
    ``complete`` or after its last failed attempt, when it is parked on the
    failed list for inspection and manual replay. A reserved job holds a
    lock until ``now + lock_ms``; once that passes without ``complete`` or
    ``fail`` (the worker died or the process restarted) the job is treated
    as a failed attempt and goes through the usual retry path.
    """

    def __init__(self, client: aioredis.Redis, name: str, prefix: str = 'guildstats',
                 attempts: int = 3, backoff_base_ms: int = 1000, backoff_max_ms: int = 60000,
                 keep_completed: int = 100, keep_failed: int = 1000, lock_ms: int = 120000,
                 clock: Callable[[], int] = _now_ms):
        self.client = client
        self.name = name
        self.prefix = prefix
        self.attempts = attempts
        self.backoff_base_ms = backoff_base_ms
        self.backoff_max_ms = backoff_max_ms
        self.keep_completed = keep_completed
        self.keep_failed = keep_failed
        self.lock_ms = lock_ms
        self.clock = clock

    @classmethod
    def from_settings(cls, client: aioredis.Redis, name: str, config, **kwargs) -> 'JobQueue':
        return cls(
            client, name,
            prefix=config.QUEUE_KEY_PREFIX,
            attempts=config.QUEUE_ATTEMPTS,
            backoff_base_ms=config.QUEUE_BACKOFF_BASE_MS,
            backoff_max_ms=config.QUEUE_BACKOFF_MAX_MS,
            keep_completed=config.QUEUE_KEEP_COMPLETED,
            keep_failed=config.QUEUE_KEEP_FAILED,
            lock_ms=int(config.QUEUE_LOCK_SECONDS * 1000),
            **kwargs
        )

    def _key(self, suffix: str) -> str:
        return f'{self.prefix}:{self.name}:{suffix}'

    @property
    def waiting_key(self) -> str:
        return self._key('waiting')

    @property
    def delayed_key(self) -> str:
        return self._key('delayed')

    @property
    def jobs_key(self) -> str:
        return self._key('jobs')

    @property
    def active_key(self) -> str:
        return self._key('active')

    @property
    def completed_key(self) -> str:
        return self._key('completed')

    @property
    def failed_key(self) -> str:
        return self._key('failed')

    @property
    def sequence_key(self) -> str:
        return self._key('sequence')

    def backoff_delay(self, attempts_made: int) -> int:
        """Delay before the next attempt: base, then doubling, capped"""
        delay = self.backoff_base_ms * (2 ** max(attempts_made - 1, 0))
        return min(delay, self.backoff_max_ms)

    @staticmethod
    def score(priority: int, sequence: int) -> int:
        return priority * PRIORITY_SCALE + sequence

    def _build(self, name: str, data: Dict[str, Any], priority: int, job_id: Optional[str]) -> Job:
        return Job(
            id=job_id or uuid.uuid4().hex,
            queue=self.name,
            name=name,
            data=data,
            priority=priority,
            max_attempts=self.attempts,
            enqueued_at=self.clock(),
        )

    async def add(self, name: str, data: Dict[str, Any], priority: int = 10,
                  job_id: Optional[str] = None) -> Optional[str]:
        """
        Enqueue one job

        Args:
            name: Handler name
            data: JSON-serializable payload
            priority: Lower numbers are served first
            job_id: Optional stable id; a job with the same id still queued
                is not added twice

        Returns:
            The job id, or None when a job with the same id already exists
        """
        ids = await self.add_bulk([(name, data, priority, job_id)])
        return ids[0] if ids else None

    async def add_bulk(self, jobs: Iterable[Tuple[str, Dict[str, Any], int, Optional[str]]]) -> List[str]:
        """Enqueue many jobs in one round trip; returns ids actually added"""
        built = [self._build(name, data, priority, job_id) for name, data, priority, job_id in jobs]
        if not built:
            return []

        try:
            # Sequence numbers keep FIFO order within a priority
            last = await self.client.incrby(self.sequence_key, len(built))
            for offset, job in enumerate(built):
                job.sequence = last - len(built) + 1 + offset

            # Reserve ids first so duplicates never reach the waiting set
            async with self.client.pipeline(transaction=True) as pipe:
                for job in built:
                    pipe.hsetnx(self.jobs_key, job.id, job.to_json())
                created = await pipe.execute()

            added = [job for job, ok in zip(built, created) if ok]
            if added:
                await self.client.zadd(
                    self.waiting_key,
                    {job.id: self.score(job.priority, job.sequence) for job in added}
                )
        except RedisError as e:
            logger.error("Failed to enqueue jobs", queue=self.name, jobs=len(built), error=str(e))
            raise EnqueueError(f"enqueue on {self.name} failed: {e}") from e

        skipped = len(built) - len(added)
        if skipped:
            logger.debug("Duplicate jobs skipped", queue=self.name, skipped=skipped)
        return [job.id for job in added]

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose backoff has elapsed back to waiting"""
        now = self.clock()
        due = await self.client.zrangebyscore(self.delayed_key, '-inf', now)
        promoted = 0
        for job_id in due:
            # Another worker may have promoted it already
            if not await self.client.zrem(self.delayed_key, job_id):
                continue
            raw = await self.client.hget(self.jobs_key, job_id)
            if raw is None:
                continue
            job = Job.from_json(raw)
            await self.client.zadd(self.waiting_key, {job.id: self.score(job.priority, job.sequence)})
            promoted += 1
        return promoted

    async def recover_stalled(self) -> int:
        """Fail reserved jobs whose lock expired; returns how many"""
        now = self.clock()
        expired = await self.client.zrangebyscore(self.active_key, '-inf', now)
        recovered = 0
        for job_id in expired:
            # Another worker may have recovered it already
            if not await self.client.zrem(self.active_key, job_id):
                continue
            raw = await self.client.hget(self.jobs_key, job_id)
            if raw is None:
                continue
            job = Job.from_json(raw)
            logger.warning("Stalled job recovered", queue=self.name, job_id=job.id, job_name=job.name)
            await self.fail(job, StalledJobError(f"lock expired after {self.lock_ms}ms"))
            recovered += 1
        return recovered

    async def reserve(self) -> Optional[Job]:
        """Claim the highest priority waiting job, or None when idle"""
        await self.recover_stalled()
        await self.promote_delayed()
        popped = await self.client.zpopmin(self.waiting_key, 1)
        if not popped:
            return None

        job_id = popped[0][0]
        if isinstance(job_id, bytes):
            job_id = job_id.decode('utf-8')
        raw = await self.client.hget(self.jobs_key, job_id)
        if raw is None:
            logger.warning("Waiting job has no body, dropped", queue=self.name, job_id=job_id)
            return None

        await self.client.zadd(self.active_key, {job_id: self.clock() + self.lock_ms})
        return Job.from_json(raw)

    async def complete(self, job: Job):
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hdel(self.jobs_key, job.id)
            pipe.zrem(self.active_key, job.id)
            pipe.lpush(self.completed_key, job.id)
            pipe.ltrim(self.completed_key, 0, self.keep_completed - 1)
            await pipe.execute()

    async def fail(self, job: Job, error: BaseException) -> bool:
        """
        Record a failed attempt

        Returns:
            True when the job was scheduled for another attempt, False when
            it was parked on the failed list
        """
        job.attempts_made += 1
        job.last_error = f'{type(error).__name__}: {error}'
        job.history.append(job.last_error)

        if job.attempts_made < job.max_attempts:
            delay = self.backoff_delay(job.attempts_made)
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self.jobs_key, job.id, job.to_json())
                pipe.zadd(self.delayed_key, {job.id: self.clock() + delay})
                pipe.zrem(self.active_key, job.id)
                await pipe.execute()
            logger.warning(
                "Job failed, retry scheduled",
                queue=self.name,
                job_id=job.id,
                job_name=job.name,
                attempt=job.attempts_made,
                delay_ms=delay,
                error=job.last_error
            )
            return True

        async with self.client.pipeline(transaction=True) as pipe:
            pipe.hdel(self.jobs_key, job.id)
            pipe.zrem(self.active_key, job.id)
            pipe.lpush(self.failed_key, job.to_json())
            pipe.ltrim(self.failed_key, 0, self.keep_failed - 1)
            await pipe.execute()
        logger.error(
            "Job failed permanently, parked",
            queue=self.name,
            job_id=job.id,
            job_name=job.name,
            attempts=job.attempts_made,
            error=job.last_error
        )
        return False

    async def failed_jobs(self, limit: int = 100) -> List[Job]:
        raw = await self.client.lrange(self.failed_key, 0, limit - 1)
        return [Job.from_json(item) for item in raw]

    async def drain_failed(self, apply: Callable[[List[Job]], Awaitable[Any]], limit: int = 1000) -> int:
        """
        Hand the oldest parked jobs to ``apply`` in one call

        The jobs leave the failed list only after ``apply`` returns; if it
        raises they stay parked.

        Returns:
            Number of jobs drained
        """
        raw = await self.client.lrange(self.failed_key, -limit, -1)
        if not raw:
            return 0
        # Newest first on the list; apply oldest first
        raw.reverse()
        await apply([Job.from_json(item) for item in raw])

        async with self.client.pipeline(transaction=True) as pipe:
            for item in raw:
                pipe.lrem(self.failed_key, 1, item)
            await pipe.execute()
        logger.info("Parked jobs drained", queue=self.name, count=len(raw))
        return len(raw)

    async def replay_failed(self, limit: Optional[int] = None) -> int:
        """Re-enqueue parked jobs with a fresh attempt budget"""
        replayed = 0
        while limit is None or replayed < limit:
            raw = await self.client.rpop(self.failed_key)
            if raw is None:
                break
            job = Job.from_json(raw)
            job.attempts_made = 0
            job.max_attempts = self.attempts
            job.enqueued_at = self.clock()
            job.sequence = await self.client.incr(self.sequence_key)
            await self.client.hset(self.jobs_key, job.id, job.to_json())
            await self.client.zadd(self.waiting_key, {job.id: self.score(job.priority, job.sequence)})
            replayed += 1

        if replayed:
            logger.info("Parked jobs replayed", queue=self.name, count=replayed)
        return replayed

    async def counts(self) -> Dict[str, int]:
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.zcard(self.waiting_key)
            pipe.zcard(self.delayed_key)
            pipe.zcard(self.active_key)
            pipe.llen(self.completed_key)
            pipe.llen(self.failed_key)
            waiting, delayed, active, completed, failed = await pipe.execute()
        return {
            'waiting': waiting,
            'delayed': delayed,
            'active': active,
            'completed': completed,
            'failed': failed,
        }


class QueueRegistry:
    """The engine's named queues over one Redis connection"""

    def __init__(self, client: aioredis.Redis, config, clock: Callable[[], int] = _now_ms):
        self.client = client
        self.queues: Dict[str, JobQueue] = {
            name: JobQueue.from_settings(client, name, config, clock=clock)
            for name in (EVENTS_QUEUE, AGGREGATION_QUEUE, MAINTENANCE_QUEUE)
        }

    def __getitem__(self, name: str) -> JobQueue:
        return self.queues[name]

    def __iter__(self):
        return iter(self.queues.values())

    @property
    def events(self) -> JobQueue:
        return self.queues[EVENTS_QUEUE]

    @property
    def aggregation(self) -> JobQueue:
        return self.queues[AGGREGATION_QUEUE]

    @property
    def maintenance(self) -> JobQueue:
        return self.queues[MAINTENANCE_QUEUE]
