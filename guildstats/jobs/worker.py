"""
Worker Pool
Bounded-concurrency consumers for the job queues
"""
import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional
from redis.exceptions import RedisError
from structlog import get_logger

from ..queue import Job, JobQueue

logger = get_logger()

Handler = Callable[[Job], Awaitable[Any]]


@dataclass
class Route:
    queue: JobQueue
    handler: Handler
    concurrency: int = 1


class WorkerPool:
    """
    Runs each route's handler against its queue with N concurrent workers

    A job that raises, or runs past the job timeout, is reported to its
    queue as failed; the queue decides between retry and parking.
    """

    def __init__(self, job_timeout: float = 60.0, poll_interval: float = 0.5):
        self.job_timeout = job_timeout
        self.poll_interval = poll_interval
        self.routes: List[Route] = []
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    def add_route(self, queue: JobQueue, handler: Handler, concurrency: int = 1):
        self.routes.append(Route(queue=queue, handler=handler, concurrency=max(1, concurrency)))

    async def run_job(self, route: Route, job: Job) -> bool:
        """Execute one reserved job; True when it completed"""
        try:
            await asyncio.wait_for(route.handler(job), timeout=self.job_timeout)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if isinstance(e, asyncio.TimeoutError):
                e = TimeoutError(f"job exceeded {self.job_timeout}s")
            logger.warning(
                "Job attempt failed",
                queue=route.queue.name,
                job_id=job.id,
                job_name=job.name,
                error=str(e) or type(e).__name__
            )
            await route.queue.fail(job, e)
            return False

        await route.queue.complete(job)
        return True

    async def run_once(self, route: Route) -> Optional[bool]:
        """Reserve and run one job; None when the queue is idle"""
        job = await route.queue.reserve()
        if job is None:
            return None
        return await self.run_job(route, job)

    async def _worker(self, route: Route, index: int):
        logger.debug("Worker started", queue=route.queue.name, worker=index)
        while not self._stopping.is_set():
            try:
                outcome = await self.run_once(route)
            except RedisError as e:
                logger.error("Queue unavailable, backing off", queue=route.queue.name, error=str(e))
                outcome = None
            if outcome is None:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
        logger.debug("Worker stopped", queue=route.queue.name, worker=index)

    def start(self):
        self._stopping.clear()
        for route in self.routes:
            for index in range(route.concurrency):
                self._tasks.append(asyncio.create_task(self._worker(route, index)))
        logger.info(
            "Worker pool started",
            queues=[route.queue.name for route in self.routes],
            workers=len(self._tasks)
        )

    async def stop(self):
        """Let in-flight jobs finish, then stop polling"""
        self._stopping.set()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def drain(self, max_jobs: int = 10000) -> int:
        """
        Run ready jobs inline until every queue is idle

        Jobs waiting out a retry backoff are left for later.

        Returns:
            Number of job attempts made
        """
        attempts = 0
        while attempts < max_jobs:
            progressed = False
            for route in self.routes:
                outcome = await self.run_once(route)
                if outcome is not None:
                    attempts += 1
                    progressed = True
            if not progressed:
                break
        return attempts
