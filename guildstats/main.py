"""
Stats Engine Main Application
Wires storage, queues, workers and the scheduler into one process
"""
import asyncio
import os
import signal
import sys
from typing import Any, Dict, Iterable, Optional
import redis.asyncio as aioredis
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from structlog import get_logger

from .cache import TTLCache
from .config import get_config
from .database import DatabaseManager
from .jobs.handlers import AggregationJobHandler, EventJobHandler, MaintenanceJobHandler
from .jobs.scheduler import StatsScheduler
from .jobs.worker import WorkerPool
from .processors import (
    MemberEventsProcessor, MessageEventsProcessor, ReactionEventsProcessor, VoiceEventsProcessor
)
from .queue import QueueRegistry
from .services.aggregation_service import MetricsAggregationService
from .services.dispatcher import QueueDispatcher
from .services.guild_registry import GuildRegistry
from .services.intake_service import EventIntakeService
from .services.query_service import StatsQueryService
from .services.retention_service import RetentionService
from .services.rollup_service import MonthlyRollupService
from .services.voice_sessions import VoiceSessionTracker
from .utils import setup_logging, utcnow, wait_for_database, wait_for_redis

logger = get_logger()


def redis_client(config, db: int) -> aioredis.Redis:
    return aioredis.Redis(
        host=config.REDIS_HOST,
        port=config.REDIS_PORT,
        password=config.REDIS_PASSWORD,
        db=db,
        decode_responses=True
    )


class StatsEngine:
    """
    The engine's object graph

    Transports hand event batches to ``process_batch``; the read side is
    exposed as ``queries``.
    """

    def __init__(self, config, db: DatabaseManager, session_redis: aioredis.Redis,
                 queue_redis: aioredis.Redis, cache_redis: Optional[aioredis.Redis] = None,
                 clock=utcnow):
        self.config = config
        self.db = db
        self.session_redis = session_redis
        self.queue_redis = queue_redis
        self.cache_redis = cache_redis

        self.queues = QueueRegistry(queue_redis, config)
        self.dispatcher = QueueDispatcher(self.queues)
        self.tracker = VoiceSessionTracker(session_redis, ttl_seconds=config.VOICE_SESSION_TTL_SECONDS)
        self.guilds = GuildRegistry(db)

        self.intake = EventIntakeService(db, self.dispatcher, config)
        self.processors = {
            'message': MessageEventsProcessor(db, config),
            'voice': VoiceEventsProcessor(db, self.tracker, config),
            'reaction': ReactionEventsProcessor(db, config),
            'member': MemberEventsProcessor(db, config),
        }
        self.aggregation = MetricsAggregationService(db)
        self.rollup = MonthlyRollupService(db, config)
        self.retention = RetentionService(db, config)

        cache = TTLCache(cache_redis, ttl_seconds=config.DASHBOARD_CACHE_TTL) if cache_redis is not None else None
        self.queries = StatsQueryService(db, cache=cache, config=config, clock=clock)

        self.workers = WorkerPool(job_timeout=config.JOB_TIMEOUT_SECONDS, poll_interval=config.QUEUE_POLL_INTERVAL)
        self.event_jobs = EventJobHandler(self.processors)
        self.workers.add_route(self.queues.events, self.event_jobs, config.WORKER_CONCURRENCY)
        self.workers.add_route(self.queues.aggregation, AggregationJobHandler(self.aggregation), 2)
        self.workers.add_route(
            self.queues.maintenance,
            MaintenanceJobHandler(self.retention, self.rollup, self.tracker, clock=clock),
            1
        )

        self.scheduler = StatsScheduler(self.dispatcher, self.guilds, config, clock=clock)
        self.cron: Optional[AsyncIOScheduler] = None

    @classmethod
    def from_settings(cls, config) -> 'StatsEngine':
        return cls(
            config,
            DatabaseManager.from_settings(config),
            session_redis=redis_client(config, config.REDIS_SESSION_DB),
            queue_redis=redis_client(config, config.REDIS_QUEUE_DB),
            cache_redis=redis_client(config, config.REDIS_CACHE_DB),
        )

    async def process_batch(self, events: Iterable[Any]) -> int:
        """Ingest a batch from a bot process; see EventIntakeService.process_batch"""
        return await self.intake.process_batch(events)

    async def reprocess_parked_events(self, limit: int = 1000) -> int:
        """Apply parked event jobs in grouped batches and clear them from the failed list"""
        return await self.queues.events.drain_failed(self.event_jobs.process_jobs, limit=limit)

    async def health(self) -> Dict[str, Any]:
        """Database reachability and per-queue job counts"""
        queues = {}
        for queue in self.queues:
            queues[queue.name] = await queue.counts()
        return {'database': await self.db.is_database_healthy(), 'queues': queues}

    async def setup(self):
        """Wait for backing stores and create tables"""
        await wait_for_database(self.db.engine)
        await wait_for_redis(self.session_redis)
        await wait_for_redis(self.queue_redis)
        await self.db.create_tables()
        logger.info("Engine setup completed", database=self.db.dialect_name)

    def start(self, with_scheduler: bool = True):
        self.workers.start()
        if with_scheduler:
            self.cron = AsyncIOScheduler(timezone=self.config.SCHEDULER_TIMEZONE)
            self.scheduler.register(self.cron)
            self.cron.start()
            logger.info("APScheduler started with jobs", job_count=len(self.cron.get_jobs()))

    async def close(self):
        """Clean shutdown of scheduler, workers and connections"""
        logger.info("Engine shutting down, performing cleanup")
        if self.cron:
            self.cron.shutdown(wait=False)
            self.cron = None
            logger.info("Scheduler stopped")
        await self.workers.stop()

        clients = {id(c): c for c in (self.session_redis, self.queue_redis, self.cache_redis) if c is not None}
        for client in clients.values():
            await client.aclose()
        await self.db.dispose()
        logger.info("Engine shutdown complete")


async def run_engine(environment: Optional[str] = None):
    """Run workers and scheduler until SIGINT or SIGTERM"""
    config = get_config(environment or os.getenv('STATS_ENV', 'production'))
    setup_logging(config)
    logger.info("Configuration loaded", env=config.STATS_ENV)

    engine = StatsEngine.from_settings(config)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            signal.signal(signum, lambda *_: stop.set())

    try:
        await engine.setup()
        engine.start()
        await stop.wait()
        logger.info("Shutdown signal received")
    finally:
        await engine.close()


def main():
    """Entry point for the engine process"""
    try:
        asyncio.run(run_engine())
    except KeyboardInterrupt:
        logger.info("Engine interrupted by user")
    except Exception as e:
        logger.error("Unexpected error", error=str(e))
        sys.exit(1)


if __name__ == '__main__':
    main()
