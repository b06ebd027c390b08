"""
Stats Scheduler
Wall-clock triggers that enqueue aggregation and maintenance jobs
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from ..config import settings
from ..exceptions import StatsEngineError
from ..services.dispatcher import QueueDispatcher
from ..services.guild_registry import GuildRegistry
from ..utils import (
    floor_to_hour, floor_to_minute, local_date, local_day_bounds, previous_month, utcnow
)
from .handlers import CLEANUP_DAILY_STATS, CLEANUP_RAW_EVENTS, MONTHLY_ROLLUP, SWEEP_VOICE_SESSIONS

logger = get_logger()

AGGREGATE_5MIN = 'aggregate-5min'
AGGREGATE_HOURLY = 'aggregate-hourly'
AGGREGATE_DAILY = 'aggregate-daily'


class StatsScheduler:
    """
    Trigger methods take the firing time explicitly so they can be driven
    from tests; ``register`` binds them to cron expressions on an
    APScheduler instance.
    """

    def __init__(self, dispatcher: QueueDispatcher, registry: GuildRegistry, config=None,
                 clock: Callable[[], datetime] = utcnow):
        self.dispatcher = dispatcher
        self.registry = registry
        self.config = config or settings
        self.clock = clock

    async def _fan_out(self, job_name: str, start: datetime, end: datetime, period_type: str) -> Dict[str, int]:
        """Enqueue one aggregation job per active guild; a failing guild is skipped"""
        try:
            guild_ids = await self.registry.active_guild_ids()
        except SQLAlchemyError as e:
            logger.error("Could not list active guilds", job_name=job_name, error=str(e))
            return {'enqueued': 0, 'failed': 0}

        enqueued = 0
        failed = 0
        for guild_id in guild_ids:
            try:
                await self.dispatcher.dispatch_aggregation(job_name, guild_id, start, end, period_type)
                enqueued += 1
            except StatsEngineError as e:
                failed += 1
                logger.error("Aggregation trigger failed for guild", job_name=job_name, guild_id=guild_id, error=str(e))

        logger.info(
            "Aggregation jobs enqueued",
            job_name=job_name,
            start=start.isoformat(),
            end=end.isoformat(),
            enqueued=enqueued,
            failed=failed
        )
        return {'enqueued': enqueued, 'failed': failed}

    async def _maintenance(self, job_name: str, run_key: str, data: Optional[dict] = None) -> Optional[str]:
        try:
            return await self.dispatcher.dispatch_maintenance(job_name, data, run_key=run_key)
        except StatsEngineError as e:
            logger.error("Maintenance trigger failed", job_name=job_name, error=str(e))
            return None

    @staticmethod
    def five_minute_window(now: datetime) -> Tuple[datetime, datetime]:
        end = floor_to_minute(now)
        return end - timedelta(minutes=5), end

    @staticmethod
    def hourly_window(now: datetime) -> Tuple[datetime, datetime]:
        end = floor_to_hour(now)
        return end - timedelta(hours=1), end

    def daily_window(self, now: datetime) -> Tuple[datetime, datetime]:
        """Bounds of the local calendar day before the one containing now"""
        yesterday = local_date(now, self.config.STATS_TIMEZONE) - timedelta(days=1)
        return local_day_bounds(yesterday, self.config.STATS_TIMEZONE)

    async def trigger_5min(self, now: Optional[datetime] = None):
        start, end = self.five_minute_window(now or self.clock())
        return await self._fan_out(AGGREGATE_5MIN, start, end, '5min')

    async def trigger_hourly(self, now: Optional[datetime] = None):
        start, end = self.hourly_window(now or self.clock())
        return await self._fan_out(AGGREGATE_HOURLY, start, end, 'hourly')

    async def trigger_daily(self, now: Optional[datetime] = None):
        start, end = self.daily_window(now or self.clock())
        return await self._fan_out(AGGREGATE_DAILY, start, end, 'daily')

    async def trigger_cleanup_raw(self, now: Optional[datetime] = None):
        now = now or self.clock()
        return await self._maintenance(CLEANUP_RAW_EVENTS, now.date().isoformat())

    async def trigger_cleanup_daily(self, now: Optional[datetime] = None):
        now = now or self.clock()
        return await self._maintenance(CLEANUP_DAILY_STATS, now.date().isoformat())

    async def trigger_monthly_rollup(self, now: Optional[datetime] = None):
        """Compact the month before the one containing now"""
        month = previous_month(local_date(now or self.clock(), self.config.STATS_TIMEZONE))
        return await self._maintenance(MONTHLY_ROLLUP, month.isoformat(), {'month': month.isoformat()})

    async def trigger_sweep_voice_sessions(self, now: Optional[datetime] = None):
        now = now or self.clock()
        return await self._maintenance(SWEEP_VOICE_SESSIONS, floor_to_hour(now).isoformat())

    def cron_jobs(self) -> List[Tuple[str, str, Callable]]:
        return [
            ('aggregate_5min', self.config.CRON_AGGREGATE_5MIN, self.trigger_5min),
            ('aggregate_hourly', self.config.CRON_AGGREGATE_HOURLY, self.trigger_hourly),
            ('aggregate_daily', self.config.CRON_AGGREGATE_DAILY, self.trigger_daily),
            ('cleanup_raw_events', self.config.CRON_CLEANUP_RAW_EVENTS, self.trigger_cleanup_raw),
            ('cleanup_daily_stats', self.config.CRON_CLEANUP_DAILY_STATS, self.trigger_cleanup_daily),
            ('monthly_rollup', self.config.CRON_MONTHLY_ROLLUP, self.trigger_monthly_rollup),
            ('sweep_voice_sessions', self.config.CRON_SWEEP_VOICE_SESSIONS, self.trigger_sweep_voice_sessions),
        ]

    def register(self, scheduler: AsyncIOScheduler):
        """Add every trigger to the scheduler under a stable job id"""
        for job_id, expression, trigger in self.cron_jobs():
            scheduler.add_job(
                trigger,
                CronTrigger.from_crontab(expression, timezone=self.config.SCHEDULER_TIMEZONE),
                id=job_id,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
                misfire_grace_time=self.config.SCHEDULER_MISFIRE_GRACE_TIME
            )
        logger.info("Scheduler triggers registered", job_count=len(scheduler.get_jobs()))
