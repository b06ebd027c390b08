"""
Stats Engine Utilities Module
Logging setup, time helpers and startup connectivity checks
"""
import calendar
import logging
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from structlog import configure, get_logger, processors, stdlib, dev
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from .config import settings

logger = get_logger()


class EngineLogger:
    """Structured logging setup for the engine"""

    @staticmethod
    def setup_logging(log_level: str = 'INFO', log_file: Optional[str] = None,
                      log_format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'):
        """
        Configure structured logging for the engine

        Args:
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            log_file: Optional log file path; enables JSON output
            log_format: Format string for standard library handlers
        """
        configure(
            processors=[
                stdlib.filter_by_level,
                processors.TimeStamper(fmt="iso"),
                processors.add_log_level,
                processors.format_exc_info,
                processors.JSONRenderer() if log_file else dev.ConsoleRenderer(colors=False),
            ],
            logger_factory=stdlib.LoggerFactory(),
            wrapper_class=stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        handlers = [logging.StreamHandler()]
        if log_file:
            handlers.append(logging.FileHandler(log_file))

        logging.basicConfig(
            level=getattr(logging, log_level.upper()),
            format=log_format,
            handlers=handlers,
            force=True
        )

        # Third-party loggers are noisy at DEBUG
        logging.getLogger('apscheduler').setLevel(logging.WARNING)
        logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
        logging.getLogger('aiosqlite').setLevel(logging.WARNING)

        logger.info("Logging configured", level=log_level, log_file=log_file)

    @staticmethod
    def log_pipeline_event(stage: str, guild_id: Optional[str] = None, **kwargs):
        """Log pipeline milestones with structured data"""
        logger.info(
            f"Pipeline event: {stage}",
            stage=stage,
            guild_id=guild_id,
            **kwargs
        )


def setup_logging(config=None):
    """Setup engine logging"""
    config = config or settings
    EngineLogger.setup_logging(
        log_level=config.LOG_LEVEL,
        log_file=config.LOG_FILE,
        log_format=config.LOG_FORMAT
    )


# Time helpers. Stored timestamps are naive UTC datetimes.

def utcnow() -> datetime:
    """Current time as a naive UTC datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def from_ms(timestamp_ms: int) -> datetime:
    """Convert epoch milliseconds to a naive UTC datetime"""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).replace(tzinfo=None)


def to_ms(value: datetime) -> int:
    """Convert a naive UTC datetime to epoch milliseconds"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def get_zone(name: str) -> tzinfo:
    if name.upper() == 'UTC':
        return timezone.utc
    return ZoneInfo(name)


def to_local(value: datetime, zone_name: str) -> datetime:
    """Convert a naive UTC datetime to an aware datetime in the given zone"""
    return value.replace(tzinfo=timezone.utc).astimezone(get_zone(zone_name))


def local_date(value: datetime, zone_name: str) -> date:
    return to_local(value, zone_name).date()


def local_hour(value: datetime, zone_name: str) -> int:
    return to_local(value, zone_name).hour


def local_midnight_utc(day: date, zone_name: str) -> datetime:
    """Naive UTC instant at which the given local calendar day starts"""
    local = datetime(day.year, day.month, day.day, tzinfo=get_zone(zone_name))
    return local.astimezone(timezone.utc).replace(tzinfo=None)


def local_day_bounds(day: date, zone_name: str) -> Tuple[datetime, datetime]:
    """Half-open naive UTC bounds [start, end) of a local calendar day"""
    return (
        local_midnight_utc(day, zone_name),
        local_midnight_utc(day + timedelta(days=1), zone_name),
    )


def floor_to_minute(value: datetime) -> datetime:
    return value.replace(second=0, microsecond=0)


def floor_to_hour(value: datetime) -> datetime:
    return value.replace(minute=0, second=0, microsecond=0)


def month_start(value: date) -> date:
    return date(value.year, value.month, 1)


def previous_month(value: date) -> date:
    """First day of the month before the one containing value"""
    first = month_start(value)
    return month_start(first - timedelta(days=1))


def next_month(value: date) -> date:
    first = month_start(value)
    return month_start(first + timedelta(days=32))


def days_in_month(value: date) -> int:
    return calendar.monthrange(value.year, value.month)[1]


def percentage_change(current: float, previous: float) -> int:
    """Relative change in whole percent; 100 when growing from zero"""
    if previous == 0:
        return 100 if current > 0 else 0
    return round((current - previous) / previous * 100)


# Startup connectivity checks

@retry(
    stop=stop_after_attempt(30),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((SQLAlchemyError, OSError)),
    reraise=True
)
async def wait_for_database(engine):
    """Wait for the database to accept connections"""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


@retry(
    stop=stop_after_attempt(30),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((RedisError, OSError)),
    reraise=True
)
async def wait_for_redis(client: aioredis.Redis):
    """Wait for Redis to answer PING"""
    await client.ping()
    logger.info("Redis connection established")
