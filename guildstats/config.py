"""
Stats Engine Configuration
Configuration management for the ingestion and aggregation workers
"""
import os
from datetime import datetime, timezone
from typing import Optional
from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog import get_logger

# Load environment variables
load_dotenv()

logger = get_logger()


class StatsSettings(BaseSettings):
    """Stats engine configuration settings"""

    model_config = SettingsConfigDict(env_file='.env', case_sensitive=False, extra='ignore')

    STATS_ENV: str = 'production'

    # Database configuration
    DATABASE_URL: str = 'postgresql://localhost:5432/guildstats'
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    STORE_TIMEOUT_SECONDS: float = 30.0

    # Redis configuration
    REDIS_HOST: str = 'localhost'
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_SESSION_DB: int = 0
    REDIS_QUEUE_DB: int = 1
    REDIS_CACHE_DB: int = 2

    # Job queue
    QUEUE_KEY_PREFIX: str = 'guildstats'
    QUEUE_ATTEMPTS: int = 3
    QUEUE_BACKOFF_BASE_MS: int = 1000
    QUEUE_BACKOFF_MAX_MS: int = 60000
    QUEUE_KEEP_COMPLETED: int = 100
    QUEUE_KEEP_FAILED: int = 1000
    QUEUE_POLL_INTERVAL: float = 0.5
    # Reserved jobs not finished within this are redelivered; keep above JOB_TIMEOUT_SECONDS
    QUEUE_LOCK_SECONDS: float = 120.0

    # Workers
    WORKER_CONCURRENCY: int = 10
    JOB_TIMEOUT_SECONDS: float = 60.0

    # Intake
    INTAKE_INSERT_CHUNK_SIZE: int = 500

    # Retention
    RAW_EVENT_RETENTION_DAYS: int = 30
    DAILY_STATS_RETENTION_DAYS: int = 90

    # Voice sessions
    VOICE_SESSION_TTL_SECONDS: int = 86400  # 24 hours

    # Scheduler configuration
    SCHEDULER_TIMEZONE: str = 'UTC'
    STATS_TIMEZONE: str = 'UTC'
    SCHEDULER_MISFIRE_GRACE_TIME: int = 300
    CRON_AGGREGATE_5MIN: str = '*/5 * * * *'
    CRON_AGGREGATE_HOURLY: str = '0 * * * *'
    CRON_AGGREGATE_DAILY: str = '0 0 * * *'
    CRON_CLEANUP_RAW_EVENTS: str = '0 2 * * *'
    CRON_CLEANUP_DAILY_STATS: str = '0 3 * * *'
    CRON_MONTHLY_ROLLUP: str = '0 4 1 * *'
    CRON_SWEEP_VOICE_SESSIONS: str = '15 * * * *'

    # Rollups and queries
    TOP_CHANNELS_LIMIT: int = 5
    DASHBOARD_CACHE_TTL: int = 300  # 5 minutes

    # Logging configuration
    LOG_LEVEL: str = 'INFO'
    LOG_FILE: Optional[str] = None
    LOG_FORMAT: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    # Development settings
    DEBUG: bool = False

    @field_validator('DATABASE_URL')
    @classmethod
    def validate_database_url(cls, v):
        if not v or v.startswith('your_database_url_here'):
            raise ValueError('DATABASE_URL must be set to a valid database connection string')
        return v

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'LOG_LEVEL must be a standard logging level, got {v}')
        return level

    @field_validator('QUEUE_ATTEMPTS', 'QUEUE_LOCK_SECONDS', 'WORKER_CONCURRENCY', 'INTAKE_INSERT_CHUNK_SIZE')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('value must be at least 1')
        return v

    @property
    def redis_url(self) -> str:
        auth = f':{self.REDIS_PASSWORD}@' if self.REDIS_PASSWORD else ''
        return f'redis://{auth}{self.REDIS_HOST}:{self.REDIS_PORT}'


class DevelopmentSettings(StatsSettings):
    """Development configuration overrides"""

    STATS_ENV: str = 'development'
    DEBUG: bool = True
    LOG_LEVEL: str = 'DEBUG'
    WORKER_CONCURRENCY: int = 4

    DATABASE_URL: str = 'sqlite+aiosqlite:///./dev_stats.db'


class TestingSettings(StatsSettings):
    """Testing configuration overrides"""

    STATS_ENV: str = 'testing'
    DEBUG: bool = True
    LOG_LEVEL: str = 'DEBUG'
    QUEUE_BACKOFF_BASE_MS: int = 10
    QUEUE_POLL_INTERVAL: float = 0.01
    WORKER_CONCURRENCY: int = 2
    JOB_TIMEOUT_SECONDS: float = 5.0
    QUEUE_LOCK_SECONDS: float = 30.0

    DATABASE_URL: str = 'sqlite+aiosqlite:///:memory:'


class ProductionSettings(StatsSettings):
    """Production configuration overrides"""

    STATS_ENV: str = 'production'
    DEBUG: bool = False
    LOG_LEVEL: str = 'INFO'

    # Production database with connection pooling
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 30


def get_config(environment: str = 'production', **overrides) -> StatsSettings:
    """
    Get engine configuration based on environment

    Args:
        environment: Environment name ('development', 'production', 'testing')
        **overrides: Explicit values that win over the environment

    Returns:
        Settings instance
    """
    if environment == 'development':
        settings = DevelopmentSettings(**overrides)
    elif environment == 'testing':
        settings = TestingSettings(**overrides)
    else:
        # Default to production for unknown environments
        settings = ProductionSettings(**overrides)

    # Log configuration (without sensitive data)
    log_config = {
        k: v for k, v in settings.model_dump().items()
        if not k.endswith('_PASSWORD') and k != 'DATABASE_URL'
    }
    logger.debug(
        "Engine configuration loaded",
        environment=environment,
        loaded_at=datetime.now(timezone.utc).isoformat(),
        config=log_config
    )

    return settings


# Global configuration instance
settings = get_config(os.getenv('STATS_ENV', 'production'))
