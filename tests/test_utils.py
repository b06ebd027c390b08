"""
Unit tests for configuration and time helpers
"""
from datetime import date, datetime

import pytest
from pydantic import ValidationError

from guildstats import config as settings_module
from guildstats.config import get_config
from guildstats.database import to_async_url
from guildstats.utils import (
    days_in_month, from_ms, local_date, local_day_bounds, next_month, percentage_change,
    previous_month, to_ms
)


@pytest.mark.unit
class TestConfig:
    """Test environment selection and validation."""

    def test_environment_selection(self):
        assert isinstance(get_config('testing'), settings_module.TestingSettings)
        assert isinstance(get_config('development'), settings_module.DevelopmentSettings)
        assert get_config('anything-else').STATS_ENV == 'production'

    def test_defaults(self):
        config = get_config('production')
        assert config.QUEUE_ATTEMPTS == 3
        assert config.QUEUE_BACKOFF_BASE_MS == 1000
        assert config.RAW_EVENT_RETENTION_DAYS == 30
        assert config.DAILY_STATS_RETENTION_DAYS == 90
        assert config.VOICE_SESSION_TTL_SECONDS == 86400
        assert config.QUEUE_LOCK_SECONDS > config.JOB_TIMEOUT_SECONDS
        assert config.CRON_AGGREGATE_5MIN == '*/5 * * * *'

    def test_overrides_and_validation(self):
        assert get_config('testing', LOG_LEVEL='warning').LOG_LEVEL == 'WARNING'
        with pytest.raises(ValidationError):
            get_config('testing', LOG_LEVEL='chatty')
        with pytest.raises(ValidationError):
            get_config('testing', WORKER_CONCURRENCY=0)

    def test_redis_url(self):
        assert get_config('testing', REDIS_PASSWORD='s3cret').redis_url == 'redis://:s3cret@localhost:6379'

    def test_async_driver_selection(self):
        assert to_async_url('postgresql://db/stats') == 'postgresql+asyncpg://db/stats'
        assert to_async_url('sqlite:///x.db') == 'sqlite+aiosqlite:///x.db'
        assert to_async_url('postgresql+asyncpg://db/stats') == 'postgresql+asyncpg://db/stats'


@pytest.mark.unit
class TestTimeHelpers:
    """Test timestamp conversion and calendar helpers."""

    def test_ms_round_trip(self):
        moment = datetime(2024, 3, 15, 12, 30)
        assert from_ms(to_ms(moment)) == moment

    def test_local_date(self):
        assert local_date(datetime(2024, 3, 15, 2, 0), 'UTC') == date(2024, 3, 15)
        assert local_date(datetime(2024, 3, 15, 2, 0), 'America/Los_Angeles') == date(2024, 3, 14)

    def test_local_day_bounds_across_dst(self):
        # Clocks in New York jump forward on 2024-03-10; that day is 23 hours long
        start, end = local_day_bounds(date(2024, 3, 10), 'America/New_York')
        assert start == datetime(2024, 3, 10, 5)
        assert end == datetime(2024, 3, 11, 4)

    def test_months(self):
        assert previous_month(date(2024, 1, 15)) == date(2023, 12, 1)
        assert next_month(date(2024, 12, 31)) == date(2025, 1, 1)
        assert days_in_month(date(2024, 2, 1)) == 29

    @pytest.mark.parametrize('current, previous, expected', [
        (10, 0, 100),
        (0, 0, 0),
        (15, 10, 50),
        (5, 10, -50),
        (1, 3, -67),
    ])
    def test_percentage_change(self, current, previous, expected):
        assert percentage_change(current, previous) == expected
