"""
Tests for monthly compaction and retention cleanup
"""
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import func, select

from guildstats.models import NO_CHANNEL, DailyChannelStats, MonthlyStats, RawEvent
from guildstats.processors.base import upsert_daily_stats
from guildstats.services.intake_service import EventIntakeService
from guildstats.services.retention_service import RetentionService
from guildstats.services.rollup_service import MonthlyRollupService
from guildstats.utils import to_ms

from conftest import make_message


async def add_daily(db, day, channel_id='c1', user_id='u1', guild_id='g1', **increments):
    async with db.session() as session:
        await upsert_daily_stats(session, guild_id, user_id, day, channel_id, increments=increments)


async def monthly_row(db, month, user_id='u1', guild_id='g1'):
    async with db.session() as session:
        return await session.get(MonthlyStats, (guild_id, user_id, month))


async def daily_count(db):
    async with db.session() as session:
        return await session.scalar(select(func.count()).select_from(DailyChannelStats))


@pytest.fixture
def rollup(db, config):
    return MonthlyRollupService(db, config)


@pytest.fixture
def retention(db, config):
    return RetentionService(db, config)


@pytest.mark.integration
class TestMonthlyRollup:
    """Test compaction of daily rows into monthly rows."""

    async def test_totals_equal_sum_of_daily_rows(self, db, rollup):
        await add_daily(db, date(2024, 2, 1), 'c1', messages_sent=10, voice_minutes=30)
        await add_daily(db, date(2024, 2, 1), 'c2', messages_sent=5, reactions_given=2)
        await add_daily(db, date(2024, 2, 20), NO_CHANNEL, messages_sent=3, messages_deleted=1)
        # Outside the month
        await add_daily(db, date(2024, 3, 1), 'c1', messages_sent=100)

        result = await rollup.rollup_month(date(2024, 2, 14))
        assert result == {'guilds': 1, 'members': 1}

        row = await monthly_row(db, date(2024, 2, 1))
        assert row.total_messages == 18
        assert row.total_voice_minutes == 30
        assert row.total_reactions_given == 2
        assert row.total_messages_deleted == 1
        assert row.active_days == 2
        assert row.avg_messages_per_day == round(18 / 29, 2)
        assert row.avg_voice_minutes_per_day == round(30 / 29, 2)

    async def test_top_channels_exclude_sentinel(self, db, rollup, config):
        for index, channel in enumerate(['c1', 'c2', 'c3', 'c4', 'c5', 'c6']):
            await add_daily(db, date(2024, 2, 3), channel, messages_sent=10 + index)
        await add_daily(db, date(2024, 2, 3), NO_CHANNEL, messages_sent=500)

        await rollup.rollup_month(date(2024, 2, 1))
        row = await monthly_row(db, date(2024, 2, 1))

        assert len(row.top_channels) == config.TOP_CHANNELS_LIMIT
        assert row.top_channels[0] == {'channel_id': 'c6', 'messages': 15}
        assert NO_CHANNEL not in {entry['channel_id'] for entry in row.top_channels}
        assert row.total_messages == sum(10 + i for i in range(6)) + 500

    async def test_rerun_overwrites(self, db, rollup):
        await add_daily(db, date(2024, 2, 3), messages_sent=4)
        await rollup.rollup_month(date(2024, 2, 1))
        await add_daily(db, date(2024, 2, 4), messages_sent=6)
        await rollup.rollup_month(date(2024, 2, 1))

        row = await monthly_row(db, date(2024, 2, 1))
        assert row.total_messages == 10
        assert row.to_dict()['month'] == date(2024, 2, 1)

    async def test_every_member_and_guild(self, db, rollup):
        await add_daily(db, date(2024, 2, 3), user_id='u1', messages_sent=1)
        await add_daily(db, date(2024, 2, 3), user_id='u2', messages_sent=2)
        await add_daily(db, date(2024, 2, 3), guild_id='g2', messages_sent=3)

        assert await rollup.rollup_month(date(2024, 2, 1)) == {'guilds': 2, 'members': 3}
        assert (await monthly_row(db, date(2024, 2, 1), 'u2')).total_messages == 2

    async def test_empty_month(self, rollup):
        assert await rollup.rollup_month(date(2023, 1, 1)) == {'guilds': 0, 'members': 0}


@pytest.mark.integration
class TestRetention:
    """Test raw event and daily stats cleanup."""

    async def test_raw_events_older_than_window_deleted(self, db, dispatcher, config, retention):
        now = datetime(2024, 3, 31, 2, 0)
        intake = EventIntakeService(db, dispatcher, config)
        await intake.process_batch([
            make_message(timestamp=to_ms(now - timedelta(days=31))),
            make_message(timestamp=to_ms(now - timedelta(days=29))),
        ])

        assert await retention.cleanup_raw_events(now) == 1
        async with db.session() as session:
            assert await session.scalar(select(func.count()).select_from(RawEvent)) == 1

    async def test_daily_rows_kept_until_month_compacted(self, db, rollup, retention):
        now = datetime(2024, 6, 15, 3, 0)
        await add_daily(db, date(2024, 2, 10), messages_sent=1)
        await add_daily(db, date(2024, 6, 1), messages_sent=1)

        result = await retention.cleanup_daily_stats(now)
        assert result == {'deleted': 0, 'retained_months': 1}
        assert await daily_count(db) == 2

        await rollup.rollup_month(date(2024, 2, 1))
        result = await retention.cleanup_daily_stats(now)
        assert result == {'deleted': 1, 'retained_months': 0}
        assert await daily_count(db) == 1
        assert (await monthly_row(db, date(2024, 2, 1))).total_messages == 1

    async def test_only_rows_past_cutoff_deleted(self, db, rollup, retention):
        # Cutoff lands on 2024-03-17; the month is only partly expired
        now = datetime(2024, 6, 15, 3, 0)
        await add_daily(db, date(2024, 3, 1), messages_sent=1)
        await add_daily(db, date(2024, 3, 30), messages_sent=1)
        await rollup.rollup_month(date(2024, 3, 1))

        result = await retention.cleanup_daily_stats(now)
        assert result['deleted'] == 1
        assert await daily_count(db) == 1
