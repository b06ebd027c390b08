"""
Tests for voice session tracking and voice minute crediting
"""
import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from guildstats.events import parse_event
from guildstats.exceptions import ProcessingError
from guildstats.models import DailyChannelStats, MemberCumulativeStats
from guildstats.processors import VoiceEventsProcessor, voice_processor
from guildstats.services.voice_sessions import VoiceSession, VoiceSessionTracker

from conftest import BASE_TS, MINUTE_MS, make_event, make_voice


async def voice_minutes(db, user_id='u1', guild_id='g1'):
    async with db.session() as session:
        member = await session.get(MemberCumulativeStats, (guild_id, user_id))
        return member.total_voice_minutes if member else 0


async def voice_by_channel(db, user_id='u1'):
    async with db.session() as session:
        result = await session.execute(
            select(DailyChannelStats.channel_id, DailyChannelStats.voice_minutes)
            .where(DailyChannelStats.user_id == user_id)
        )
        return dict(result.all())


@pytest.fixture
def voice(db, tracker, config):
    return VoiceEventsProcessor(db, tracker, config)


async def send(processor, raw):
    await processor.handle(parse_event(raw))


@pytest.mark.unit
class TestVoiceSessionTracker:
    """Test the Redis-backed session store."""

    async def test_open_returns_previous(self, tracker):
        assert await tracker.open('g1', 'u1', 'v1', BASE_TS) is None
        previous = await tracker.open('g1', 'u1', 'v2', BASE_TS + MINUTE_MS)
        assert previous == VoiceSession('v1', BASE_TS)
        assert (await tracker.get('g1', 'u1')).channel_id == 'v2'

    async def test_close_removes(self, tracker):
        await tracker.open('g1', 'u1', 'v1', BASE_TS)
        assert (await tracker.close('g1', 'u1')).channel_id == 'v1'
        assert await tracker.get('g1', 'u1') is None
        assert await tracker.close('g1', 'u1') is None

    async def test_session_has_ttl(self, tracker, redis_client):
        await tracker.open('g1', 'u1', 'v1', BASE_TS)
        ttl = await redis_client.ttl(tracker.key('g1', 'u1'))
        assert 0 < ttl <= tracker.ttl_seconds

    async def test_stored_format(self, tracker, redis_client):
        await tracker.open('g1', 'u1', 'v1', BASE_TS)
        raw = await redis_client.get('voice_session:g1:u1')
        assert VoiceSession.from_json(raw) == VoiceSession('v1', BASE_TS)

    async def test_sweep_removes_stale_sessions(self, tracker):
        await tracker.open('g1', 'old', 'v1', BASE_TS)
        await tracker.open('g1', 'new', 'v1', BASE_TS + 23 * 60 * MINUTE_MS)

        removed = await tracker.sweep_stale(BASE_TS + 25 * 60 * MINUTE_MS)
        assert removed == 1
        assert await tracker.get('g1', 'old') is None
        assert await tracker.get('g1', 'new') is not None


@pytest.mark.integration
class TestVoiceMinutes:
    """Test the join, switch and leave state machine."""

    async def test_ten_minute_session(self, db, voice):
        await send(voice, make_voice(channel_id='v1', timestamp=BASE_TS))
        await send(voice, make_voice(channel_id=None, timestamp=BASE_TS + 10 * MINUTE_MS))

        assert await voice_minutes(db) == 10
        assert await voice_by_channel(db) == {'v1': 10}

    async def test_partial_minutes_floored(self, db, voice):
        await send(voice, make_voice(channel_id='v1', timestamp=BASE_TS))
        await send(voice, make_voice(channel_id=None, timestamp=BASE_TS + 5 * MINUTE_MS + 59_000))
        assert await voice_minutes(db) == 5

    async def test_channel_switch_credits_previous_channel(self, db, voice, tracker):
        await send(voice, make_voice(channel_id='v1', timestamp=BASE_TS))
        await send(voice, make_voice(channel_id='v2', timestamp=BASE_TS + 4 * MINUTE_MS))
        await send(voice, make_voice(channel_id=None, timestamp=BASE_TS + 10 * MINUTE_MS))

        assert await voice_minutes(db) == 10
        assert await voice_by_channel(db) == {'v1': 4, 'v2': 6}
        assert await tracker.get('g1', 'u1') is None

    async def test_same_channel_update_is_noop(self, db, voice, tracker):
        await send(voice, make_voice(channel_id='v1', timestamp=BASE_TS))
        # Mute toggle reports the same channel
        await send(voice, make_voice(channel_id='v1', timestamp=BASE_TS + 3 * MINUTE_MS, selfMute=True))

        session = await tracker.get('g1', 'u1')
        assert session.joined_at == BASE_TS
        assert await voice_minutes(db) == 0

    async def test_leave_without_session(self, db, voice):
        await send(voice, make_voice(channel_id=None, timestamp=BASE_TS))
        assert await voice_minutes(db) == 0

    async def test_out_of_order_leave_credits_nothing(self, db, voice, tracker):
        await send(voice, make_voice(channel_id='v1', timestamp=BASE_TS))
        await send(voice, make_voice(channel_id=None, timestamp=BASE_TS - 5 * MINUTE_MS))
        assert await voice_minutes(db) == 0
        assert await tracker.get('g1', 'u1') is None

    async def test_sub_minute_session_credits_nothing(self, db, voice):
        await send(voice, make_voice(channel_id='v1', timestamp=BASE_TS))
        await send(voice, make_voice(channel_id=None, timestamp=BASE_TS + 30_000))
        assert await voice_minutes(db) == 0

    async def test_explicit_leave_event_type(self, db, voice):
        await send(voice, make_event('VOICE-CHANNEL-JOIN', channel_id='v1', timestamp=BASE_TS))
        await send(voice, make_event('VOICE-CHANNEL-LEAVE', channel_id='v1', timestamp=BASE_TS + 7 * MINUTE_MS))
        assert await voice_minutes(db) == 7

    async def test_members_tracked_independently(self, db, voice):
        await send(voice, make_voice(user_id='u1', channel_id='v1', timestamp=BASE_TS))
        await send(voice, make_voice(user_id='u2', channel_id='v1', timestamp=BASE_TS + MINUTE_MS))
        await send(voice, make_voice(user_id='u1', channel_id=None, timestamp=BASE_TS + 3 * MINUTE_MS))
        await send(voice, make_voice(user_id='u2', channel_id=None, timestamp=BASE_TS + 9 * MINUTE_MS))

        assert await voice_minutes(db, 'u1') == 3
        assert await voice_minutes(db, 'u2') == 8



@pytest.fixture
def flaky_store(monkeypatch):
    """First member upsert fails the way a dropped connection does"""
    calls = []
    real_upsert = voice_processor.upsert_member_stats

    async def upsert(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE member_cumulative_stats", {}, Exception("connection lost"))
        return await real_upsert(*args, **kwargs)

    monkeypatch.setattr(voice_processor, 'upsert_member_stats', upsert)
    return calls


@pytest.mark.integration
class TestRetriedVoiceEvents:
    """Test that a failed credit leaves the session for the retried job."""

    async def test_leave_retried_after_store_failure(self, db, voice, tracker, flaky_store):
        await send(voice, make_voice(channel_id='v1', timestamp=BASE_TS))
        leave = make_voice(channel_id=None, timestamp=BASE_TS + 10 * MINUTE_MS)

        with pytest.raises(ProcessingError):
            await send(voice, leave)
        assert (await tracker.get('g1', 'u1')).channel_id == 'v1'

        await send(voice, leave)
        assert await voice_minutes(db) == 10
        assert await voice_by_channel(db) == {'v1': 10}
        assert await tracker.get('g1', 'u1') is None

    async def test_switch_retried_after_store_failure(self, db, voice, tracker, flaky_store):
        await send(voice, make_voice(channel_id='v1', timestamp=BASE_TS))
        switch = make_voice(channel_id='v2', timestamp=BASE_TS + 10 * MINUTE_MS)

        with pytest.raises(ProcessingError):
            await send(voice, switch)
        assert await tracker.get('g1', 'u1') == VoiceSession('v1', BASE_TS)

        await send(voice, switch)
        assert await voice_by_channel(db) == {'v1': 10}
        assert await tracker.get('g1', 'u1') == VoiceSession('v2', BASE_TS + 10 * MINUTE_MS)


@pytest.mark.integration
class TestConcurrentVoiceEvents:
    """Test that concurrent updates for one member are applied one at a time."""

    async def test_join_switch_leave_gathered(self, db, voice, tracker):
        await asyncio.gather(
            send(voice, make_voice(channel_id='v1', timestamp=BASE_TS)),
            send(voice, make_voice(channel_id='v2', timestamp=BASE_TS + 4 * MINUTE_MS)),
            send(voice, make_voice(channel_id=None, timestamp=BASE_TS + 10 * MINUTE_MS)),
        )

        assert await voice_minutes(db) == 10
        assert await voice_by_channel(db) == {'v1': 4, 'v2': 6}
        assert await tracker.get('g1', 'u1') is None

    async def test_two_switches_gathered(self, db, voice, tracker):
        await send(voice, make_voice(channel_id='v1', timestamp=BASE_TS))
        await asyncio.gather(
            send(voice, make_voice(channel_id='v2', timestamp=BASE_TS + 3 * MINUTE_MS)),
            send(voice, make_voice(channel_id='v3', timestamp=BASE_TS + 5 * MINUTE_MS)),
        )

        assert await voice_by_channel(db) == {'v1': 3, 'v2': 2}
        assert await tracker.get('g1', 'u1') == VoiceSession('v3', BASE_TS + 5 * MINUTE_MS)
        assert tracker._locks == {}

    async def test_lock_serializes_one_member_only(self, tracker):
        order = []

        async def hold(user_id, label):
            async with tracker.member_lock('g1', user_id):
                order.append((label, 'enter'))
                await asyncio.sleep(0.01)
                order.append((label, 'exit'))

        await asyncio.gather(hold('u1', 'a'), hold('u1', 'b'), hold('u2', 'c'))

        same_member = [step for step in order if step[0] in ('a', 'b')]
        assert same_member == [('a', 'enter'), ('a', 'exit'), ('b', 'enter'), ('b', 'exit')]
        assert order.index(('c', 'enter')) < order.index(('a', 'exit'))


class BrokenRedis:
    """Session store stand-in whose every call fails"""

    async def get(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    set = getdel = get


@pytest.mark.integration
class TestSessionStoreOutage:
    """Test that session store failures are logged and swallowed."""

    async def test_outage_does_not_fail_the_event(self, db, config):
        processor = VoiceEventsProcessor(db, VoiceSessionTracker(BrokenRedis()), config)
        await send(processor, make_voice(channel_id='v1', timestamp=BASE_TS))
        await send(processor, make_voice(channel_id=None, timestamp=BASE_TS + MINUTE_MS))
        assert await voice_minutes(db) == 0
