"""
Pytest configuration and fixtures for the stats engine
"""
from datetime import datetime
import fakeredis
import fakeredis.aioredis
import pytest

from guildstats.config import get_config
from guildstats.database import DatabaseManager
from guildstats.main import StatsEngine
from guildstats.queue import QueueRegistry
from guildstats.services.dispatcher import QueueDispatcher
from guildstats.services.voice_sessions import VoiceSessionTracker
from guildstats.utils import to_ms

# 2024-03-15 12:00:00 UTC
BASE_TIME = datetime(2024, 3, 15, 12, 0, 0)
BASE_TS = to_ms(BASE_TIME)
MINUTE_MS = 60 * 1000


class FakeClock:
    """Millisecond clock that only moves when told to"""

    def __init__(self, now_ms: int = BASE_TS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int):
        self.now_ms += ms


@pytest.fixture
def config(tmp_path):
    """Testing settings backed by a throwaway SQLite file."""
    return get_config('testing', DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'stats.db'}")


@pytest.fixture
async def db(config):
    """Database with all tables created."""
    manager = DatabaseManager.from_settings(config)
    await manager.create_tables()
    yield manager
    await manager.dispose()


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


@pytest.fixture
async def redis_client(redis_server):
    """In-memory Redis speaking the real protocol."""
    client = fakeredis.aioredis.FakeRedis(server=redis_server, decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queues(redis_client, config, clock):
    return QueueRegistry(redis_client, config, clock=clock)


@pytest.fixture
def dispatcher(queues):
    return QueueDispatcher(queues)


@pytest.fixture
def tracker(redis_client, config):
    return VoiceSessionTracker(redis_client, ttl_seconds=config.VOICE_SESSION_TTL_SECONDS)


@pytest.fixture
async def engine(config, db, redis_server):
    """Fully wired engine over SQLite and fake Redis, clock fixed at BASE_TIME."""
    stats_engine = StatsEngine(
        config,
        db,
        session_redis=fakeredis.aioredis.FakeRedis(server=redis_server, db=0, decode_responses=True),
        queue_redis=fakeredis.aioredis.FakeRedis(server=redis_server, db=1, decode_responses=True),
        cache_redis=fakeredis.aioredis.FakeRedis(server=redis_server, db=2, decode_responses=True),
        clock=lambda: BASE_TIME,
    )
    yield stats_engine
    await stats_engine.workers.stop()
    for client in (stats_engine.session_redis, stats_engine.queue_redis, stats_engine.cache_redis):
        await client.aclose()


# Test data factories
def make_event(event_type='MESSAGE-CREATE', guild_id='g1', user_id='u1', channel_id='c1',
               timestamp=BASE_TS, data=None, **kwargs):
    """Factory function to create wire events as a bot would send them."""
    event = {
        'type': event_type,
        'guildId': guild_id,
        'userId': user_id,
        'channelId': channel_id,
        'timestamp': timestamp,
    }
    if data is not None:
        event['data'] = data
    event.update(kwargs)
    return event


def make_message(user_id='u1', channel_id='c1', timestamp=BASE_TS, message_id=None, guild_id='g1'):
    return make_event(
        'MESSAGE-CREATE',
        guild_id=guild_id,
        user_id=user_id,
        channel_id=channel_id,
        timestamp=timestamp,
        messageId=message_id or f'm{timestamp}',
    )


def make_voice(user_id='u1', channel_id='v1', timestamp=BASE_TS, guild_id='g1', **data):
    return make_event(
        'VOICE-STATE-UPDATE',
        guild_id=guild_id,
        user_id=user_id,
        channel_id=channel_id,
        timestamp=timestamp,
        data=data or None,
    )


# Custom pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
