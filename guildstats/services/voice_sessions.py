"""
Voice Session Tracker
Open voice sessions per member, stored in Redis with a TTL
"""
import asyncio
import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, Optional
import redis.asyncio as aioredis
from redis.exceptions import RedisError
from structlog import get_logger

from ..exceptions import SessionStoreError

logger = get_logger()

KEY_PREFIX = 'voice_session'


@dataclass(frozen=True)
class VoiceSession:
    channel_id: str
    joined_at: int  # epoch milliseconds

    def to_json(self) -> str:
        return json.dumps({'channelId': self.channel_id, 'joinedAt': self.joined_at})

    @classmethod
    def from_json(cls, raw: str) -> 'VoiceSession':
        data = json.loads(raw)
        return cls(channel_id=data['channelId'], joined_at=int(data['joinedAt']))

    def minutes_until(self, timestamp_ms: int) -> int:
        """Whole minutes from join to the given instant; negative when out of order"""
        return (timestamp_ms - self.joined_at) // 60000


class VoiceSessionTracker:
    """At most one open session per (guild, member)"""

    def __init__(self, client: aioredis.Redis, ttl_seconds: int = 86400):
        self.client = client
        self.ttl_seconds = ttl_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @staticmethod
    def key(guild_id: str, user_id: str) -> str:
        return f'{KEY_PREFIX}:{guild_id}:{user_id}'

    @asynccontextmanager
    async def member_lock(self, guild_id: str, user_id: str) -> AsyncIterator[None]:
        """Serialize read-modify-write on one member's session"""
        key = self.key(guild_id, user_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    @staticmethod
    def _decode(raw) -> Optional[VoiceSession]:
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode('utf-8')
        try:
            return VoiceSession.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable voice session", error=str(e))
            return None

    async def get(self, guild_id: str, user_id: str) -> Optional[VoiceSession]:
        try:
            raw = await self.client.get(self.key(guild_id, user_id))
        except RedisError as e:
            raise SessionStoreError(f"voice session read failed: {e}") from e
        return self._decode(raw)

    async def open(self, guild_id: str, user_id: str, channel_id: str, joined_at: int) -> Optional[VoiceSession]:
        """Store a new session and return the one it replaced, atomically"""
        session = VoiceSession(channel_id=channel_id, joined_at=joined_at)
        try:
            previous = await self.client.set(
                self.key(guild_id, user_id),
                session.to_json(),
                ex=self.ttl_seconds,
                get=True
            )
        except RedisError as e:
            raise SessionStoreError(f"voice session write failed: {e}") from e
        return self._decode(previous)

    async def close(self, guild_id: str, user_id: str) -> Optional[VoiceSession]:
        """Remove the session and return it, atomically"""
        try:
            raw = await self.client.getdel(self.key(guild_id, user_id))
        except RedisError as e:
            raise SessionStoreError(f"voice session delete failed: {e}") from e
        return self._decode(raw)

    async def sweep_stale(self, now_ms: int) -> int:
        """
        Delete sessions older than the TTL

        Keys normally expire on their own; this catches sessions whose TTL
        was lost or extended. Swept sessions are not credited.

        Args:
            now_ms: Current time in epoch milliseconds

        Returns:
            Number of sessions removed
        """
        cutoff = now_ms - self.ttl_seconds * 1000
        removed = 0
        try:
            async for key in self.client.scan_iter(match=f'{KEY_PREFIX}:*', count=500):
                session = self._decode(await self.client.get(key))
                if session is None or session.joined_at < cutoff:
                    removed += await self.client.delete(key)
        except RedisError as e:
            logger.error("Voice session sweep failed", error=str(e), removed=removed)
            raise SessionStoreError(f"voice session sweep failed: {e}") from e

        logger.info("Voice session sweep completed", removed=removed)
        return removed
