"""
Processor Base
Shared upsert-increment writers for the cumulative and daily tables
"""
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional
from sqlalchemy import case, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from ..config import settings
from ..database import DatabaseManager, dialect_insert
from ..events import BotEvent
from ..exceptions import ProcessingError
from ..models import DailyChannelStats, MemberCumulativeStats
from ..utils import local_date, local_hour, utcnow

logger = get_logger()


async def upsert_increment(session: AsyncSession, model, keys: Dict[str, Any],
                           increments: Optional[Dict[str, int]] = None,
                           latest: Optional[Dict[str, Any]] = None,
                           earliest: Optional[Dict[str, Any]] = None,
                           assign: Optional[Dict[str, Any]] = None):
    """
    Insert a counter row or fold new values into the existing one

    Args:
        session: Active session
        model: Mapped class with a primary key matching keys
        keys: Primary key values
        increments: Columns updated as col = col + value
        latest: Columns keeping the greater of stored and new value
        earliest: Columns keeping the smaller of stored and new value
        assign: Columns overwritten with the new value
    """
    increments = increments or {}
    latest = latest or {}
    earliest = earliest or {}
    assign = dict(assign or {})

    table = model.__table__
    if 'updated_at' in table.c and 'updated_at' not in assign:
        assign['updated_at'] = utcnow()

    stmt = dialect_insert(session, model).values(**keys, **increments, **latest, **earliest, **assign)
    excluded = stmt.excluded

    set_ = {}
    for column in increments:
        set_[column] = table.c[column] + excluded[column]
    for column in latest:
        set_[column] = case(
            (table.c[column].is_(None), excluded[column]),
            (excluded[column] > table.c[column], excluded[column]),
            else_=table.c[column]
        )
    for column in earliest:
        set_[column] = case(
            (table.c[column].is_(None), excluded[column]),
            (excluded[column] < table.c[column], excluded[column]),
            else_=table.c[column]
        )
    for column in assign:
        set_[column] = excluded[column]

    stmt = stmt.on_conflict_do_update(index_elements=list(keys), set_=set_)
    await session.execute(stmt)


async def upsert_member_stats(session: AsyncSession, guild_id: str, user_id: str, **kwargs):
    await upsert_increment(
        session, MemberCumulativeStats,
        {'guild_id': guild_id, 'user_id': user_id},
        **kwargs
    )


async def upsert_daily_stats(session: AsyncSession, guild_id: str, user_id: str,
                             day: date, channel_id: str, **kwargs):
    await upsert_increment(
        session, DailyChannelStats,
        {'guild_id': guild_id, 'user_id': user_id, 'date': day, 'channel_id': channel_id},
        **kwargs
    )


async def touch_member(session: AsyncSession, guild_id: str, user_id: str, when: datetime) -> int:
    """Bump updated_at on an existing cumulative row; returns rows affected"""
    result = await session.execute(
        update(MemberCumulativeStats)
        .where(
            MemberCumulativeStats.guild_id == guild_id,
            MemberCumulativeStats.user_id == user_id
        )
        .values(updated_at=when)
    )
    return result.rowcount


class BaseEventProcessor:
    """Common plumbing for the per-category event processors"""

    name = 'base'

    def __init__(self, db: DatabaseManager, config=None):
        self.db = db
        self.config = config or settings
        self.timezone = self.config.STATS_TIMEZONE

    def day_of(self, when: datetime) -> date:
        return local_date(when, self.timezone)

    def hour_of(self, when: datetime) -> int:
        return local_hour(when, self.timezone)

    async def process(self, event: BotEvent):
        raise NotImplementedError

    async def process_batch(self, events: Iterable[BotEvent]) -> int:
        processed = 0
        for event in events:
            await self.handle(event)
            processed += 1
        return processed

    async def handle(self, event: BotEvent):
        """Process one event, translating store failures into ProcessingError"""
        try:
            await self.process(event)
        except SQLAlchemyError as e:
            logger.error(
                "Event processing failed",
                processor=self.name,
                event_type=event.type.value,
                guild_id=event.guild_id,
                user_id=event.user_id,
                error=str(e)
            )
            raise ProcessingError(f"{self.name} processor failed: {e}") from e
