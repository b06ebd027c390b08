"""
Member Events Processor
Records member lifecycle timestamps on the cumulative table
"""
from structlog import get_logger

from ..events import BotEvent, EventType
from ..utils import from_ms
from .base import BaseEventProcessor, touch_member, upsert_member_stats

logger = get_logger()


class MemberEventsProcessor(BaseEventProcessor):
    name = 'member'

    async def process(self, event: BotEvent):
        if not event.user_id:
            logger.debug("Member event without user skipped", guild_id=event.guild_id)
            return

        if event.type == EventType.GUILD_MEMBER_ADD:
            joined_ms = event.payload.joined_at or event.timestamp
            async with self.db.session() as session:
                await upsert_member_stats(
                    session, event.guild_id, event.user_id,
                    assign={'joined_at': from_ms(joined_ms)}
                )
            logger.info("Member joined", guild_id=event.guild_id, user_id=event.user_id)

        elif event.type == EventType.GUILD_MEMBER_REMOVE:
            # Counters are kept for history
            async with self.db.session() as session:
                updated = await touch_member(session, event.guild_id, event.user_id, event.occurred_at)
            logger.info("Member left", guild_id=event.guild_id, user_id=event.user_id, known=bool(updated))

        else:
            logger.debug("Member update received", guild_id=event.guild_id, user_id=event.user_id)
