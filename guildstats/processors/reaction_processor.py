"""
Reaction Events Processor
Credits reactions given to the reactor and received to the message author
"""
from collections import defaultdict
from typing import Dict, Iterable, Tuple
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from ..events import BotEvent, EventType
from ..exceptions import ProcessingError
from ..models import NO_CHANNEL
from .base import BaseEventProcessor, upsert_daily_stats, upsert_member_stats

logger = get_logger()


class ReactionEventsProcessor(BaseEventProcessor):
    """Maintains reaction counters; removals are never subtracted"""

    name = 'reaction'

    @staticmethod
    def author_of(event: BotEvent):
        """Message author to credit, or None for self reactions and unknown authors"""
        author_id = event.payload.message_author_id
        if not author_id or author_id == event.user_id:
            return None
        return author_id

    async def process(self, event: BotEvent):
        if event.type != EventType.MESSAGE_REACTION_ADD:
            logger.debug("Unhandled reaction event type", event_type=event.type.value)
            return
        if not event.user_id:
            logger.debug("Reaction without reactor skipped", guild_id=event.guild_id)
            return

        reacted_at = event.occurred_at
        day = self.day_of(reacted_at)
        channel_id = event.channel_id or NO_CHANNEL
        author_id = self.author_of(event)

        async with self.db.session() as session:
            await upsert_member_stats(
                session, event.guild_id, event.user_id,
                increments={'total_reactions_given': 1},
                latest={'last_seen': reacted_at}
            )
            await upsert_daily_stats(
                session, event.guild_id, event.user_id, day, channel_id,
                increments={'reactions_given': 1}
            )

            if author_id:
                await upsert_member_stats(
                    session, event.guild_id, author_id,
                    increments={'total_reactions_received': 1}
                )
                await upsert_daily_stats(
                    session, event.guild_id, author_id, day, channel_id,
                    increments={'reactions_received': 1}
                )

    async def process_batch(self, events: Iterable[BotEvent]) -> int:
        """Group reactions per reactor and per author, then upsert each group once (parked job reprocessing)"""
        given: Dict[Tuple[str, str], Dict] = defaultdict(lambda: {'count': 0, 'last': None})
        received: Dict[Tuple[str, str], int] = defaultdict(int)
        daily_given: Dict[Tuple, int] = defaultdict(int)
        daily_received: Dict[Tuple, int] = defaultdict(int)

        processed = 0
        for event in events:
            if event.type != EventType.MESSAGE_REACTION_ADD or not event.user_id:
                continue
            processed += 1
            reacted_at = event.occurred_at
            day = self.day_of(reacted_at)
            channel_id = event.channel_id or NO_CHANNEL

            bucket = given[(event.guild_id, event.user_id)]
            bucket['count'] += 1
            if bucket['last'] is None or reacted_at > bucket['last']:
                bucket['last'] = reacted_at
            daily_given[(event.guild_id, event.user_id, day, channel_id)] += 1

            author_id = self.author_of(event)
            if author_id:
                received[(event.guild_id, author_id)] += 1
                daily_received[(event.guild_id, author_id, day, channel_id)] += 1

        if not processed:
            return 0

        try:
            async with self.db.session() as session:
                for (guild_id, user_id), bucket in given.items():
                    await upsert_member_stats(
                        session, guild_id, user_id,
                        increments={'total_reactions_given': bucket['count']},
                        latest={'last_seen': bucket['last']}
                    )
                for (guild_id, user_id), count in received.items():
                    await upsert_member_stats(
                        session, guild_id, user_id,
                        increments={'total_reactions_received': count}
                    )
                for (guild_id, user_id, day, channel_id), count in daily_given.items():
                    await upsert_daily_stats(
                        session, guild_id, user_id, day, channel_id,
                        increments={'reactions_given': count}
                    )
                for (guild_id, user_id, day, channel_id), count in daily_received.items():
                    await upsert_daily_stats(
                        session, guild_id, user_id, day, channel_id,
                        increments={'reactions_received': count}
                    )
        except SQLAlchemyError as e:
            logger.error("Reaction batch processing failed", events=processed, error=str(e))
            raise ProcessingError(f"reaction batch failed: {e}") from e

        logger.debug("Reactions applied", events=processed, reactors=len(given), authors=len(received))
        return processed
