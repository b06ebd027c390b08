"""
Message Events Processor
Folds message create, edit and delete events into member counters
"""
from collections import defaultdict
from typing import Dict, Iterable, List, Tuple
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from ..events import BotEvent, EventType
from ..exceptions import ProcessingError
from ..models import NO_CHANNEL
from .base import BaseEventProcessor, upsert_daily_stats, upsert_member_stats

logger = get_logger()


class MessageEventsProcessor(BaseEventProcessor):
    """
    Maintains message counters on the cumulative and daily tables

    Queue workers apply one event at a time through ``handle``;
    ``process_batch`` serves bulk reprocessing of parked event jobs.
    """

    name = 'message'

    async def process(self, event: BotEvent):
        if event.type == EventType.MESSAGE_CREATE:
            await self.handle_create(event)
        elif event.type == EventType.MESSAGE_UPDATE:
            await self.handle_update(event)
        elif event.type == EventType.MESSAGE_DELETE:
            await self.handle_delete(event)
        else:
            logger.debug("Unhandled message event type", event_type=event.type.value)

    async def handle_create(self, event: BotEvent):
        if not event.user_id:
            logger.debug("Message without author skipped", guild_id=event.guild_id, message_id=event.message_id)
            return

        sent_at = event.occurred_at
        async with self.db.session() as session:
            await upsert_member_stats(
                session, event.guild_id, event.user_id,
                increments={'total_messages': 1},
                latest={'last_message_at': sent_at, 'last_seen': sent_at}
            )
            await upsert_daily_stats(
                session, event.guild_id, event.user_id,
                self.day_of(sent_at), event.channel_id or NO_CHANNEL,
                increments={'messages_sent': 1},
                earliest={'first_message_at': sent_at},
                latest={'last_message_at': sent_at},
                assign={'peak_hour': self.hour_of(sent_at)}
            )

    async def handle_update(self, event: BotEvent):
        if not event.user_id:
            logger.debug("Message edit without author skipped", guild_id=event.guild_id, message_id=event.message_id)
            return

        edited_at = event.occurred_at
        async with self.db.session() as session:
            await upsert_member_stats(
                session, event.guild_id, event.user_id,
                latest={'last_seen': edited_at}
            )
            await upsert_daily_stats(
                session, event.guild_id, event.user_id,
                self.day_of(edited_at), event.channel_id or NO_CHANNEL,
                increments={'messages_edited': 1}
            )

    async def handle_delete(self, event: BotEvent):
        payload = event.payload
        author_id = payload.author_id or event.user_id
        if not author_id:
            # Uncached message: the author cannot be attributed
            logger.debug("Message delete without author skipped", guild_id=event.guild_id, message_id=event.message_id)
            return

        deleter_id = payload.deleter_id
        by_moderator = deleter_id is not None and deleter_id != author_id

        deleted_at = event.occurred_at
        async with self.db.session() as session:
            await upsert_daily_stats(
                session, event.guild_id, author_id,
                self.day_of(deleted_at), event.channel_id or NO_CHANNEL,
                increments={
                    'messages_deleted': 1,
                    'deleted_by_mod' if by_moderator else 'deleted_by_self': 1,
                }
            )

        logger.debug(
            "Message delete recorded",
            guild_id=event.guild_id,
            author_id=author_id,
            by_moderator=by_moderator
        )

    async def process_batch(self, events: Iterable[BotEvent]) -> int:
        """
        Apply a batch of message events with one upsert per group

        Creates are grouped per member for the cumulative table and per
        member, day and channel for the daily table. Edits and deletes are
        applied one by one.
        """
        creates: List[BotEvent] = []
        others: List[BotEvent] = []
        for event in events:
            if event.type == EventType.MESSAGE_CREATE and event.user_id:
                creates.append(event)
            else:
                others.append(event)

        members: Dict[Tuple[str, str], Dict] = defaultdict(lambda: {'count': 0, 'last': None})
        daily: Dict[Tuple, Dict] = defaultdict(lambda: {'count': 0, 'first': None, 'last': None})
        for event in creates:
            sent_at = event.occurred_at

            member = members[(event.guild_id, event.user_id)]
            member['count'] += 1
            if member['last'] is None or sent_at > member['last']:
                member['last'] = sent_at

            day_key = (event.guild_id, event.user_id, self.day_of(sent_at), event.channel_id or NO_CHANNEL)
            bucket = daily[day_key]
            bucket['count'] += 1
            if bucket['first'] is None or sent_at < bucket['first']:
                bucket['first'] = sent_at
            if bucket['last'] is None or sent_at > bucket['last']:
                bucket['last'] = sent_at

        if creates:
            try:
                async with self.db.session() as session:
                    for (guild_id, user_id), member in members.items():
                        await upsert_member_stats(
                            session, guild_id, user_id,
                            increments={'total_messages': member['count']},
                            latest={'last_message_at': member['last'], 'last_seen': member['last']}
                        )
                    for (guild_id, user_id, day, channel_id), bucket in daily.items():
                        await upsert_daily_stats(
                            session, guild_id, user_id, day, channel_id,
                            increments={'messages_sent': bucket['count']},
                            earliest={'first_message_at': bucket['first']},
                            latest={'last_message_at': bucket['last']},
                            assign={'peak_hour': self.hour_of(bucket['last'])}
                        )
            except SQLAlchemyError as e:
                logger.error("Message batch processing failed", events=len(creates), error=str(e))
                raise ProcessingError(f"message batch failed: {e}") from e

            logger.debug("Message creates applied", events=len(creates), members=len(members))

        for event in others:
            await self.handle(event)

        return len(creates) + len(others)
