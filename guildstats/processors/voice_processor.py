"""
Voice Events Processor
Turns voice state transitions into credited voice minutes
"""
from structlog import get_logger

from ..events import BotEvent, EventType
from ..exceptions import SessionStoreError
from ..services.voice_sessions import VoiceSession, VoiceSessionTracker
from .base import BaseEventProcessor, upsert_daily_stats, upsert_member_stats

logger = get_logger()


class VoiceEventsProcessor(BaseEventProcessor):
    """
    Per-member state machine: no session -> joined -> no session

    A leave (no channel, explicit leave action or leave event type) closes
    the open session and credits its whole minutes. A join on another
    channel credits the previous session and opens a new one. A join on
    the channel already held (mute and deafen toggles) changes nothing.
    """

    name = 'voice'

    def __init__(self, db, tracker: VoiceSessionTracker, config=None):
        super().__init__(db, config)
        self.tracker = tracker

    @staticmethod
    def is_leave(event: BotEvent) -> bool:
        if event.type == EventType.VOICE_CHANNEL_LEAVE:
            return True
        return not event.channel_id or event.payload.action == 'leave'

    async def process(self, event: BotEvent):
        if not event.user_id:
            logger.debug("Voice event without member skipped", guild_id=event.guild_id)
            return

        try:
            async with self.tracker.member_lock(event.guild_id, event.user_id):
                if self.is_leave(event):
                    await self.handle_leave(event)
                else:
                    await self.handle_join(event)
        except SessionStoreError as e:
            # Session for this member is lost; other events continue
            logger.error(
                "Voice session store unavailable",
                guild_id=event.guild_id,
                user_id=event.user_id,
                error=str(e)
            )

    async def handle_join(self, event: BotEvent):
        current = await self.tracker.get(event.guild_id, event.user_id)
        if current is not None and current.channel_id == event.channel_id:
            logger.debug("Voice state change within channel ignored", guild_id=event.guild_id, user_id=event.user_id)
            return

        # Session is replaced only after the previous one is credited
        if current is not None:
            await self.credit(event, current)
        await self.tracker.open(event.guild_id, event.user_id, event.channel_id, event.timestamp)

    async def handle_leave(self, event: BotEvent):
        current = await self.tracker.get(event.guild_id, event.user_id)
        if current is None:
            # Connected before the tracker started
            logger.debug("Voice leave without open session", guild_id=event.guild_id, user_id=event.user_id)
            return
        await self.credit(event, current)
        await self.tracker.close(event.guild_id, event.user_id)

    async def credit(self, event: BotEvent, session: VoiceSession):
        """Add the session's whole minutes to the member and its channel"""
        minutes = session.minutes_until(event.timestamp)
        if minutes <= 0:
            if minutes < 0:
                logger.warning(
                    "Out of order voice event, duration ignored",
                    guild_id=event.guild_id,
                    user_id=event.user_id,
                    joined_at=session.joined_at,
                    timestamp=event.timestamp
                )
            return

        ended_at = event.occurred_at
        async with self.db.session() as db_session:
            await upsert_member_stats(
                db_session, event.guild_id, event.user_id,
                increments={'total_voice_minutes': minutes},
                latest={'last_voice_at': ended_at, 'last_seen': ended_at}
            )
            await upsert_daily_stats(
                db_session, event.guild_id, event.user_id,
                self.day_of(ended_at), session.channel_id,
                increments={'voice_minutes': minutes}
            )

        logger.debug(
            "Voice minutes credited",
            guild_id=event.guild_id,
            user_id=event.user_id,
            channel_id=session.channel_id,
            minutes=minutes
        )
