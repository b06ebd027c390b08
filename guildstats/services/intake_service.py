"""
Event Intake Service
Validates inbound batches, persists raw events and hands them to the queue
"""
import asyncio
from typing import Any, Dict, Iterable, List
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from ..config import settings
from ..database import DatabaseManager, dialect_insert
from ..events import BotEvent, parse_event
from ..exceptions import EventValidationError, PersistenceError
from ..models import RawEvent
from ..utils import EngineLogger
from .dispatcher import QueueDispatcher

logger = get_logger()


class EventIntakeService:
    """Entry point for batches forwarded by bot processes"""

    def __init__(self, db: DatabaseManager, dispatcher: QueueDispatcher, config=None):
        self.db = db
        self.dispatcher = dispatcher
        self.config = config or settings

    def validate(self, raw_events: Iterable[Any]) -> List[BotEvent]:
        """Parse a batch, dropping malformed events and in-batch duplicates"""
        accepted: Dict[str, BotEvent] = {}
        rejected = 0
        for index, raw in enumerate(raw_events):
            try:
                event = parse_event(raw)
            except EventValidationError as e:
                rejected += 1
                logger.warning(
                    "Invalid event dropped",
                    index=index,
                    event_type=e.event_type,
                    reason=e.reason
                )
                continue
            accepted.setdefault(event.fingerprint(), event)

        if rejected:
            logger.info("Batch validation finished", accepted=len(accepted), rejected=rejected)
        return list(accepted.values())

    async def persist(self, events: List[BotEvent]) -> List[BotEvent]:
        """
        Bulk insert raw events, skipping rows whose id already exists

        Returns:
            The events that were newly stored

        Raises:
            PersistenceError: the store failed; nothing from the batch is kept
        """
        by_id = {event.fingerprint(): event for event in events}
        chunk_size = self.config.INTAKE_INSERT_CHUNK_SIZE
        records = [event.to_record() for event in events]

        async def insert_all() -> List[str]:
            inserted: List[str] = []
            async with self.db.session() as session:
                for start in range(0, len(records), chunk_size):
                    chunk = records[start:start + chunk_size]
                    stmt = (
                        dialect_insert(session, RawEvent)
                        .values(chunk)
                        .on_conflict_do_nothing(index_elements=['id'])
                        .returning(RawEvent.id)
                    )
                    result = await session.execute(stmt)
                    inserted.extend(result.scalars().all())
            return inserted

        try:
            inserted_ids = await asyncio.wait_for(insert_all(), timeout=self.config.STORE_TIMEOUT_SECONDS)
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            logger.error("Failed to persist event batch", events=len(events), error=str(e) or type(e).__name__)
            raise PersistenceError(f"raw event insert failed: {e}") from e

        return [by_id[event_id] for event_id in inserted_ids]

    async def process_batch(self, raw_events: Iterable[Any]) -> int:
        """
        Ingest one batch of gateway events

        Args:
            raw_events: Decoded events as sent by the bot

        Returns:
            Number of events newly persisted and dispatched

        Raises:
            PersistenceError: the raw store rejected the batch
            EnqueueError: events were stored but could not be queued
        """
        raw_events = list(raw_events or [])
        if not raw_events:
            return 0

        events = self.validate(raw_events)
        if not events:
            return 0

        stored = await self.persist(events)
        duplicates = len(events) - len(stored)
        if duplicates:
            logger.debug("Duplicate events skipped", duplicates=duplicates)

        if stored:
            await self.dispatcher.dispatch(stored)

        EngineLogger.log_pipeline_event(
            "ingested",
            received=len(raw_events),
            stored=len(stored),
            duplicates=duplicates
        )
        return len(stored)
