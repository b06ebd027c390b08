"""
Metrics Aggregation Service
Builds guild-wide snapshots for 5 minute, hourly and daily windows
"""
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Dict
from sqlalchemy import distinct, func, select
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from ..database import DatabaseManager, dialect_insert
from ..events import EventType, VOICE_EVENT_TYPES
from ..exceptions import ProcessingError
from ..models import MetricsSnapshot, RawEvent
from ..utils import utcnow

logger = get_logger()

PERIOD_TYPES = ('5min', 'hourly', 'daily')


@dataclass
class PeriodMetrics:
    guild_id: str
    period_start: datetime
    period_end: datetime
    period_type: str
    total_messages: int = 0
    total_voice_minutes: int = 0
    total_reactions: int = 0
    unique_active_users: int = 0
    event_counts: Dict[str, int] = field(default_factory=dict)


class MetricsAggregationService:
    """Reads raw events for a window and writes one snapshot row"""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def aggregate_period(self, guild_id: str, start: datetime, end: datetime,
                               period_type: str) -> PeriodMetrics:
        """
        Compute metrics over the half-open window [start, end)

        Voice minutes here are a coarse estimate (voice events // 2) and
        are not comparable with the session-based minutes on the member
        tables.
        """
        if period_type not in PERIOD_TYPES:
            raise ValueError(f"Unknown period type {period_type}")
        if end <= start:
            raise ValueError("Window end must be after its start")

        window = (
            RawEvent.guild_id == guild_id,
            RawEvent.timestamp >= start,
            RawEvent.timestamp < end,
        )

        async with self.db.session() as session:
            counts_result = await session.execute(
                select(RawEvent.type, func.count())
                .where(*window)
                .group_by(RawEvent.type)
            )
            event_counts = {row[0]: row[1] for row in counts_result}

            unique_users = await session.scalar(
                select(func.count(distinct(RawEvent.user_id)))
                .where(*window, RawEvent.user_id.is_not(None))
            )

        voice_events = sum(event_counts.get(t.value, 0) for t in VOICE_EVENT_TYPES)
        return PeriodMetrics(
            guild_id=guild_id,
            period_start=start,
            period_end=end,
            period_type=period_type,
            total_messages=event_counts.get(EventType.MESSAGE_CREATE.value, 0),
            total_voice_minutes=voice_events // 2,
            total_reactions=event_counts.get(EventType.MESSAGE_REACTION_ADD.value, 0),
            unique_active_users=unique_users or 0,
            event_counts=event_counts,
        )

    async def save_snapshot(self, metrics: PeriodMetrics):
        """Write the snapshot; a retry for the same window replaces the row"""
        values = asdict(metrics)
        values['created_at'] = utcnow()
        keys = ['guild_id', 'period_start', 'period_end', 'period_type']

        async with self.db.session() as session:
            stmt = dialect_insert(session, MetricsSnapshot).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=keys,
                set_={
                    column: stmt.excluded[column]
                    for column in values if column not in keys
                }
            )
            await session.execute(stmt)

    async def run(self, guild_id: str, start: datetime, end: datetime, period_type: str) -> PeriodMetrics:
        """Aggregate and persist one window; raises so the job is retried"""
        try:
            metrics = await self.aggregate_period(guild_id, start, end, period_type)
            await self.save_snapshot(metrics)
        except SQLAlchemyError as e:
            logger.error(
                "Metrics aggregation failed",
                guild_id=guild_id,
                period_type=period_type,
                start=start.isoformat(),
                error=str(e)
            )
            raise ProcessingError(f"aggregation failed for {guild_id}: {e}") from e

        logger.info(
            "Metrics snapshot saved",
            guild_id=guild_id,
            period_type=period_type,
            start=start.isoformat(),
            messages=metrics.total_messages,
            active_users=metrics.unique_active_users
        )
        return metrics
