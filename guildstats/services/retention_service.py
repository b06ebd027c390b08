"""
Retention Service
Prunes raw events and compacted daily rows past their retention window
"""
from datetime import datetime, timedelta
from typing import Dict
from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from ..config import settings
from ..database import DatabaseManager
from ..exceptions import ProcessingError
from ..models import DailyChannelStats, MonthlyStats, RawEvent
from ..utils import month_start, next_month, utcnow

logger = get_logger()


class RetentionService:
    def __init__(self, db: DatabaseManager, config=None):
        self.db = db
        self.config = config or settings

    async def cleanup_raw_events(self, now: datetime = None) -> int:
        """Delete raw events older than the raw retention window"""
        now = now or utcnow()
        cutoff = now - timedelta(days=self.config.RAW_EVENT_RETENTION_DAYS)
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    delete(RawEvent).where(RawEvent.timestamp < cutoff)
                )
                deleted = result.rowcount
        except SQLAlchemyError as e:
            logger.error("Raw event cleanup failed", cutoff=cutoff.isoformat(), error=str(e))
            raise ProcessingError(f"raw event cleanup failed: {e}") from e

        logger.info("Raw events cleaned up", cutoff=cutoff.isoformat(), deleted=deleted)
        return deleted

    async def cleanup_daily_stats(self, now: datetime = None) -> Dict[str, int]:
        """
        Delete daily rows older than the daily retention window

        Only months already compacted into monthly rows are pruned, so a
        late or failed rollup never loses data.
        """
        now = now or utcnow()
        cutoff = (now - timedelta(days=self.config.DAILY_STATS_RETENTION_DAYS)).date()

        deleted = 0
        retained_months = 0
        try:
            async with self.db.session() as session:
                result = await session.execute(
                    select(DailyChannelStats.guild_id, DailyChannelStats.date)
                    .where(DailyChannelStats.date < cutoff)
                    .distinct()
                )
                candidates = {(guild_id, month_start(day)) for guild_id, day in result}

                for guild_id, month in sorted(candidates):
                    compacted = await session.scalar(
                        select(func.count())
                        .select_from(MonthlyStats)
                        .where(MonthlyStats.guild_id == guild_id, MonthlyStats.month == month)
                    )
                    if not compacted:
                        retained_months += 1
                        logger.warning(
                            "Daily stats retained, month not rolled up",
                            guild_id=guild_id,
                            month=month.isoformat()
                        )
                        continue

                    outcome = await session.execute(
                        delete(DailyChannelStats).where(
                            and_(
                                DailyChannelStats.guild_id == guild_id,
                                DailyChannelStats.date >= month,
                                DailyChannelStats.date < min(next_month(month), cutoff)
                            )
                        )
                    )
                    deleted += outcome.rowcount
        except SQLAlchemyError as e:
            logger.error("Daily stats cleanup failed", cutoff=cutoff.isoformat(), error=str(e))
            raise ProcessingError(f"daily stats cleanup failed: {e}") from e

        logger.info(
            "Daily stats cleaned up",
            cutoff=cutoff.isoformat(),
            deleted=deleted,
            retained_months=retained_months
        )
        return {'deleted': deleted, 'retained_months': retained_months}
