"""
Monthly Rollup Service
Compacts a month of daily channel rows into one row per member
"""
from collections import defaultdict
from datetime import date
from typing import Any, Dict, List
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from structlog import get_logger

from ..config import settings
from ..database import DatabaseManager, dialect_insert
from ..models import NO_CHANNEL, DailyChannelStats, MonthlyStats
from ..utils import EngineLogger, days_in_month, month_start, next_month, utcnow

logger = get_logger()

# Daily counter -> monthly total
SUMMED_COLUMNS = {
    'messages_sent': 'total_messages',
    'voice_minutes': 'total_voice_minutes',
    'reactions_given': 'total_reactions_given',
    'reactions_received': 'total_reactions_received',
    'messages_deleted': 'total_messages_deleted',
    'messages_edited': 'total_messages_edited',
}


class MonthlyRollupService:
    def __init__(self, db: DatabaseManager, config=None):
        self.db = db
        self.config = config or settings

    async def guilds_with_activity(self, month: date) -> List[str]:
        start, end = month_start(month), next_month(month)
        async with self.db.session() as session:
            result = await session.execute(
                select(DailyChannelStats.guild_id)
                .where(DailyChannelStats.date >= start, DailyChannelStats.date < end)
                .distinct()
            )
            return list(result.scalars().all())

    def summarize_member(self, rows: List[DailyChannelStats], month: date) -> Dict[str, Any]:
        """
        Fold one member's daily rows into monthly totals

        Totals include rows on the sentinel channel; the top channel list
        does not.
        """
        totals = {target: 0 for target in SUMMED_COLUMNS.values()}
        per_channel: Dict[str, int] = defaultdict(int)
        active_dates = set()

        for row in rows:
            for source, target in SUMMED_COLUMNS.items():
                totals[target] += getattr(row, source) or 0
            active_dates.add(row.date)
            if row.channel_id != NO_CHANNEL and row.messages_sent > 0:
                per_channel[row.channel_id] += row.messages_sent

        days = days_in_month(month)
        top_channels = sorted(per_channel.items(), key=lambda item: (-item[1], item[0]))
        top_channels = top_channels[:self.config.TOP_CHANNELS_LIMIT]

        return {
            **totals,
            'active_days': len(active_dates),
            'avg_messages_per_day': round(totals['total_messages'] / days, 2),
            'avg_voice_minutes_per_day': round(totals['total_voice_minutes'] / days, 2),
            'top_channels': [
                {'channel_id': channel_id, 'messages': messages}
                for channel_id, messages in top_channels
            ],
        }

    async def rollup_guild(self, guild_id: str, month: date) -> int:
        """Write monthly rows for every member active in the guild that month"""
        month = month_start(month)
        end = next_month(month)

        async with self.db.session() as session:
            result = await session.execute(
                select(DailyChannelStats)
                .where(
                    DailyChannelStats.guild_id == guild_id,
                    DailyChannelStats.date >= month,
                    DailyChannelStats.date < end
                )
                .order_by(DailyChannelStats.user_id, DailyChannelStats.date)
            )
            by_member: Dict[str, List[DailyChannelStats]] = defaultdict(list)
            for row in result.scalars():
                by_member[row.user_id].append(row)

            computed_at = utcnow()
            for user_id, rows in by_member.items():
                values = {
                    'guild_id': guild_id,
                    'user_id': user_id,
                    'month': month,
                    'computed_at': computed_at,
                    **self.summarize_member(rows, month),
                }
                stmt = dialect_insert(session, MonthlyStats).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=['guild_id', 'user_id', 'month'],
                    set_={
                        column: stmt.excluded[column]
                        for column in values if column not in ('guild_id', 'user_id', 'month')
                    }
                )
                await session.execute(stmt)

        return len(by_member)

    async def rollup_month(self, month: date) -> Dict[str, int]:
        """
        Roll up every guild with daily rows in the month

        A failing guild is logged and skipped; the rest still run.

        Args:
            month: Any day in the month to compact

        Returns:
            Counts of guilds and member rows written
        """
        month = month_start(month)
        guild_ids = await self.guilds_with_activity(month)

        guilds_done = 0
        members_done = 0
        for guild_id in guild_ids:
            try:
                members_done += await self.rollup_guild(guild_id, month)
                guilds_done += 1
            except SQLAlchemyError as e:
                logger.error("Monthly rollup failed for guild", guild_id=guild_id, month=month.isoformat(), error=str(e))

        EngineLogger.log_pipeline_event(
            "monthly-rollup",
            month=month.isoformat(),
            guilds=guilds_done,
            failed=len(guild_ids) - guilds_done,
            members=members_done
        )
        return {'guilds': guilds_done, 'members': members_done}
