"""
Stats Query Service
Read-only views over the cumulative, daily and monthly tables
"""
from collections import defaultdict
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple
from pydantic import BaseModel
from sqlalchemy import asc, desc, func, select
from structlog import get_logger

from ..cache import TTLCache
from ..config import settings
from ..database import DatabaseManager
from ..models import NO_CHANNEL, DailyChannelStats, MemberCumulativeStats, MonthlyStats
from ..utils import local_date, percentage_change, utcnow

logger = get_logger()

PERIOD_DAYS = {'7d': 7, '30d': 30, '90d': 90}
LEADERBOARD_METRICS = ('messages', 'voice', 'reactions')
BADGES = ('gold', 'silver', 'bronze')
ACTIVE_WINDOW_DAYS = 7
TOP_MEMBERS_LIMIT = 5
CHANNEL_BREAKDOWN_LIMIT = 10
HIGH_DELETE_RATE = 0.10
SUSPICIOUS_DAY_FACTOR = 5
SUSPICIOUS_DAY_MINIMUM = 100

CUMULATIVE_SORT_COLUMNS = {
    'messages': MemberCumulativeStats.total_messages,
    'voice': MemberCumulativeStats.total_voice_minutes,
    'reactions': MemberCumulativeStats.total_reactions_given,
    'last_seen': MemberCumulativeStats.last_seen,
    'joined_at': MemberCumulativeStats.joined_at,
}


# Response schemas
class StatsTotals(BaseModel):
    messages: int = 0
    voice_minutes: int = 0
    reactions: int = 0


class PeriodTotals(StatsTotals):
    active_members: int = 0


class PeriodChanges(BaseModel):
    messages_change: int
    voice_change: int
    reactions_change: int
    members_change: int


class TimelinePoint(BaseModel):
    date: date
    messages: int = 0
    voice_minutes: int = 0
    reactions: int = 0
    active_members: int = 0


class RankingEntry(BaseModel):
    rank: int
    user_id: str
    value: int
    stats: Optional[StatsTotals] = None
    badge: Optional[str] = None


class TopMembers(BaseModel):
    messages: List[RankingEntry]
    voice: List[RankingEntry]


class GuildDashboard(BaseModel):
    guild_id: str
    period: str
    current: PeriodTotals
    previous: PeriodTotals
    changes: PeriodChanges
    timeline: List[TimelinePoint]
    top_members: TopMembers
    insights: List[str]
    health_score: int


class MemberTotals(StatsTotals):
    messages_deleted: int = 0
    messages_edited: int = 0
    reactions_given: int = 0
    reactions_received: int = 0


class ChannelStats(BaseModel):
    channel_id: str
    messages: int
    voice_minutes: int
    reactions: int


class MemberRanking(BaseModel):
    messages: Optional[int] = None
    voice: Optional[int] = None
    overall: Optional[int] = None
    total_members: int = 0


class ModerationFlags(BaseModel):
    high_delete_rate: bool = False
    suspicious_activity: bool = False


class MemberProfile(BaseModel):
    guild_id: str
    user_id: str
    period: str
    totals: MemberTotals
    timeline: List[TimelinePoint]
    channel_breakdown: List[ChannelStats]
    ranking: MemberRanking
    consistency: float
    moderation_flags: ModerationFlags
    last_seen: Optional[datetime] = None
    joined_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    page_size: int
    total: int
    total_pages: int


class MemberListItem(BaseModel):
    user_id: str
    stats: StatsTotals
    last_seen: Optional[datetime] = None
    joined_at: Optional[datetime] = None


class MemberList(BaseModel):
    members: List[MemberListItem]
    pagination: Pagination
    filters: Dict[str, object]


class Leaderboard(BaseModel):
    guild_id: str
    metric: str
    period: str
    entries: List[RankingEntry]
    updated_at: datetime


class TimelineAggregate(BaseModel):
    total_messages: int
    total_voice_minutes: int
    total_reactions: int
    avg_messages_per_day: float
    avg_voice_minutes_per_day: float
    avg_active_members: float


class Timeline(BaseModel):
    guild_id: str
    period: str
    granularity: str
    data_points: List[TimelinePoint]
    aggregated: TimelineAggregate


class MemberDay:
    """One member's counters for one day, summed across channels"""

    __slots__ = ('day', 'user_id', 'messages', 'voice_minutes', 'reactions_given',
                 'reactions_received', 'messages_deleted', 'messages_edited')

    def __init__(self, row):
        self.day = row.date
        self.user_id = row.user_id
        self.messages = row.messages or 0
        self.voice_minutes = row.voice_minutes or 0
        self.reactions_given = row.reactions_given or 0
        self.reactions_received = row.reactions_received or 0
        self.messages_deleted = row.messages_deleted or 0
        self.messages_edited = row.messages_edited or 0


def period_days(period: str) -> int:
    try:
        return PERIOD_DAYS[period]
    except KeyError:
        raise ValueError(f"Unsupported period {period!r}; expected one of {sorted(PERIOD_DAYS)}") from None


def rank_entries(totals: Dict[str, StatsTotals], metric: str, limit: int, badges: bool = False) -> List[RankingEntry]:
    """Order members by one metric, dropping zero values"""
    attribute = {'messages': 'messages', 'voice': 'voice_minutes', 'reactions': 'reactions'}[metric]
    ordered = sorted(
        ((user_id, getattr(stats, attribute), stats) for user_id, stats in totals.items()),
        key=lambda item: (-item[1], item[0])
    )
    entries = []
    for position, (user_id, value, stats) in enumerate(ordered, start=1):
        if value <= 0 or position > limit:
            break
        entries.append(RankingEntry(
            rank=position,
            user_id=user_id,
            value=value,
            stats=stats,
            badge=BADGES[position - 1] if badges and position <= len(BADGES) else None
        ))
    return entries


def rank_of(values: Dict[str, int], user_id: str) -> Optional[int]:
    """Competition rank of the member (1 + members strictly ahead), None if inactive"""
    mine = values.get(user_id, 0)
    if mine <= 0:
        return None
    return 1 + sum(1 for value in values.values() if value > mine)


class StatsQueryService:
    """Dashboard and profile reads; never touches raw events"""

    def __init__(self, db: DatabaseManager, cache: Optional[TTLCache] = None, config=None,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.cache = cache
        self.config = config or settings
        self.clock = clock

    def today(self) -> date:
        return local_date(self.clock(), self.config.STATS_TIMEZONE)

    def period_range(self, period: str, offset: int = 0) -> Tuple[date, date]:
        """Inclusive local date range for a period, shifted back offset periods"""
        days = period_days(period)
        end = self.today() - timedelta(days=days * offset)
        return end - timedelta(days=days - 1), end

    async def _member_days(self, guild_id: str, start: date, end: date,
                           user_id: Optional[str] = None) -> List[MemberDay]:
        conditions = [
            DailyChannelStats.guild_id == guild_id,
            DailyChannelStats.date >= start,
            DailyChannelStats.date <= end,
        ]
        if user_id is not None:
            conditions.append(DailyChannelStats.user_id == user_id)

        stmt = (
            select(
                DailyChannelStats.date,
                DailyChannelStats.user_id,
                func.sum(DailyChannelStats.messages_sent).label('messages'),
                func.sum(DailyChannelStats.voice_minutes).label('voice_minutes'),
                func.sum(DailyChannelStats.reactions_given).label('reactions_given'),
                func.sum(DailyChannelStats.reactions_received).label('reactions_received'),
                func.sum(DailyChannelStats.messages_deleted).label('messages_deleted'),
                func.sum(DailyChannelStats.messages_edited).label('messages_edited'),
            )
            .where(*conditions)
            .group_by(DailyChannelStats.date, DailyChannelStats.user_id)
        )
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return [MemberDay(row) for row in result]

    @staticmethod
    def _totals(rows: List[MemberDay]) -> PeriodTotals:
        return PeriodTotals(
            messages=sum(r.messages for r in rows),
            voice_minutes=sum(r.voice_minutes for r in rows),
            reactions=sum(r.reactions_given for r in rows),
            active_members=len({r.user_id for r in rows}),
        )

    @staticmethod
    def _per_member(rows: List[MemberDay]) -> Dict[str, StatsTotals]:
        totals: Dict[str, StatsTotals] = defaultdict(StatsTotals)
        for r in rows:
            stats = totals[r.user_id]
            stats.messages += r.messages
            stats.voice_minutes += r.voice_minutes
            stats.reactions += r.reactions_given
        return dict(totals)

    @staticmethod
    def _timeline(rows: List[MemberDay], start: date, end: date, granularity: str = 'day') -> List[TimelinePoint]:
        """Bucket member days per day or per ISO week, zero-filling gaps"""
        def bucket_of(day: date) -> date:
            if granularity == 'week':
                return day - timedelta(days=day.weekday())
            return day

        points: Dict[date, TimelinePoint] = {}
        members: Dict[date, set] = defaultdict(set)
        day = start
        while day <= end:
            key = bucket_of(day)
            points.setdefault(key, TimelinePoint(date=key))
            day += timedelta(days=1)

        for r in rows:
            key = bucket_of(r.day)
            point = points.setdefault(key, TimelinePoint(date=key))
            point.messages += r.messages
            point.voice_minutes += r.voice_minutes
            point.reactions += r.reactions_given
            members[key].add(r.user_id)

        for key, users in members.items():
            points[key].active_members = len(users)
        return [points[key] for key in sorted(points)]

    async def _known_members(self, guild_id: str) -> int:
        async with self.db.session() as session:
            return await session.scalar(
                select(func.count())
                .select_from(MemberCumulativeStats)
                .where(MemberCumulativeStats.guild_id == guild_id)
            ) or 0

    @staticmethod
    def _insights(current: PeriodTotals, changes: PeriodChanges, timeline: List[TimelinePoint]) -> List[str]:
        insights = []
        if changes.messages_change >= 20:
            insights.append(f"Message activity is up {changes.messages_change}% on the previous period")
        elif changes.messages_change <= -20:
            insights.append(f"Message activity is down {abs(changes.messages_change)}% on the previous period")
        if changes.members_change >= 20:
            insights.append(f"Active members grew {changes.members_change}%")
        elif changes.members_change <= -20:
            insights.append(f"Active members dropped {abs(changes.members_change)}%")
        if changes.voice_change >= 20:
            insights.append(f"Voice time is up {changes.voice_change}%")
        elif changes.voice_change <= -20:
            insights.append(f"Voice time is down {abs(changes.voice_change)}%")

        busiest = max(timeline, key=lambda p: p.messages, default=None)
        if busiest is not None and busiest.messages > 0:
            insights.append(f"Busiest day was {busiest.date.isoformat()} with {busiest.messages} messages")
        if current.messages == 0 and current.voice_minutes == 0:
            insights.append("No recorded activity in this period")
        return insights

    @staticmethod
    def _health_score(current: PeriodTotals, changes: PeriodChanges, timeline: List[TimelinePoint],
                      known_members: int) -> int:
        """
        0-100 blend of participation (40), activity trend (30) and
        regularity (30)
        """
        participation = min(current.active_members / known_members, 1.0) if known_members else 0.0
        trend = max(0.0, min(1.0, (50 + changes.messages_change / 2) / 100))
        active_days = sum(1 for p in timeline if p.messages or p.voice_minutes or p.reactions)
        regularity = active_days / len(timeline) if timeline else 0.0
        if current.messages == 0 and current.voice_minutes == 0 and current.reactions == 0:
            trend = 0.0
        return round(participation * 40 + trend * 30 + regularity * 30)

    async def get_guild_dashboard(self, guild_id: str, period: str = '7d') -> Dict:
        """Current vs previous period, timeline, top members and health"""
        period_days(period)

        async def compute():
            start, end = self.period_range(period)
            prev_start, prev_end = self.period_range(period, offset=1)

            rows = await self._member_days(guild_id, start, end)
            previous_rows = await self._member_days(guild_id, prev_start, prev_end)

            current = self._totals(rows)
            previous = self._totals(previous_rows)
            changes = PeriodChanges(
                messages_change=percentage_change(current.messages, previous.messages),
                voice_change=percentage_change(current.voice_minutes, previous.voice_minutes),
                reactions_change=percentage_change(current.reactions, previous.reactions),
                members_change=percentage_change(current.active_members, previous.active_members),
            )
            timeline = self._timeline(rows, start, end)
            per_member = self._per_member(rows)
            known = await self._known_members(guild_id)

            dashboard = GuildDashboard(
                guild_id=guild_id,
                period=period,
                current=current,
                previous=previous,
                changes=changes,
                timeline=timeline,
                top_members=TopMembers(
                    messages=rank_entries(per_member, 'messages', TOP_MEMBERS_LIMIT),
                    voice=rank_entries(per_member, 'voice', TOP_MEMBERS_LIMIT),
                ),
                insights=self._insights(current, changes, timeline),
                health_score=self._health_score(current, changes, timeline, known),
            )
            logger.debug("Dashboard computed", guild_id=guild_id, period=period)
            return dashboard.model_dump(mode='json')

        if self.cache is None:
            return await compute()
        return await self.cache.get_or_compute(f'dashboard:{guild_id}:{period}', compute)

    async def get_member_profile(self, guild_id: str, user_id: str, period: str = '30d') -> Dict:
        """Totals, timeline, channels, ranks and moderation flags for one member"""
        days = period_days(period)
        start, end = self.period_range(period)

        guild_rows = await self._member_days(guild_id, start, end)
        rows = [r for r in guild_rows if r.user_id == user_id]

        totals = MemberTotals(
            messages=sum(r.messages for r in rows),
            voice_minutes=sum(r.voice_minutes for r in rows),
            reactions=sum(r.reactions_given for r in rows),
            messages_deleted=sum(r.messages_deleted for r in rows),
            messages_edited=sum(r.messages_edited for r in rows),
            reactions_given=sum(r.reactions_given for r in rows),
            reactions_received=sum(r.reactions_received for r in rows),
        )

        per_member = self._per_member(guild_rows)
        ranking = MemberRanking(
            messages=rank_of({u: s.messages for u, s in per_member.items()}, user_id),
            voice=rank_of({u: s.voice_minutes for u, s in per_member.items()}, user_id),
            overall=rank_of(
                {u: s.messages + s.voice_minutes + s.reactions for u, s in per_member.items()},
                user_id
            ),
            total_members=len(per_member),
        )

        async with self.db.session() as session:
            channel_result = await session.execute(
                select(
                    DailyChannelStats.channel_id,
                    func.sum(DailyChannelStats.messages_sent).label('messages'),
                    func.sum(DailyChannelStats.voice_minutes).label('voice_minutes'),
                    func.sum(DailyChannelStats.reactions_given).label('reactions'),
                )
                .where(
                    DailyChannelStats.guild_id == guild_id,
                    DailyChannelStats.user_id == user_id,
                    DailyChannelStats.date >= start,
                    DailyChannelStats.date <= end,
                    DailyChannelStats.channel_id != NO_CHANNEL,
                )
                .group_by(DailyChannelStats.channel_id)
                .order_by(desc('messages'), DailyChannelStats.channel_id)
                .limit(CHANNEL_BREAKDOWN_LIMIT)
            )
            channels = [
                ChannelStats(
                    channel_id=row.channel_id,
                    messages=row.messages or 0,
                    voice_minutes=row.voice_minutes or 0,
                    reactions=row.reactions or 0,
                )
                for row in channel_result
            ]
            member = await session.get(MemberCumulativeStats, (guild_id, user_id))

        active_days = len({r.day for r in rows if r.messages or r.voice_minutes or r.reactions_given})
        daily_average = totals.messages / days
        suspicious = any(
            r.messages >= SUSPICIOUS_DAY_MINIMUM and r.messages > SUSPICIOUS_DAY_FACTOR * daily_average
            for r in rows
        )
        high_delete_rate = totals.messages > 0 and totals.messages_deleted / totals.messages > HIGH_DELETE_RATE

        profile = MemberProfile(
            guild_id=guild_id,
            user_id=user_id,
            period=period,
            totals=totals,
            timeline=self._timeline(rows, start, end),
            channel_breakdown=channels,
            ranking=ranking,
            consistency=round(active_days / days, 2),
            moderation_flags=ModerationFlags(
                high_delete_rate=high_delete_rate,
                suspicious_activity=suspicious,
            ),
            last_seen=member.last_seen if member else None,
            joined_at=member.joined_at if member else None,
        )
        return profile.model_dump(mode='json')

    async def list_members(self, guild_id: str, page: int = 1, page_size: int = 25,
                           sort_by: str = 'messages', sort_order: str = 'desc',
                           min_messages: Optional[int] = None, min_voice_minutes: Optional[int] = None,
                           active_only: bool = False) -> Dict:
        """Paginated lifetime stats from the cumulative table"""
        if sort_by not in CUMULATIVE_SORT_COLUMNS:
            raise ValueError(f"Unsupported sort field {sort_by!r}")
        if sort_order not in ('asc', 'desc'):
            raise ValueError(f"Unsupported sort order {sort_order!r}")
        page = max(page, 1)
        page_size = max(1, min(page_size, 100))

        conditions = [MemberCumulativeStats.guild_id == guild_id]
        if min_messages is not None:
            conditions.append(MemberCumulativeStats.total_messages >= min_messages)
        if min_voice_minutes is not None:
            conditions.append(MemberCumulativeStats.total_voice_minutes >= min_voice_minutes)
        if active_only:
            conditions.append(MemberCumulativeStats.last_seen >= self.clock() - timedelta(days=ACTIVE_WINDOW_DAYS))

        order = desc if sort_order == 'desc' else asc
        async with self.db.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(MemberCumulativeStats).where(*conditions)
            ) or 0
            result = await session.execute(
                select(MemberCumulativeStats)
                .where(*conditions)
                .order_by(order(CUMULATIVE_SORT_COLUMNS[sort_by]), MemberCumulativeStats.user_id)
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            members = [
                MemberListItem(
                    user_id=row.user_id,
                    stats=StatsTotals(
                        messages=row.total_messages,
                        voice_minutes=row.total_voice_minutes,
                        reactions=row.total_reactions_given,
                    ),
                    last_seen=row.last_seen,
                    joined_at=row.joined_at,
                )
                for row in result.scalars()
            ]

        listing = MemberList(
            members=members,
            pagination=Pagination(
                page=page,
                page_size=page_size,
                total=total,
                total_pages=(total + page_size - 1) // page_size,
            ),
            filters={
                'min_messages': min_messages,
                'min_voice_minutes': min_voice_minutes,
                'active_only': active_only,
            },
        )
        return listing.model_dump(mode='json')

    async def get_leaderboard(self, guild_id: str, metric: str = 'messages', period: str = '30d',
                              limit: int = 10) -> Dict:
        """
        Top members for one metric

        Period ``all`` reads lifetime counters; other periods sum the daily
        rows. The first three entries carry gold, silver and bronze badges.
        """
        if metric not in LEADERBOARD_METRICS:
            raise ValueError(f"Unsupported metric {metric!r}")
        limit = max(1, min(limit, 100))

        if period == 'all':
            async with self.db.session() as session:
                result = await session.execute(
                    select(MemberCumulativeStats).where(MemberCumulativeStats.guild_id == guild_id)
                )
                per_member = {
                    row.user_id: StatsTotals(
                        messages=row.total_messages,
                        voice_minutes=row.total_voice_minutes,
                        reactions=row.total_reactions_given,
                    )
                    for row in result.scalars()
                }
        else:
            start, end = self.period_range(period)
            per_member = self._per_member(await self._member_days(guild_id, start, end))

        board = Leaderboard(
            guild_id=guild_id,
            metric=metric,
            period=period,
            entries=rank_entries(per_member, metric, limit, badges=True),
            updated_at=self.clock(),
        )
        return board.model_dump(mode='json')

    async def get_timeline(self, guild_id: str, period: str = '30d', granularity: str = 'day') -> Dict:
        if granularity not in ('day', 'week'):
            raise ValueError(f"Unsupported granularity {granularity!r}")
        days = period_days(period)
        start, end = self.period_range(period)
        rows = await self._member_days(guild_id, start, end)

        totals = self._totals(rows)
        daily = self._timeline(rows, start, end)
        points = daily if granularity == 'day' else self._timeline(rows, start, end, granularity='week')

        timeline = Timeline(
            guild_id=guild_id,
            period=period,
            granularity=granularity,
            data_points=points,
            aggregated=TimelineAggregate(
                total_messages=totals.messages,
                total_voice_minutes=totals.voice_minutes,
                total_reactions=totals.reactions,
                avg_messages_per_day=round(totals.messages / days, 2),
                avg_voice_minutes_per_day=round(totals.voice_minutes / days, 2),
                avg_active_members=round(sum(p.active_members for p in daily) / days, 2),
            ),
        )
        return timeline.model_dump(mode='json')

    async def get_member_monthly_history(self, guild_id: str, user_id: str, months: int = 12) -> List[Dict]:
        """Compacted monthly rows, newest first"""
        async with self.db.session() as session:
            result = await session.execute(
                select(MonthlyStats)
                .where(MonthlyStats.guild_id == guild_id, MonthlyStats.user_id == user_id)
                .order_by(MonthlyStats.month.desc())
                .limit(max(1, months))
            )
            return [row.to_dict() for row in result.scalars()]
