"""
Database Models for the Stats Engine
SQLAlchemy ORM models for raw events, live counters and rollups
"""
from datetime import date, datetime
from typing import Optional, Dict, Any, List
from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Float, JSON,
    CheckConstraint, Index, PrimaryKeyConstraint
)
from sqlalchemy.orm import declarative_base
from pydantic import BaseModel, ConfigDict

from .utils import utcnow

Base = declarative_base()

# Channel id used for activity that cannot be attributed to a channel
NO_CHANNEL = '__global__'


# Pydantic schemas for serialization
class MemberStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    guild_id: str
    user_id: str
    total_messages: int = 0
    total_voice_minutes: int = 0
    total_reactions_given: int = 0
    total_reactions_received: int = 0
    last_seen: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    last_voice_at: Optional[datetime] = None
    joined_at: Optional[datetime] = None


class SnapshotResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    guild_id: str
    period_start: datetime
    period_end: datetime
    period_type: str
    total_messages: int
    total_voice_minutes: int
    total_reactions: int
    unique_active_users: int
    event_counts: Dict[str, int] = {}


class MonthlyStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    guild_id: str
    user_id: str
    month: date
    total_messages: int
    total_voice_minutes: int
    total_reactions_given: int
    total_reactions_received: int
    total_messages_deleted: int
    total_messages_edited: int
    active_days: int
    avg_messages_per_day: float
    avg_voice_minutes_per_day: float
    top_channels: List[Dict[str, Any]] = []


# Database Models
class Guild(Base):
    """Guild registry row; owned by the setup workflow, read here"""
    __tablename__ = 'guilds'

    guild_id = Column(String(32), primary_key=True)
    name = Column(String(100))
    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)


class RawEvent(Base):
    """Append-only record of every accepted gateway event"""
    __tablename__ = 'raw_events'

    # Deterministic fingerprint of the event identity
    id = Column(String(64), primary_key=True)
    type = Column(String(64), nullable=False)
    guild_id = Column(String(32))
    user_id = Column(String(32))
    channel_id = Column(String(32))
    message_id = Column(String(32))
    role_id = Column(String(32))
    timestamp = Column(DateTime, nullable=False)
    data = Column(JSON)
    received_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index('ix_raw_events_guild_timestamp', 'guild_id', 'timestamp'),
        Index('ix_raw_events_guild_type_timestamp', 'guild_id', 'type', 'timestamp'),
        Index('ix_raw_events_timestamp', 'timestamp'),
    )


class MemberCumulativeStats(Base):
    """Lifetime counters per member, maintained by upsert-increment"""
    __tablename__ = 'member_cumulative_stats'

    guild_id = Column(String(32), nullable=False)
    user_id = Column(String(32), nullable=False)

    total_messages = Column(Integer, default=0, nullable=False)
    total_voice_minutes = Column(Integer, default=0, nullable=False)
    total_reactions_given = Column(Integer, default=0, nullable=False)
    total_reactions_received = Column(Integer, default=0, nullable=False)

    last_seen = Column(DateTime)
    last_message_at = Column(DateTime)
    last_voice_at = Column(DateTime)
    joined_at = Column(DateTime)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        PrimaryKeyConstraint('guild_id', 'user_id'),
        Index('ix_member_cumulative_guild_messages', 'guild_id', 'total_messages'),
        Index('ix_member_cumulative_guild_voice', 'guild_id', 'total_voice_minutes'),
        CheckConstraint('total_messages >= 0', name='ck_member_cumulative_messages'),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for query responses"""
        return MemberStatsResponse.model_validate(self).model_dump()


class DailyChannelStats(Base):
    """Per member, per day, per channel counters"""
    __tablename__ = 'daily_channel_stats'

    guild_id = Column(String(32), nullable=False)
    user_id = Column(String(32), nullable=False)
    date = Column(Date, nullable=False)
    channel_id = Column(String(32), nullable=False)

    messages_sent = Column(Integer, default=0, nullable=False)
    messages_deleted = Column(Integer, default=0, nullable=False)
    messages_edited = Column(Integer, default=0, nullable=False)
    deleted_by_self = Column(Integer, default=0, nullable=False)
    deleted_by_mod = Column(Integer, default=0, nullable=False)
    voice_minutes = Column(Integer, default=0, nullable=False)
    reactions_given = Column(Integer, default=0, nullable=False)
    reactions_received = Column(Integer, default=0, nullable=False)

    # Local hour of the most recent activity that day
    peak_hour = Column(Integer)
    first_message_at = Column(DateTime)
    last_message_at = Column(DateTime)

    __table_args__ = (
        PrimaryKeyConstraint('guild_id', 'user_id', 'date', 'channel_id'),
        Index('ix_daily_channel_guild_date', 'guild_id', 'date'),
        Index('ix_daily_channel_guild_user_date', 'guild_id', 'user_id', 'date'),
    )


class MonthlyStats(Base):
    """Compacted per member monthly totals"""
    __tablename__ = 'monthly_stats'

    guild_id = Column(String(32), nullable=False)
    user_id = Column(String(32), nullable=False)
    month = Column(Date, nullable=False)  # first day of month

    total_messages = Column(Integer, default=0, nullable=False)
    total_voice_minutes = Column(Integer, default=0, nullable=False)
    total_reactions_given = Column(Integer, default=0, nullable=False)
    total_reactions_received = Column(Integer, default=0, nullable=False)
    total_messages_deleted = Column(Integer, default=0, nullable=False)
    total_messages_edited = Column(Integer, default=0, nullable=False)
    active_days = Column(Integer, default=0, nullable=False)
    avg_messages_per_day = Column(Float, default=0.0, nullable=False)
    avg_voice_minutes_per_day = Column(Float, default=0.0, nullable=False)
    top_channels = Column(JSON)
    computed_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        PrimaryKeyConstraint('guild_id', 'user_id', 'month'),
        Index('ix_monthly_stats_guild_month', 'guild_id', 'month'),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for query responses"""
        return MonthlyStatsResponse(
            guild_id=self.guild_id,
            user_id=self.user_id,
            month=self.month,
            total_messages=self.total_messages,
            total_voice_minutes=self.total_voice_minutes,
            total_reactions_given=self.total_reactions_given,
            total_reactions_received=self.total_reactions_received,
            total_messages_deleted=self.total_messages_deleted,
            total_messages_edited=self.total_messages_edited,
            active_days=self.active_days,
            avg_messages_per_day=self.avg_messages_per_day,
            avg_voice_minutes_per_day=self.avg_voice_minutes_per_day,
            top_channels=self.top_channels or []
        ).model_dump()


class MetricsSnapshot(Base):
    """Guild-wide metrics for one time window"""
    __tablename__ = 'metrics_snapshots'

    guild_id = Column(String(32), nullable=False)
    period_start = Column(DateTime, nullable=False)
    period_end = Column(DateTime, nullable=False)
    period_type = Column(String(10), nullable=False)  # 5min, hourly, daily

    total_messages = Column(Integer, default=0, nullable=False)
    total_voice_minutes = Column(Integer, default=0, nullable=False)
    total_reactions = Column(Integer, default=0, nullable=False)
    unique_active_users = Column(Integer, default=0, nullable=False)
    event_counts = Column(JSON)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        PrimaryKeyConstraint('guild_id', 'period_start', 'period_end', 'period_type'),
        Index('ix_metrics_snapshots_guild_type_start', 'guild_id', 'period_type', 'period_start'),
        CheckConstraint("period_type IN ('5min', 'hourly', 'daily')", name='ck_metrics_snapshots_period_type'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return SnapshotResponse(
            guild_id=self.guild_id,
            period_start=self.period_start,
            period_end=self.period_end,
            period_type=self.period_type,
            total_messages=self.total_messages,
            total_voice_minutes=self.total_voice_minutes,
            total_reactions=self.total_reactions,
            unique_active_users=self.unique_active_users,
            event_counts=self.event_counts or {}
        ).model_dump()
