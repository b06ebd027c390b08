"""
Gateway Event Model
Typed representation of the events forwarded by bot processes
"""
import hashlib
import json
import math
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Union
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator

from .exceptions import EventValidationError
from .utils import from_ms


class EventType(str, Enum):
    # General
    READY = 'READY'
    ERROR = 'ERROR'
    WARN = 'WARN'
    DEBUG = 'DEBUG'

    # Messages
    MESSAGE_CREATE = 'MESSAGE-CREATE'
    MESSAGE_UPDATE = 'MESSAGE-UPDATE'
    MESSAGE_DELETE = 'MESSAGE-DELETE'
    MESSAGE_DELETE_BULK = 'MESSAGE-DELETE-BULK'

    # Reactions
    MESSAGE_REACTION_ADD = 'MESSAGE-REACTION-ADD'
    MESSAGE_REACTION_REMOVE = 'MESSAGE-REACTION-REMOVE'
    MESSAGE_REACTION_REMOVE_ALL = 'MESSAGE-REACTION-REMOVE-ALL'
    MESSAGE_REACTION_REMOVE_EMOJI = 'MESSAGE-REACTION-REMOVE-EMOJI'

    # Members
    GUILD_MEMBER_ADD = 'GUILD-MEMBER-ADD'
    GUILD_MEMBER_REMOVE = 'GUILD-MEMBER-REMOVE'
    GUILD_MEMBER_UPDATE = 'GUILD-MEMBER-UPDATE'
    GUILD_BAN_ADD = 'GUILD-BAN-ADD'
    GUILD_BAN_REMOVE = 'GUILD-BAN-REMOVE'

    # Roles
    ROLE_CREATE = 'ROLE-CREATE'
    ROLE_DELETE = 'ROLE-DELETE'
    ROLE_UPDATE = 'ROLE-UPDATE'

    # Channels
    CHANNEL_CREATE = 'CHANNEL-CREATE'
    CHANNEL_DELETE = 'CHANNEL-DELETE'
    CHANNEL_UPDATE = 'CHANNEL-UPDATE'
    CHANNEL_PINS_UPDATE = 'CHANNEL-PINS-UPDATE'

    # Guilds
    GUILD_CREATE = 'GUILD-CREATE'
    GUILD_DELETE = 'GUILD-DELETE'
    GUILD_UPDATE = 'GUILD-UPDATE'
    GUILD_LIST = 'GUILD-LIST'
    GUILD_SYNC = 'GUILD-SYNC'
    GUILD_UNAVAILABLE = 'GUILD-UNAVAILABLE'
    GUILD_INTEGRATIONS_UPDATE = 'GUILD-INTEGRATIONS-UPDATE'

    # Voice
    VOICE_STATE_UPDATE = 'VOICE-STATE-UPDATE'
    VOICE_CHANNEL_JOIN = 'VOICE-CHANNEL-JOIN'
    VOICE_CHANNEL_LEAVE = 'VOICE-CHANNEL-LEAVE'
    VOICE_CHANNEL_MOVE = 'VOICE-CHANNEL-MOVE'
    VOICE_MUTE = 'VOICE-MUTE'
    VOICE_UNMUTE = 'VOICE-UNMUTE'
    VOICE_DEAFEN = 'VOICE-DEAFEN'
    VOICE_UNDEAFEN = 'VOICE-UNDEAFEN'
    VOICE_SELF_MUTE = 'VOICE-SELF-MUTE'
    VOICE_SELF_DEAFEN = 'VOICE-SELF-DEAFEN'
    VOICE_STREAMING = 'VOICE-STREAMING'
    VOICE_VIDEO = 'VOICE-VIDEO'

    # Presence
    PRESENCE_UPDATE = 'PRESENCE-UPDATE'
    USER_UPDATE = 'USER-UPDATE'
    TYPING_START = 'TYPING-START'

    # Invites
    INVITE_CREATE = 'INVITE-CREATE'
    INVITE_DELETE = 'INVITE-DELETE'
    INVITE_USE = 'INVITE-USE'

    INTERACTION_CREATE = 'INTERACTION-CREATE'

    # Emojis
    EMOJI_CREATE = 'EMOJI-CREATE'
    EMOJI_DELETE = 'EMOJI-DELETE'
    EMOJI_UPDATE = 'EMOJI-UPDATE'

    # Threads
    THREAD_CREATE = 'THREAD-CREATE'
    THREAD_UPDATE = 'THREAD-UPDATE'
    THREAD_DELETE = 'THREAD-DELETE'
    THREAD_LIST_SYNC = 'THREAD-LIST-SYNC'
    THREAD_MEMBER_UPDATE = 'THREAD-MEMBER-UPDATE'
    THREAD_MEMBERS_UPDATE = 'THREAD-MEMBERS-UPDATE'

    WEBHOOKS_UPDATE = 'WEBHOOKS-UPDATE'

    # AutoMod and audit log
    AUTO_MODERATION_ACTION_EXECUTION = 'AUTO-MODERATION-ACTION-EXECUTION'
    AUTO_MODERATION_RULE_CREATE = 'AUTO-MODERATION-RULE-CREATE'
    AUTO_MODERATION_RULE_DELETE = 'AUTO-MODERATION-RULE-DELETE'
    AUTO_MODERATION_RULE_UPDATE = 'AUTO-MODERATION-RULE-UPDATE'
    GUILD_AUDIT_LOG_ENTRY_CREATE = 'GUILD-AUDIT-LOG-ENTRY-CREATE'

    # Bot-side snapshots
    METRICS_SNAPSHOT = 'METRICS-SNAPSHOT'
    MEMBER_ACTIVITY_SNAPSHOT = 'MEMBER-ACTIVITY-SNAPSHOT'


# Types that are not bound to a guild
GLOBAL_EVENT_TYPES = frozenset({
    EventType.READY,
    EventType.ERROR,
    EventType.WARN,
    EventType.DEBUG,
    EventType.GUILD_LIST,
    EventType.GUILD_SYNC,
    EventType.USER_UPDATE,
})

MESSAGE_EVENT_TYPES = frozenset({
    EventType.MESSAGE_CREATE,
    EventType.MESSAGE_UPDATE,
    EventType.MESSAGE_DELETE,
})

VOICE_EVENT_TYPES = frozenset({
    EventType.VOICE_STATE_UPDATE,
    EventType.VOICE_CHANNEL_JOIN,
    EventType.VOICE_CHANNEL_LEAVE,
    EventType.VOICE_CHANNEL_MOVE,
})

REACTION_EVENT_TYPES = frozenset({
    EventType.MESSAGE_REACTION_ADD,
})

MEMBER_EVENT_TYPES = frozenset({
    EventType.GUILD_MEMBER_ADD,
    EventType.GUILD_MEMBER_REMOVE,
    EventType.GUILD_MEMBER_UPDATE,
})

MODERATION_EVENT_TYPES = frozenset({
    EventType.GUILD_BAN_ADD,
    EventType.GUILD_BAN_REMOVE,
    EventType.GUILD_MEMBER_REMOVE,
    EventType.AUTO_MODERATION_ACTION_EXECUTION,
    EventType.GUILD_AUDIT_LOG_ENTRY_CREATE,
})

ENGAGEMENT_EVENT_TYPES = frozenset({
    EventType.MESSAGE_CREATE,
    EventType.VOICE_STATE_UPDATE,
    EventType.MESSAGE_REACTION_ADD,
})

# Queue priorities, lower is served first
PRIORITY_MODERATION = 1
PRIORITY_ENGAGEMENT = 5
PRIORITY_DEFAULT = 10


def priority_for(event_type: EventType) -> int:
    if event_type in MODERATION_EVENT_TYPES:
        return PRIORITY_MODERATION
    if event_type in ENGAGEMENT_EVENT_TYPES:
        return PRIORITY_ENGAGEMENT
    return PRIORITY_DEFAULT


def processor_for(event_type: EventType) -> str:
    """Name of the processor that consumes this event type"""
    if event_type in MESSAGE_EVENT_TYPES:
        return 'message'
    if event_type in VOICE_EVENT_TYPES:
        return 'voice'
    if event_type in REACTION_EVENT_TYPES:
        return 'reaction'
    if event_type in MEMBER_EVENT_TYPES:
        return 'member'
    return 'ignored'


def _snowflake(value):
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    raise ValueError('snowflake must be a string or integer')


# Discord ids arrive as strings or integers
Snowflake = Annotated[Optional[str], BeforeValidator(_snowflake)]


# Payload variants
class EventPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='allow')


class GenericEventData(EventPayload):
    pass


class MessageCreateData(EventPayload):
    content: Optional[str] = None
    attachment_count: int = Field(0, alias='attachmentCount')
    is_reply: bool = Field(False, alias='isReply')


class MessageUpdateData(EventPayload):
    edited_at: Optional[int] = Field(None, alias='editedAt')


class DeletedBy(EventPayload):
    user_id: Snowflake = Field(alias='userId')
    username: Optional[str] = None


class MessageDeleteData(EventPayload):
    author_id: Snowflake = Field(None, alias='authorId')
    deleted_by: Optional[Union[DeletedBy, str]] = Field(None, alias='deletedBy')

    @field_validator('deleted_by', mode='before')
    @classmethod
    def coerce_deleted_by(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @property
    def deleter_id(self) -> Optional[str]:
        if isinstance(self.deleted_by, DeletedBy):
            return self.deleted_by.user_id
        return self.deleted_by


class VoiceStateData(EventPayload):
    action: Optional[Literal['join', 'leave', 'move']] = None
    old_channel_id: Snowflake = Field(None, alias='oldChannelId')
    self_mute: Optional[bool] = Field(None, alias='selfMute')
    self_deaf: Optional[bool] = Field(None, alias='selfDeaf')


class ReactionAddData(EventPayload):
    message_author_id: Snowflake = Field(None, alias='messageAuthorId')
    emoji: Optional[Any] = None


class MemberAddData(EventPayload):
    joined_at: Optional[int] = Field(None, alias='joinedAt')


class MemberRemoveData(EventPayload):
    kicked_by: Snowflake = Field(None, alias='kickedBy')


class BanData(EventPayload):
    reason: Optional[str] = None
    moderator_id: Snowflake = Field(None, alias='moderatorId')


PAYLOAD_MODELS = {
    EventType.MESSAGE_CREATE: MessageCreateData,
    EventType.MESSAGE_UPDATE: MessageUpdateData,
    EventType.MESSAGE_DELETE: MessageDeleteData,
    EventType.VOICE_STATE_UPDATE: VoiceStateData,
    EventType.VOICE_CHANNEL_JOIN: VoiceStateData,
    EventType.VOICE_CHANNEL_LEAVE: VoiceStateData,
    EventType.VOICE_CHANNEL_MOVE: VoiceStateData,
    EventType.MESSAGE_REACTION_ADD: ReactionAddData,
    EventType.GUILD_MEMBER_ADD: MemberAddData,
    EventType.GUILD_MEMBER_REMOVE: MemberRemoveData,
    EventType.GUILD_BAN_ADD: BanData,
    EventType.GUILD_BAN_REMOVE: BanData,
}


class BotEvent(BaseModel):
    """A single gateway event as forwarded by a bot process"""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: EventType
    guild_id: Snowflake = Field(None, alias='guildId')
    user_id: Snowflake = Field(None, alias='userId')
    channel_id: Snowflake = Field(None, alias='channelId')
    message_id: Snowflake = Field(None, alias='messageId')
    role_id: Snowflake = Field(None, alias='roleId')
    timestamp: int = Field(gt=0)  # epoch milliseconds
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('timestamp', mode='before')
    @classmethod
    def coerce_timestamp(cls, v):
        if isinstance(v, bool) or v is None:
            raise ValueError('timestamp must be epoch milliseconds')
        if isinstance(v, float):
            return int(v)
        return v

    @field_validator('data', mode='before')
    @classmethod
    def default_data(cls, v):
        return {} if v is None else v

    @property
    def occurred_at(self):
        """Event time as a naive UTC datetime"""
        return from_ms(self.timestamp)

    @property
    def payload(self) -> EventPayload:
        model = PAYLOAD_MODELS.get(self.type, GenericEventData)
        return model.model_validate(self.data)

    @property
    def priority(self) -> int:
        return priority_for(self.type)

    @property
    def processor(self) -> str:
        return processor_for(self.type)

    def fingerprint(self) -> str:
        """Deterministic id: identical events hash to the same key"""
        canonical = json.dumps(self.to_wire(), sort_keys=True, separators=(',', ':'), default=str)
        return hashlib.sha256(canonical.encode('utf-8')).hexdigest()

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True)

    @classmethod
    def from_wire(cls, wire: Dict[str, Any]) -> 'BotEvent':
        return cls.model_validate(wire)

    def to_record(self) -> Dict[str, Any]:
        """Column values for the raw event store"""
        return {
            'id': self.fingerprint(),
            'type': self.type.value,
            'guild_id': self.guild_id,
            'user_id': self.user_id,
            'channel_id': self.channel_id,
            'message_id': self.message_id,
            'role_id': self.role_id,
            'timestamp': self.occurred_at,
            'data': self.data,
        }


def parse_event(raw: Any) -> BotEvent:
    """
    Validate one inbound event

    Args:
        raw: Decoded event mapping

    Returns:
        The validated event

    Raises:
        EventValidationError: the event is malformed and must be dropped
    """
    if not isinstance(raw, dict):
        raise EventValidationError('event must be an object')

    raw_type = raw.get('type')
    if not raw_type:
        raise EventValidationError('missing event type')
    try:
        event_type = EventType(raw_type)
    except ValueError:
        raise EventValidationError(f'unknown event type {raw_type!r}', event_type=str(raw_type)) from None

    timestamp = raw.get('timestamp')
    if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
        raise EventValidationError('timestamp must be numeric epoch milliseconds', event_type=raw_type)
    if isinstance(timestamp, float) and not math.isfinite(timestamp):
        raise EventValidationError('timestamp must be numeric epoch milliseconds', event_type=raw_type)
    # Checked after truncation to whole milliseconds
    if int(timestamp) <= 0:
        raise EventValidationError('timestamp must be positive', event_type=raw_type)

    if event_type not in GLOBAL_EVENT_TYPES and not raw.get('guildId'):
        raise EventValidationError('guildId is required for guild-scoped events', event_type=raw_type)

    try:
        event = BotEvent.model_validate(raw)
        PAYLOAD_MODELS.get(event_type, GenericEventData).model_validate(event.data)
    except ValidationError as e:
        raise EventValidationError(f'invalid event: {e.errors()[0]["msg"]}', event_type=raw_type) from e

    return event
