from .base import BaseEventProcessor
from .message_processor import MessageEventsProcessor
from .voice_processor import VoiceEventsProcessor
from .reaction_processor import ReactionEventsProcessor
from .member_processor import MemberEventsProcessor

__all__ = [
    'BaseEventProcessor',
    'MessageEventsProcessor',
    'VoiceEventsProcessor',
    'ReactionEventsProcessor',
    'MemberEventsProcessor',
]
