"""Business logic services for the Degree Defender application."""

from .community_notes import CommunityNoteService
from .events import EventBus, InMemoryEventBus, RedisEventBus, get_event_bus

__all__ = [
    "CommunityNoteService",
    "EventBus",
    "InMemoryEventBus",
    "RedisEventBus",
    "get_event_bus",
]
