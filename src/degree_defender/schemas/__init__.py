"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .community_note import (
    CommunityNoteResponse,
    NoteContentPatch,
    NoteModerationRequest,
    NoteStatusUpdate,
    NoteSubmitRequest,
    NoteUpdateEvent,
    NoteVoteRequest,
)
from .user import UserNoteCounterRequest, UserResponse

__all__ = [
    "CommunityNoteResponse", "NoteContentPatch", "NoteModerationRequest",
    "NoteStatusUpdate", "NoteSubmitRequest", "NoteUpdateEvent", "NoteVoteRequest",
    "UserNoteCounterRequest", "UserResponse",
]
