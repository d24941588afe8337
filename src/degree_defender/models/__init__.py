"""SQLAlchemy models for the Degree Defender application."""

from .community_note import CommunityNote, NoteReason, NoteSubmissionWindow, NoteVote
from .user import User

__all__ = [
    "CommunityNote", "NoteReason", "NoteSubmissionWindow", "NoteVote",
    "User",
]
