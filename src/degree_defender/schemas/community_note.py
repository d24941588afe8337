"""Community note Pydantic schemas.

Field names follow Python conventions; the wire format is camelCase to match
the web client (``noteText``, ``createdBy``, ``helpfulCount`` ...).
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

NoteStatus = Literal["pending", "approved", "rejected"]
VoteType = Literal["helpful", "notHelpful"]

_WIRE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NoteSubmitRequest(BaseModel):
    """Schema for submitting a new community note.

    Required fields are optional here so that missing values reach the
    endpoint and are reported with the note-specific error message.
    """

    note_text: str | None = None
    created_by: int | None = None
    question: str | None = None
    answer_id: str | None = None
    sources: str | None = None

    model_config = _WIRE_CONFIG


class NoteVoteRequest(BaseModel):
    """Schema for casting a helpful or not-helpful vote."""

    vote_type: VoteType
    user_id: int | None = None
    reason: str | None = Field(None, description="Optional reason for a not-helpful vote")

    model_config = _WIRE_CONFIG


class NoteContentPatch(BaseModel):
    """Allow-listed fields an author may change on an existing note.

    ``status`` is accepted for client compatibility, but only as ``pending``:
    every content edit sends the note back to moderation anyway.
    """

    note_text: str | None = None
    sources: str | None = None
    status: Literal["pending"] | None = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class NoteStatusUpdate(BaseModel):
    """Schema for the raw status transition used by the dashboard."""

    note_id: int
    status: NoteStatus

    model_config = _WIRE_CONFIG


class NoteModerationRequest(BaseModel):
    """Schema for a moderator approving or rejecting a note."""

    status: Literal["approved", "rejected"]
    moderator_id: int | None = None

    model_config = _WIRE_CONFIG


class NoteVotes(BaseModel):
    """User ids that voted on a note, split by vote kind."""

    helpful: list[int] = Field(default_factory=list)
    not_helpful: list[int] = Field(default_factory=list)

    model_config = _WIRE_CONFIG


class CommunityNoteResponse(BaseModel):
    """Schema for community note information returned by the API."""

    id: int
    note_text: str
    created_by: int
    question_id: str = Field(alias="question")
    answer_id: str
    sources: str
    created_at: datetime = Field(alias="createdDateTime")
    status: NoteStatus
    helpful_count: int
    not_helpful_count: int
    votes: NoteVotes
    not_helpful_reasons: list[str]

    @model_validator(mode="before")
    @classmethod
    def _extract_from_orm(cls, data: object) -> object:
        if isinstance(data, dict):
            return data

        created_at = data.created_at
        if created_at.tzinfo is None:
            # SQLite drops the offset; stored values are always UTC.
            created_at = created_at.replace(tzinfo=UTC)

        return {
            "id": data.id,
            "note_text": data.note_text,
            "created_by": data.created_by,
            "question_id": data.question_id,
            "answer_id": data.answer_id,
            "sources": data.sources or "",
            "created_at": created_at,
            "status": data.status,
            "helpful_count": data.helpful_count,
            "not_helpful_count": data.not_helpful_count,
            "votes": {
                "helpful": data.helpful_voters,
                "not_helpful": data.not_helpful_voters,
            },
            "not_helpful_reasons": data.not_helpful_reasons,
        }

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class NoteUpdateEvent(BaseModel):
    """Payload broadcast to real-time subscribers when a note's status changes."""

    note: CommunityNoteResponse
    type: NoteStatus


def decode_edit_payload(payload: dict[str, Any]) -> NoteVoteRequest | NoteContentPatch:
    """Decode a legacy ``editNote`` body into a vote or a content patch.

    A body carrying ``voteType`` is a vote; anything else must be a content
    patch restricted to the allow-listed fields.

    Raises:
        ValidationError: If the body matches neither shape
    """
    if "voteType" in payload or "vote_type" in payload:
        return NoteVoteRequest.model_validate(payload)
    return NoteContentPatch.model_validate(payload)


__all__ = [
    "CommunityNoteResponse",
    "NoteContentPatch",
    "NoteModerationRequest",
    "NoteStatus",
    "NoteStatusUpdate",
    "NoteSubmitRequest",
    "NoteUpdateEvent",
    "NoteVoteRequest",
    "NoteVotes",
    "VoteType",
    "decode_edit_payload",
]
