"""User-related Pydantic schemas."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class UserResponse(BaseModel):
    """Public view of a user including note moderation tallies."""

    id: int
    username: str
    is_moderator: bool
    is_banned: bool
    accepted_notes: int
    rejected_notes: int

    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class UserNoteCounterRequest(BaseModel):
    """Request body for bumping a user's accepted or rejected note counter."""

    user_id: int

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
