"""User endpoints exposing community note tallies."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from degree_defender.api.dependencies import SessionDep
from degree_defender.models import User
from degree_defender.schemas.user import UserNoteCounterRequest, UserResponse
from degree_defender.services import user_service

router = APIRouter(prefix="/user", tags=["users"])


@router.get("/getUser/{username}", response_model=UserResponse)
async def get_user(username: str, db: SessionDep) -> User:
    """Get a user, including accepted and rejected note counts."""
    user = user_service.get_user_by_username(db, username)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


@router.patch("/updateAcceptedNotes", response_model=UserResponse)
async def update_accepted_notes(body: UserNoteCounterRequest, db: SessionDep) -> User:
    """Add one to a user's accepted note count."""
    try:
        return user_service.increment_accepted_notes(db, body.user_id)
    except user_service.UserNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found") from exc


@router.patch("/updateRejectedNotes", response_model=UserResponse)
async def update_rejected_notes(body: UserNoteCounterRequest, db: SessionDep) -> User:
    """Add one to a user's rejected note count."""
    try:
        return user_service.increment_rejected_notes(db, body.user_id)
    except user_service.UserNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found") from exc
