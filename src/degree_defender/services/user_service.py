"""CRUD-style helpers for the user records the note subsystem touches."""
from __future__ import annotations

import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from degree_defender.models.user import User

__all__ = [
    "UserNotFoundError",
    "get_user",
    "get_user_by_username",
    "create_user",
    "increment_accepted_notes",
    "increment_rejected_notes",
]

logger = logging.getLogger(__name__)


class UserNotFoundError(LookupError):
    """Raised when an operation targets a user id that does not exist."""


def get_user(db: Session, user_id: int) -> User | None:
    """Return a single user by primary key."""
    return db.get(User, user_id)


def get_user_by_username(db: Session, username: str) -> User | None:
    """Return a single user by username."""
    return db.query(User).filter(User.username == username).first()


def create_user(db: Session, username: str, *, is_moderator: bool = False) -> User:
    """Persist a new user with zeroed note tallies."""
    db_user = User(username=username, is_moderator=is_moderator)
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def _increment_counter(db: Session, user_id: int, column: str, *, commit: bool) -> User:
    counter = getattr(User, column)
    result = db.execute(
        update(User)
        .where(User.id == user_id)
        .values({counter: counter + 1})
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise UserNotFoundError(f"User {user_id} not found")

    if commit:
        db.commit()
    user = db.get(User, user_id)
    db.refresh(user)
    logger.info("Incremented %s for user %s", column, user_id)
    return user


def increment_accepted_notes(db: Session, user_id: int, *, commit: bool = True) -> User:
    """Atomically add one to the user's accepted note tally.

    Args:
        db: Database session
        user_id: ID of the note author
        commit: Commit immediately; pass False to join a larger transaction

    Raises:
        UserNotFoundError: If no user has the given id
    """
    return _increment_counter(db, user_id, "accepted_notes", commit=commit)


def increment_rejected_notes(db: Session, user_id: int, *, commit: bool = True) -> User:
    """Atomically add one to the user's rejected note tally.

    Raises:
        UserNotFoundError: If no user has the given id
    """
    return _increment_counter(db, user_id, "rejected_notes", commit=commit)
