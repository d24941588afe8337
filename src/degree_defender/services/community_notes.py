"""Community note services.

This module holds the moderation and voting rules for community notes:

- one submission per (author, question) inside a rolling rate-limit window,
  claimed with a single conditional upsert;
- one vote per user per note, recorded with a conditional insert and an
  atomic counter increment in the same transaction;
- status transitions, with every change fanned out on the event bus;
- content edits that send a note back to moderation.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import Table, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from degree_defender.core.settings import settings
from degree_defender.db.time import utcnow
from degree_defender.models import (
    CommunityNote,
    NoteReason,
    NoteSubmissionWindow,
    NoteVote,
)
from degree_defender.models.community_note import (
    NOTE_STATUS_APPROVED,
    NOTE_STATUS_PENDING,
    NOTE_STATUS_REJECTED,
    NOTE_STATUSES,
    VOTE_KIND_HELPFUL,
    VOTE_KIND_NOT_HELPFUL,
)
from degree_defender.schemas.community_note import NoteUpdateEvent
from degree_defender.services import user_service
from degree_defender.services.events import NOTE_UPDATE_TOPIC, EventBus

logger = logging.getLogger(__name__)

MISSING_FIELDS_MESSAGE = "Missing required fields: noteText, createdBy, or question."
ALREADY_VOTED_MESSAGE = "User has already voted on this note"
NOTE_NOT_FOUND_MESSAGE = "Community note not found"
BANNED_MESSAGE = "Banned users cannot submit or vote on community notes"

# Wire names used by clients mapped onto stored vote kinds.
_VOTE_KINDS = {
    "helpful": VOTE_KIND_HELPFUL,
    "notHelpful": VOTE_KIND_NOT_HELPFUL,
    "not_helpful": VOTE_KIND_NOT_HELPFUL,
}


class CommunityNoteError(RuntimeError):
    """Base exception for community note business-rule failures."""


class NoteValidationError(CommunityNoteError):
    """Raised when the caller supplies missing or malformed note data."""


class NoteRateLimitError(CommunityNoteError):
    """Raised when an author already submitted a note for the question recently."""


class AlreadyVotedError(CommunityNoteError):
    """Raised when a user tries to vote twice on the same note."""


class NoteNotFoundError(CommunityNoteError):
    """Raised when a note id does not match any stored note."""


class NotePermissionError(CommunityNoteError):
    """Raised when a non-moderator attempts a moderation action."""


class NotePersistenceError(CommunityNoteError):
    """Raised when the database rejects a write; the message stays generic."""


def rate_limit_message() -> str:
    """Return the user-facing rate-limit message for the configured window."""
    hours = settings.note_rate_limit_seconds / 3600
    return f"You can only submit one community note every {hours:g} hours."


def _conditional_insert(db: Session, table: Table) -> Any:
    """Return a dialect-specific INSERT that supports ON CONFLICT clauses."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Conditional inserts are not supported on {dialect}")


class CommunityNoteService:
    """Service handling community note submission, voting and moderation."""

    def __init__(
        self,
        event_bus: EventBus,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._event_bus = event_bus
        self._clock = clock

    # --- Submission -----------------------------------------------------------------
    def submit_note(
        self,
        db: Session,
        note_text: str | None,
        created_by: int | None,
        question_id: str | None,
        answer_id: str | None,
        sources: str | None = None,
        *,
        now: datetime | None = None,
    ) -> CommunityNote:
        """Create a pending note unless the author is inside the rate-limit window.

        Args:
            db: Database session
            note_text: Body of the note
            created_by: ID of the authoring user
            question_id: Question the annotated answer belongs to
            answer_id: Answer the note annotates
            sources: Optional supporting citations
            now: Submission time; defaults to the service clock

        Returns:
            The persisted note

        Raises:
            NoteValidationError: If text, author or question is missing
            NotePermissionError: If the author is banned
            NoteRateLimitError: If the author submitted for this question within the window
            NotePersistenceError: If the database write fails
        """
        text = (note_text or "").strip()
        if not text or created_by is None or not question_id:
            raise NoteValidationError(MISSING_FIELDS_MESSAGE)
        self._check_length(text)
        self._check_not_banned(db, created_by)

        submitted_at = now or self._clock()
        try:
            if not self._claim_submission_window(db, created_by, question_id, submitted_at):
                logger.warning(
                    "Rate limit hit for user %s on question %s", created_by, question_id
                )
                raise NoteRateLimitError(rate_limit_message())

            note = CommunityNote(
                note_text=text,
                created_by=created_by,
                question_id=question_id,
                answer_id=answer_id or "",
                sources=(sources or "").strip(),
                created_at=submitted_at,
                status=NOTE_STATUS_PENDING,
                helpful_count=0,
                not_helpful_count=0,
            )
            db.add(note)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to save community note", exc_info=True)
            raise NotePersistenceError("Error occurred when saving community note") from exc

        db.refresh(note)
        logger.info(
            "Created community note %s by user %s on answer %s",
            note.id,
            created_by,
            note.answer_id,
        )
        return note

    def _claim_submission_window(
        self,
        db: Session,
        author_id: int,
        question_id: str,
        now: datetime,
    ) -> bool:
        """Open a new window for the pair, or move an elapsed one forward.

        A window whose start is exactly ``note_rate_limit_seconds`` old still
        blocks; it must be strictly older to be reclaimed.
        """
        table = NoteSubmissionWindow.__table__
        window_start = now - timedelta(seconds=settings.note_rate_limit_seconds)
        stmt = _conditional_insert(db, table).values(
            author_user_id=author_id,
            question_id=question_id,
            opened_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.author_user_id, table.c.question_id],
            set_={"opened_at": stmt.excluded.opened_at},
            where=table.c.opened_at < window_start,
        )
        return db.execute(stmt).rowcount == 1

    # --- Voting ---------------------------------------------------------------------
    def cast_vote(
        self,
        db: Session,
        note_id: int,
        user_id: int | None,
        vote_type: str,
        reason: str | None = None,
    ) -> CommunityNote:
        """Record a single helpful or not-helpful vote for a user.

        The vote row is inserted only if the user has no vote on the note in
        either direction, and the matching counter is incremented in the same
        transaction, so counts always equal the size of their vote sets.

        Raises:
            NoteValidationError: If the user id, vote type or reason is invalid
            NotePermissionError: If the voter is banned
            NoteNotFoundError: If the note does not exist
            AlreadyVotedError: If the user already voted on the note
            NotePersistenceError: If the database write fails
        """
        if user_id is None:
            raise NoteValidationError("Missing userId for vote")
        kind = _VOTE_KINDS.get(vote_type)
        if kind is None:
            raise NoteValidationError(f"Unknown vote type: {vote_type}")

        cleaned_reason = (reason or "").strip()
        if len(cleaned_reason) > settings.note_reason_max_length:
            raise NoteValidationError(
                f"reason exceeds {settings.note_reason_max_length} characters"
            )

        self._check_not_banned(db, user_id)
        note = db.get(CommunityNote, note_id)
        if note is None:
            raise NoteNotFoundError(NOTE_NOT_FOUND_MESSAGE)

        table = NoteVote.__table__
        try:
            stmt = (
                _conditional_insert(db, table)
                .values(note_id=note_id, voter_user_id=user_id, kind=kind)
                .on_conflict_do_nothing(index_elements=[table.c.note_id, table.c.voter_user_id])
            )
            if db.execute(stmt).rowcount != 1:
                logger.warning("User %s already voted on note %s", user_id, note_id)
                raise AlreadyVotedError(ALREADY_VOTED_MESSAGE)

            counter = (
                CommunityNote.helpful_count
                if kind == VOTE_KIND_HELPFUL
                else CommunityNote.not_helpful_count
            )
            db.execute(
                update(CommunityNote)
                .where(CommunityNote.id == note_id)
                .values({counter: counter + 1})
                .execution_options(synchronize_session=False)
            )
            # Reasons are stored without the voter id.
            if kind == VOTE_KIND_NOT_HELPFUL and cleaned_reason:
                db.add(NoteReason(note_id=note_id, reason=cleaned_reason))
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to record vote on note %s", note_id, exc_info=True)
            raise NotePersistenceError("Failed to record vote") from exc

        db.refresh(note)
        logger.info("User %s voted %s on note %s", user_id, kind, note_id)
        return note

    def mark_helpful(self, db: Session, note_id: int, user_id: int | None) -> CommunityNote:
        """Record a helpful vote."""
        return self.cast_vote(db, note_id, user_id, "helpful")

    def mark_not_helpful(
        self,
        db: Session,
        note_id: int,
        user_id: int | None,
        reason: str | None = None,
    ) -> CommunityNote:
        """Record a not-helpful vote with an optional reason."""
        return self.cast_vote(db, note_id, user_id, "notHelpful", reason)

    @staticmethod
    def has_user_voted(db: Session, note_id: int, user_id: int) -> bool:
        """Return True if the user appears in either vote set of the note."""
        vote = db.query(NoteVote).filter(
            NoteVote.note_id == note_id,
            NoteVote.voter_user_id == user_id,
        ).first()
        return vote is not None

    # --- Moderation -----------------------------------------------------------------
    def set_status(self, db: Session, note_id: int, status: str) -> CommunityNote:
        """Overwrite a note's moderation status and notify subscribers.

        Any transition is allowed, including to the current status.

        Raises:
            NoteValidationError: If the status is unknown
            NoteNotFoundError: If the note does not exist
        """
        self._check_status(status)
        try:
            result = db.execute(
                update(CommunityNote)
                .where(CommunityNote.id == note_id)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NoteNotFoundError(NOTE_NOT_FOUND_MESSAGE)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to update status of note %s", note_id, exc_info=True)
            raise NotePersistenceError("Error occurred when updating note status") from exc

        note = self._reload(db, note_id)
        logger.info("Community note %s set to %s", note_id, status)
        self._publish_update(note, status)
        return note

    def moderate(
        self,
        db: Session,
        note_id: int,
        status: str,
        moderator_id: int | None = None,
    ) -> CommunityNote:
        """Approve or reject a note and credit the author's tally atomically.

        The status change and the author's ``accepted_notes`` /
        ``rejected_notes`` increment commit together or not at all.

        Raises:
            NoteValidationError: If the status is not approved or rejected
            NotePermissionError: If ``moderator_id`` is not a moderator
            NoteNotFoundError: If the note or its author does not exist
        """
        if status not in (NOTE_STATUS_APPROVED, NOTE_STATUS_REJECTED):
            raise NoteValidationError("Moderation status must be approved or rejected")

        if moderator_id is not None:
            moderator = user_service.get_user(db, moderator_id)
            if moderator is None or not moderator.is_moderator:
                raise NotePermissionError(
                    "Only moderators can approve or reject community notes"
                )

        note = db.get(CommunityNote, note_id)
        if note is None:
            raise NoteNotFoundError(NOTE_NOT_FOUND_MESSAGE)
        author_id = note.created_by

        increment = (
            user_service.increment_accepted_notes
            if status == NOTE_STATUS_APPROVED
            else user_service.increment_rejected_notes
        )
        try:
            db.execute(
                update(CommunityNote)
                .where(CommunityNote.id == note_id)
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
            increment(db, author_id, commit=False)
            db.commit()
        except user_service.UserNotFoundError as exc:
            db.rollback()
            raise NoteNotFoundError("Community note author not found") from exc
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to moderate note %s", note_id, exc_info=True)
            raise NotePersistenceError("Error occurred when moderating note") from exc

        note = self._reload(db, note_id)
        logger.info(
            "Moderator %s set note %s to %s",
            moderator_id if moderator_id is not None else "-",
            note_id,
            status,
        )
        self._publish_update(note, status)
        return note

    # --- Editing --------------------------------------------------------------------
    def patch_content(
        self,
        db: Session,
        note_id: int,
        *,
        note_text: str | None = None,
        sources: str | None = None,
    ) -> CommunityNote:
        """Update a note's text and/or sources and send it back to moderation.

        Raises:
            NoteValidationError: If nothing is supplied or the text is blank
            NoteNotFoundError: If the note does not exist
        """
        if note_text is None and sources is None:
            raise NoteValidationError("Nothing to update: provide noteText or sources")

        values: dict[str, str] = {"status": NOTE_STATUS_PENDING}
        if note_text is not None:
            text = note_text.strip()
            if not text:
                raise NoteValidationError("noteText cannot be empty")
            self._check_length(text)
            values["note_text"] = text
        if sources is not None:
            values["sources"] = sources.strip()

        note = db.get(CommunityNote, note_id)
        if note is None:
            raise NoteNotFoundError(NOTE_NOT_FOUND_MESSAGE)
        previous_status = note.status

        try:
            db.execute(
                update(CommunityNote)
                .where(CommunityNote.id == note_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to edit note %s", note_id, exc_info=True)
            raise NotePersistenceError("Database error while editing note") from exc

        note = self._reload(db, note_id)
        logger.info("Community note %s edited; back to pending", note_id)
        if previous_status != NOTE_STATUS_PENDING:
            self._publish_update(note, NOTE_STATUS_PENDING)
        return note

    # --- Retrieval ------------------------------------------------------------------
    @staticmethod
    def get_note(db: Session, note_id: int) -> CommunityNote:
        """Return a note by id.

        Raises:
            NoteNotFoundError: If the note does not exist
        """
        note = db.get(CommunityNote, note_id)
        if note is None:
            raise NoteNotFoundError(NOTE_NOT_FOUND_MESSAGE)
        return note

    @staticmethod
    def list_approved(db: Session, answer_id: str | None = None) -> list[CommunityNote]:
        """Return approved notes, optionally only those on one answer."""
        query = db.query(CommunityNote).filter(CommunityNote.status == NOTE_STATUS_APPROVED)
        if answer_id:
            query = query.filter(CommunityNote.answer_id == answer_id)
        return query.order_by(CommunityNote.created_at, CommunityNote.id).all()

    @staticmethod
    def list_pending(db: Session) -> list[CommunityNote]:
        """Return every note awaiting moderation."""
        return (
            db.query(CommunityNote)
            .filter(CommunityNote.status == NOTE_STATUS_PENDING)
            .order_by(CommunityNote.created_at, CommunityNote.id)
            .all()
        )

    # --- Helpers --------------------------------------------------------------------
    @staticmethod
    def _check_length(text: str) -> None:
        if len(text) > settings.note_max_length:
            raise NoteValidationError(
                f"noteText exceeds {settings.note_max_length} characters"
            )

    @staticmethod
    def _check_not_banned(db: Session, user_id: int) -> None:
        user = user_service.get_user(db, user_id)
        if user is not None and user.is_banned:
            logger.warning("Banned user %s attempted a note action", user_id)
            raise NotePermissionError(BANNED_MESSAGE)

    @staticmethod
    def _check_status(status: str) -> None:
        if status not in NOTE_STATUSES:
            raise NoteValidationError(f"Invalid status: {status}")

    @staticmethod
    def _reload(db: Session, note_id: int) -> CommunityNote:
        note = db.get(CommunityNote, note_id)
        if note is None:  # pragma: no cover - deleted between commit and reload
            raise NoteNotFoundError(NOTE_NOT_FOUND_MESSAGE)
        db.refresh(note)
        return note

    def _publish_update(self, note: CommunityNote, status: str) -> None:
        event = NoteUpdateEvent.model_validate({"note": note, "type": status})
        self._event_bus.publish(NOTE_UPDATE_TOPIC, event.model_dump(mode="json", by_alias=True))
