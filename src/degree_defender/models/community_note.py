"""SQLAlchemy models for community notes and their votes."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from degree_defender.db.session import Base
from degree_defender.db.time import utcnow

NOTE_STATUS_PENDING = "pending"
NOTE_STATUS_APPROVED = "approved"
NOTE_STATUS_REJECTED = "rejected"
NOTE_STATUSES = (NOTE_STATUS_PENDING, NOTE_STATUS_APPROVED, NOTE_STATUS_REJECTED)

VOTE_KIND_HELPFUL = "helpful"
VOTE_KIND_NOT_HELPFUL = "not_helpful"


class CommunityNote(Base):
    """Fact-check annotation attached to an answer within a question.

    Notes enter moderation as ``pending`` and only ``approved`` notes are shown
    publicly. Vote tallies are denormalized onto the note and move in the same
    transaction as the vote rows they count.
    """

    __tablename__ = "community_note"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_community_note_status",
        ),
        CheckConstraint("helpful_count >= 0", name="ck_community_note_helpful_count"),
        CheckConstraint("not_helpful_count >= 0", name="ck_community_note_not_helpful_count"),
        Index("ix_community_note_status", "status"),
        Index("ix_community_note_author_question", "created_by", "question_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    note_text: Mapped[str] = mapped_column(Text, nullable=False)
    # Author never changes once the note exists.
    created_by: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("app_user.id"),
        nullable=False,
    )
    # Questions and answers live in another store; ids are opaque references.
    question_id: Mapped[str] = mapped_column(String(64), nullable=False)
    answer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    sources: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=NOTE_STATUS_PENDING,
    )
    helpful_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    not_helpful_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    votes: Mapped[list[NoteVote]] = relationship(
        "NoteVote",
        order_by="NoteVote.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    reasons: Mapped[list[NoteReason]] = relationship(
        "NoteReason",
        order_by="NoteReason.id",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def helpful_voters(self) -> list[int]:
        """Return ids of users who voted the note helpful, in vote order."""
        return [vote.voter_user_id for vote in self.votes if vote.kind == VOTE_KIND_HELPFUL]

    @property
    def not_helpful_voters(self) -> list[int]:
        """Return ids of users who voted the note not helpful, in vote order."""
        return [vote.voter_user_id for vote in self.votes if vote.kind == VOTE_KIND_NOT_HELPFUL]

    @property
    def not_helpful_reasons(self) -> list[str]:
        """Return the free-text not-helpful reasons in submission order."""
        return [entry.reason for entry in self.reasons]


class NoteVote(Base):
    """One user's helpful or not-helpful vote on a note."""

    __tablename__ = "community_note_vote"
    __table_args__ = (
        # A single row per (note, voter) keeps the helpful and not-helpful sets disjoint.
        UniqueConstraint("note_id", "voter_user_id", name="uq_community_note_vote_voter"),
        CheckConstraint(
            "kind IN ('helpful', 'not_helpful')",
            name="ck_community_note_vote_kind",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    note_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("community_note.id", ondelete="CASCADE"),
        nullable=False,
    )
    voter_user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)


class NoteReason(Base):
    """Free-text reason attached to a not-helpful vote.

    Reasons are kept as an anonymous aggregate; there is no voter column, so a
    reason cannot be traced back to the user who gave it.
    """

    __tablename__ = "community_note_reason"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    note_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("community_note.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)


class NoteSubmissionWindow(Base):
    """Start of the current submission window for an (author, question) pair.

    The row is claimed with a single conditional upsert, so two concurrent
    submissions cannot both pass the rate limit.
    """

    __tablename__ = "community_note_window"

    author_user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    question_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    opened_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
