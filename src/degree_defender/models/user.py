"""SQLAlchemy model for the user records the note subsystem touches."""

from sqlalchemy import Boolean, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from degree_defender.db.session import Base


class User(Base):
    """Platform user with community note moderation tallies."""

    __tablename__ = "app_user"
    __table_args__ = (
        CheckConstraint("accepted_notes >= 0", name="ck_app_user_accepted_notes"),
        CheckConstraint("rejected_notes >= 0", name="ck_app_user_rejected_notes"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    is_moderator: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_banned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Incremented when a moderator approves or rejects one of the user's notes.
    accepted_notes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    rejected_notes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
