"""community notes

Revision ID: 5b1f0c2a9d47
Revises:
Create Date: 2025-11-03 09:14:52.401233

"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "5b1f0c2a9d47"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create users, community notes, votes, reasons and submission windows."""
    op.create_table(
        "app_user",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("is_moderator", sa.Boolean(), nullable=False),
        sa.Column("is_banned", sa.Boolean(), nullable=False),
        sa.Column("accepted_notes", sa.Integer(), nullable=False),
        sa.Column("rejected_notes", sa.Integer(), nullable=False),
        sa.CheckConstraint("accepted_notes >= 0", name="ck_app_user_accepted_notes"),
        sa.CheckConstraint("rejected_notes >= 0", name="ck_app_user_rejected_notes"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("username"),
    )
    op.create_table(
        "community_note",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("note_text", sa.Text(), nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=False),
        sa.Column("question_id", sa.String(length=64), nullable=False),
        sa.Column("answer_id", sa.String(length=64), nullable=False),
        sa.Column("sources", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("helpful_count", sa.Integer(), nullable=False),
        sa.Column("not_helpful_count", sa.Integer(), nullable=False),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_community_note_status",
        ),
        sa.CheckConstraint("helpful_count >= 0", name="ck_community_note_helpful_count"),
        sa.CheckConstraint(
            "not_helpful_count >= 0", name="ck_community_note_not_helpful_count"
        ),
        sa.ForeignKeyConstraint(["created_by"], ["app_user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_community_note_status", "community_note", ["status"])
    op.create_index(
        "ix_community_note_author_question", "community_note", ["created_by", "question_id"]
    )
    op.create_index(
        op.f("ix_community_note_answer_id"), "community_note", ["answer_id"]
    )
    op.create_table(
        "community_note_vote",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("note_id", sa.Integer(), nullable=False),
        sa.Column("voter_user_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.CheckConstraint(
            "kind IN ('helpful', 'not_helpful')", name="ck_community_note_vote_kind"
        ),
        sa.ForeignKeyConstraint(["note_id"], ["community_note.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("note_id", "voter_user_id", name="uq_community_note_vote_voter"),
    )
    op.create_table(
        "community_note_reason",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("note_id", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(["note_id"], ["community_note.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_community_note_reason_note_id"), "community_note_reason", ["note_id"]
    )
    op.create_table(
        "community_note_window",
        sa.Column("author_user_id", sa.Integer(), nullable=False),
        sa.Column("question_id", sa.String(length=64), nullable=False),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("author_user_id", "question_id"),
    )


def downgrade() -> None:
    """Drop the community note schema."""
    op.drop_table("community_note_window")
    op.drop_index(op.f("ix_community_note_reason_note_id"), table_name="community_note_reason")
    op.drop_table("community_note_reason")
    op.drop_table("community_note_vote")
    op.drop_index(op.f("ix_community_note_answer_id"), table_name="community_note")
    op.drop_index("ix_community_note_author_question", table_name="community_note")
    op.drop_index("ix_community_note_status", table_name="community_note")
    op.drop_table("community_note")
    op.drop_table("app_user")
