# tests/services/test_note_service.py
"""Tests for the community note service rules."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from degree_defender.core.settings import settings
from degree_defender.models import CommunityNote, NoteVote
from degree_defender.services import user_service
from degree_defender.services.community_notes import (
    ALREADY_VOTED_MESSAGE,
    BANNED_MESSAGE,
    MISSING_FIELDS_MESSAGE,
    AlreadyVotedError,
    NoteNotFoundError,
    NotePermissionError,
    NotePersistenceError,
    NoteRateLimitError,
    NoteValidationError,
    rate_limit_message,
)

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _submit(service, db, author_id, *, question="q-1", answer="a-1", now=T0, text="A correction."):
    return service.submit_note(db, text, author_id, question, answer, "", now=now)


# --- Submission ----------------------------------------------------------------------


def test_submit_creates_pending_note(db_session, note_service, author) -> None:
    note = note_service.submit_note(
        db_session, "  Needs a source.  ", author.id, "q-1", "a-1", " https://x.test ", now=T0
    )

    assert note.id is not None
    assert note.status == "pending"
    assert note.note_text == "Needs a source."
    assert note.sources == "https://x.test"
    assert note.helpful_count == 0
    assert note.not_helpful_count == 0
    assert note.helpful_voters == []
    assert note.not_helpful_voters == []
    assert note.not_helpful_reasons == []


@pytest.mark.parametrize(
    ("text", "question"),
    [("", "q-1"), ("   ", "q-1"), (None, "q-1"), ("Fine text", ""), ("Fine text", None)],
)
def test_submit_rejects_missing_fields(db_session, note_service, author, text, question) -> None:
    with pytest.raises(NoteValidationError, match=MISSING_FIELDS_MESSAGE):
        note_service.submit_note(db_session, text, author.id, question, "a-1")


def test_submit_requires_author(db_session, note_service) -> None:
    with pytest.raises(NoteValidationError):
        note_service.submit_note(db_session, "text", None, "q-1", "a-1")


def test_submit_rejects_overlong_text(db_session, note_service, author) -> None:
    with pytest.raises(NoteValidationError):
        _submit(note_service, db_session, author.id, text="x" * (settings.note_max_length + 1))


def test_rate_limit_blocks_second_note_within_window(db_session, note_service, author) -> None:
    _submit(note_service, db_session, author.id)

    with pytest.raises(NoteRateLimitError) as excinfo:
        _submit(note_service, db_session, author.id, now=T0 + timedelta(hours=23))

    assert str(excinfo.value) == rate_limit_message()
    assert db_session.query(CommunityNote).count() == 1


def test_rate_limit_applies_across_answers_of_same_question(db_session, note_service, author) -> None:
    _submit(note_service, db_session, author.id, answer="a-1")

    with pytest.raises(NoteRateLimitError):
        _submit(note_service, db_session, author.id, answer="a-2", now=T0 + timedelta(minutes=5))


def test_rate_limit_still_blocks_at_exact_window_boundary(db_session, note_service, author) -> None:
    _submit(note_service, db_session, author.id)

    with pytest.raises(NoteRateLimitError):
        _submit(
            note_service,
            db_session,
            author.id,
            now=T0 + timedelta(seconds=settings.note_rate_limit_seconds),
        )


def test_rate_limit_allows_note_after_window(db_session, note_service, author) -> None:
    _submit(note_service, db_session, author.id)

    second = _submit(note_service, db_session, author.id, now=T0 + timedelta(hours=25))

    assert second.status == "pending"
    assert db_session.query(CommunityNote).count() == 2

    # The window restarts from the accepted submission.
    with pytest.raises(NoteRateLimitError):
        _submit(note_service, db_session, author.id, now=T0 + timedelta(hours=26))


def test_rate_limit_is_per_question_and_author(db_session, note_service, author, voter) -> None:
    _submit(note_service, db_session, author.id, question="q-1")

    _submit(note_service, db_session, author.id, question="q-2", now=T0 + timedelta(minutes=1))
    _submit(note_service, db_session, voter.id, question="q-1", now=T0 + timedelta(minutes=2))

    assert db_session.query(CommunityNote).count() == 3


def test_submit_reports_persistence_failure(db_session, note_service, author, mocker) -> None:
    mocker.patch.object(
        db_session,
        "commit",
        side_effect=OperationalError("INSERT", {}, Exception("disk full")),
    )
    rollback = mocker.spy(db_session, "rollback")

    with pytest.raises(NotePersistenceError, match="Error occurred when saving community note"):
        _submit(note_service, db_session, author.id)

    rollback.assert_called_once()


# --- Voting --------------------------------------------------------------------------


def test_helpful_vote_updates_count_and_voters(db_session, note_service, pending_note, voter) -> None:
    note = note_service.mark_helpful(db_session, pending_note.id, voter.id)

    assert note.helpful_count == 1
    assert note.helpful_voters == [voter.id]
    assert note.not_helpful_count == 0
    assert note_service.has_user_voted(db_session, pending_note.id, voter.id)


def test_not_helpful_vote_records_reason(db_session, note_service, pending_note, voter) -> None:
    note = note_service.mark_not_helpful(
        db_session, pending_note.id, voter.id, "  Source does not say this.  "
    )

    assert note.not_helpful_count == 1
    assert note.not_helpful_voters == [voter.id]
    assert note.not_helpful_reasons == ["Source does not say this."]


def test_not_helpful_vote_without_reason_adds_no_reason(
    db_session, note_service, pending_note, voter
) -> None:
    note = note_service.mark_not_helpful(db_session, pending_note.id, voter.id, "   ")

    assert note.not_helpful_count == 1
    assert note.not_helpful_reasons == []


def test_reason_ignored_for_helpful_vote(db_session, note_service, pending_note, voter) -> None:
    note = note_service.cast_vote(db_session, pending_note.id, voter.id, "helpful", "great")

    assert note.not_helpful_reasons == []


@pytest.mark.parametrize(
    ("first", "second"),
    [("helpful", "helpful"), ("helpful", "notHelpful"), ("notHelpful", "helpful")],
)
def test_user_can_vote_only_once(db_session, note_service, pending_note, voter, first, second) -> None:
    note_service.cast_vote(db_session, pending_note.id, voter.id, first)

    with pytest.raises(AlreadyVotedError, match=ALREADY_VOTED_MESSAGE):
        note_service.cast_vote(db_session, pending_note.id, voter.id, second)

    note = note_service.get_note(db_session, pending_note.id)
    assert note.helpful_count + note.not_helpful_count == 1
    assert db_session.query(NoteVote).count() == 1


def test_counts_match_voter_sets(
    db_session, note_service, pending_note, voter, other_voter, moderator
) -> None:
    note_service.mark_helpful(db_session, pending_note.id, voter.id)
    note_service.mark_helpful(db_session, pending_note.id, other_voter.id)
    note = note_service.mark_not_helpful(db_session, pending_note.id, moderator.id, "off topic")

    assert note.helpful_count == len(note.helpful_voters) == 2
    assert note.not_helpful_count == len(note.not_helpful_voters) == 1
    assert set(note.helpful_voters).isdisjoint(note.not_helpful_voters)
    assert note.helpful_voters == [voter.id, other_voter.id]


def test_vote_on_missing_note(db_session, note_service, voter) -> None:
    with pytest.raises(NoteNotFoundError):
        note_service.mark_helpful(db_session, 4242, voter.id)


def test_vote_requires_user(db_session, note_service, pending_note) -> None:
    with pytest.raises(NoteValidationError):
        note_service.mark_helpful(db_session, pending_note.id, None)


def test_vote_rejects_unknown_type(db_session, note_service, pending_note, voter) -> None:
    with pytest.raises(NoteValidationError):
        note_service.cast_vote(db_session, pending_note.id, voter.id, "meh")


def test_vote_rejects_overlong_reason(db_session, note_service, pending_note, voter) -> None:
    with pytest.raises(NoteValidationError):
        note_service.mark_not_helpful(
            db_session, pending_note.id, voter.id, "r" * (settings.note_reason_max_length + 1)
        )
    assert not note_service.has_user_voted(db_session, pending_note.id, voter.id)


def test_voting_does_not_change_status(db_session, note_service, pending_note, voter) -> None:
    note = note_service.mark_helpful(db_session, pending_note.id, voter.id)
    assert note.status == "pending"


# --- Status and moderation -------------------------------------------------------------


def test_set_status_publishes_update(db_session, note_service, pending_note, published) -> None:
    note = note_service.set_status(db_session, pending_note.id, "approved")

    assert note.status == "approved"
    assert len(published) == 1
    assert published[0]["type"] == "approved"
    assert published[0]["note"]["id"] == pending_note.id
    assert published[0]["note"]["status"] == "approved"
    assert published[0]["note"]["noteText"] == pending_note.note_text


def test_set_status_allows_same_status(db_session, note_service, pending_note, published) -> None:
    note = note_service.set_status(db_session, pending_note.id, "pending")

    assert note.status == "pending"
    assert [event["type"] for event in published] == ["pending"]


def test_set_status_rejects_unknown_status(db_session, note_service, pending_note, published) -> None:
    with pytest.raises(NoteValidationError):
        note_service.set_status(db_session, pending_note.id, "archived")
    assert published == []


def test_set_status_missing_note(db_session, note_service, published) -> None:
    with pytest.raises(NoteNotFoundError):
        note_service.set_status(db_session, 999, "approved")
    assert published == []


def test_set_status_does_not_touch_author_counters(
    db_session, note_service, pending_note, author
) -> None:
    note_service.set_status(db_session, pending_note.id, "approved")

    refreshed = user_service.get_user(db_session, author.id)
    assert refreshed.accepted_notes == 0
    assert refreshed.rejected_notes == 0


def test_moderate_approve_credits_author(
    db_session, note_service, pending_note, author, moderator, published
) -> None:
    note = note_service.moderate(db_session, pending_note.id, "approved", moderator.id)

    assert note.status == "approved"
    refreshed = user_service.get_user(db_session, author.id)
    assert refreshed.accepted_notes == 1
    assert refreshed.rejected_notes == 0
    assert [event["type"] for event in published] == ["approved"]


def test_moderate_reject_credits_author(
    db_session, note_service, pending_note, author, moderator
) -> None:
    note_service.moderate(db_session, pending_note.id, "rejected", moderator.id)

    refreshed = user_service.get_user(db_session, author.id)
    assert refreshed.rejected_notes == 1
    assert refreshed.accepted_notes == 0


def test_moderate_requires_moderator(
    db_session, note_service, pending_note, voter, published
) -> None:
    with pytest.raises(NotePermissionError):
        note_service.moderate(db_session, pending_note.id, "approved", voter.id)

    assert note_service.get_note(db_session, pending_note.id).status == "pending"
    assert published == []


def test_moderate_rejects_pending_status(db_session, note_service, pending_note, moderator) -> None:
    with pytest.raises(NoteValidationError):
        note_service.moderate(db_session, pending_note.id, "pending", moderator.id)


def test_moderate_is_atomic_when_author_missing(db_session, note_service, moderator) -> None:
    orphan = _submit(note_service, db_session, 987654)

    with pytest.raises(NoteNotFoundError):
        note_service.moderate(db_session, orphan.id, "approved", moderator.id)

    assert note_service.get_note(db_session, orphan.id).status == "pending"


# --- Editing ---------------------------------------------------------------------------


def test_patch_content_resets_to_pending_and_publishes(
    db_session, note_service, pending_note, published
) -> None:
    note_service.set_status(db_session, pending_note.id, "approved")
    published.clear()

    note = note_service.patch_content(
        db_session, pending_note.id, note_text="Updated wording.", sources="https://y.test"
    )

    assert note.status == "pending"
    assert note.note_text == "Updated wording."
    assert note.sources == "https://y.test"
    assert [event["type"] for event in published] == ["pending"]


def test_patch_content_on_pending_note_does_not_publish(
    db_session, note_service, pending_note, published
) -> None:
    note = note_service.patch_content(db_session, pending_note.id, sources="https://z.test")

    assert note.sources == "https://z.test"
    assert note.note_text == pending_note.note_text
    assert published == []


def test_patch_content_keeps_votes(db_session, note_service, pending_note, voter) -> None:
    note_service.mark_helpful(db_session, pending_note.id, voter.id)

    note = note_service.patch_content(db_session, pending_note.id, note_text="Reworded.")

    assert note.helpful_count == 1
    assert note.helpful_voters == [voter.id]


def test_patch_content_requires_a_field(db_session, note_service, pending_note) -> None:
    with pytest.raises(NoteValidationError):
        note_service.patch_content(db_session, pending_note.id)


def test_patch_content_rejects_blank_text(db_session, note_service, pending_note) -> None:
    with pytest.raises(NoteValidationError):
        note_service.patch_content(db_session, pending_note.id, note_text="   ")


def test_patch_content_missing_note(db_session, note_service) -> None:
    with pytest.raises(NoteNotFoundError):
        note_service.patch_content(db_session, 31337, note_text="Anything")


# --- Retrieval -------------------------------------------------------------------------


def test_list_approved_filters_by_status_and_answer(
    db_session, note_service, author, voter, other_voter
) -> None:
    first = _submit(note_service, db_session, author.id, question="q-1", answer="a-1")
    second = _submit(note_service, db_session, voter.id, question="q-1", answer="a-2")
    third = _submit(note_service, db_session, other_voter.id, question="q-1", answer="a-1")
    note_service.set_status(db_session, first.id, "approved")
    note_service.set_status(db_session, second.id, "approved")
    note_service.set_status(db_session, third.id, "rejected")

    assert [n.id for n in note_service.list_approved(db_session)] == [first.id, second.id]
    assert [n.id for n in note_service.list_approved(db_session, "a-1")] == [first.id]
    assert note_service.list_approved(db_session, "a-unknown") == []


def test_list_pending_returns_only_pending(db_session, note_service, author, voter) -> None:
    first = _submit(note_service, db_session, author.id)
    second = _submit(note_service, db_session, voter.id)
    note_service.set_status(db_session, first.id, "rejected")

    assert [n.id for n in note_service.list_pending(db_session)] == [second.id]


def test_get_note_missing(db_session, note_service) -> None:
    with pytest.raises(NoteNotFoundError):
        note_service.get_note(db_session, 1)


# --- Banned users ----------------------------------------------------------------------


def _ban(db, user) -> None:
    user.is_banned = True
    db.commit()


def test_banned_author_cannot_submit(db_session, note_service, author) -> None:
    _ban(db_session, author)

    with pytest.raises(NotePermissionError, match=BANNED_MESSAGE):
        _submit(note_service, db_session, author.id)

    assert db_session.query(CommunityNote).count() == 0


def test_banned_user_cannot_vote(db_session, note_service, pending_note, voter) -> None:
    _ban(db_session, voter)

    with pytest.raises(NotePermissionError, match=BANNED_MESSAGE):
        note_service.mark_helpful(db_session, pending_note.id, voter.id)

    note = note_service.get_note(db_session, pending_note.id)
    assert note.helpful_count == 0
    assert not note_service.has_user_voted(db_session, pending_note.id, voter.id)
