"""Community note endpoints for the Degree Defender API."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Annotated, Any

from fastapi import APIRouter, Body, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from degree_defender.api.dependencies import EventBusDep, NoteServiceDep, SessionDep
from degree_defender.models import CommunityNote
from degree_defender.schemas.community_note import (
    CommunityNoteResponse,
    NoteContentPatch,
    NoteModerationRequest,
    NoteStatusUpdate,
    NoteSubmitRequest,
    NoteVoteRequest,
    decode_edit_payload,
)
from degree_defender.services.community_notes import (
    MISSING_FIELDS_MESSAGE,
    AlreadyVotedError,
    CommunityNoteError,
    CommunityNoteService,
    NoteNotFoundError,
    NotePermissionError,
    NotePersistenceError,
    NoteRateLimitError,
    NoteValidationError,
)
from degree_defender.services.events import NOTE_UPDATE_TOPIC

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/community-notes", tags=["community-notes"])

_ERROR_STATUS: dict[type[CommunityNoteError], int] = {
    NoteValidationError: status.HTTP_400_BAD_REQUEST,
    AlreadyVotedError: status.HTTP_400_BAD_REQUEST,
    NoteNotFoundError: status.HTTP_404_NOT_FOUND,
    NotePermissionError: status.HTTP_403_FORBIDDEN,
    # Reported as a server error on the submit route.
    NoteRateLimitError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    NotePersistenceError: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


@contextmanager
def _translate_errors(fallback: str, *, force_status: int | None = None) -> Iterator[None]:
    """Convert service exceptions into HTTP errors.

    Business-rule failures keep their message; anything unexpected is logged
    and reported with the generic ``fallback`` message.
    """
    try:
        yield
    except HTTPException:
        raise
    except CommunityNoteError as exc:
        code = force_status or _ERROR_STATUS.get(
            type(exc),
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
        raise HTTPException(status_code=code, detail=str(exc)) from exc
    except Exception as exc:
        logger.error("%s", fallback, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=fallback,
        ) from exc


def _apply_vote(
    service: CommunityNoteService,
    db: Session,
    note_id: int,
    vote: NoteVoteRequest,
) -> CommunityNote:
    return service.cast_vote(db, note_id, vote.user_id, vote.vote_type, vote.reason)


def _apply_patch(
    service: CommunityNoteService,
    db: Session,
    note_id: int,
    patch: NoteContentPatch,
) -> CommunityNote:
    return service.patch_content(db, note_id, note_text=patch.note_text, sources=patch.sources)


@router.post(
    "/submit",
    response_model=CommunityNoteResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_note(
    note_data: NoteSubmitRequest,
    db: SessionDep,
    service: NoteServiceDep,
) -> CommunityNote:
    """Submit a new community note for moderation."""
    if (
        not (note_data.note_text or "").strip()
        or note_data.created_by is None
        or not note_data.question
    ):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=MISSING_FIELDS_MESSAGE)
    if not note_data.answer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required field: answerId.",
        )

    with _translate_errors("Unexpected server error when attempting to save this community note"):
        return service.submit_note(
            db,
            note_data.note_text,
            note_data.created_by,
            note_data.question,
            note_data.answer_id,
            note_data.sources,
        )


@router.get("", response_model=list[CommunityNoteResponse], include_in_schema=False)
@router.get("/", response_model=list[CommunityNoteResponse])
async def list_approved_notes(
    db: SessionDep,
    service: NoteServiceDep,
    answer_id: Annotated[str | None, Query(alias="answerId")] = None,
) -> list[CommunityNote]:
    """List approved community notes, optionally for a single answer."""
    with _translate_errors("Failed to fetch approved community notes"):
        return service.list_approved(db, answer_id)


@router.get("/getPendingNotes", response_model=list[CommunityNoteResponse])
async def list_pending_notes(db: SessionDep, service: NoteServiceDep) -> list[CommunityNote]:
    """List community notes awaiting moderation."""
    with _translate_errors("Failed to fetch pending community notes"):
        return service.list_pending(db)


@router.patch("/updateNoteStatus", response_model=CommunityNoteResponse)
async def update_note_status(
    payload: Annotated[dict[str, Any], Body()],
    db: SessionDep,
    service: NoteServiceDep,
) -> CommunityNote:
    """Overwrite a note's status and notify real-time subscribers.

    Every failure on this route, malformed bodies included, is a 500.
    """
    try:
        status_update = NoteStatusUpdate.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Rejected status update body: %s", exc.errors())
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error when updating note status",
        ) from exc

    with _translate_errors(
        "Error when updating note status",
        force_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
    ):
        return service.set_status(db, status_update.note_id, status_update.status)


@router.patch("/editNote/{note_id}", response_model=CommunityNoteResponse)
async def edit_note(
    note_id: int,
    payload: Annotated[dict[str, Any], Body()],
    db: SessionDep,
    service: NoteServiceDep,
) -> CommunityNote:
    """Vote on or edit a note through the legacy combined endpoint.

    The body is decoded into either a vote or an allow-listed content patch
    before anything touches the database.
    """
    try:
        request = decode_edit_payload(payload)
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing or invalid fields for update",
        ) from exc

    with _translate_errors("Unexpected server error"):
        if isinstance(request, NoteVoteRequest):
            return _apply_vote(service, db, note_id, request)
        return _apply_patch(service, db, note_id, request)


@router.post("/{note_id}/votes", response_model=CommunityNoteResponse)
async def cast_vote(
    note_id: int,
    vote: NoteVoteRequest,
    db: SessionDep,
    service: NoteServiceDep,
) -> CommunityNote:
    """Cast a helpful or not-helpful vote on a note."""
    with _translate_errors("Unexpected server error"):
        return _apply_vote(service, db, note_id, vote)


@router.patch("/{note_id}/content", response_model=CommunityNoteResponse)
async def patch_note_content(
    note_id: int,
    patch: NoteContentPatch,
    db: SessionDep,
    service: NoteServiceDep,
) -> CommunityNote:
    """Edit a note's text or sources; the note returns to moderation."""
    with _translate_errors("Unexpected server error"):
        return _apply_patch(service, db, note_id, patch)


@router.post("/{note_id}/moderate", response_model=CommunityNoteResponse)
async def moderate_note(
    note_id: int,
    decision: NoteModerationRequest,
    db: SessionDep,
    service: NoteServiceDep,
) -> CommunityNote:
    """Approve or reject a note and update the author's tallies."""
    with _translate_errors("Error when moderating note"):
        return service.moderate(db, note_id, decision.status, decision.moderator_id)


@router.get("/{note_id}", response_model=CommunityNoteResponse)
async def get_note(note_id: int, db: SessionDep, service: NoteServiceDep) -> CommunityNote:
    """Get a single community note by id."""
    with _translate_errors("Failed to fetch community note"):
        return service.get_note(db, note_id)


@router.websocket("/ws")
async def note_updates(websocket: WebSocket, event_bus: EventBusDep) -> None:
    """Push note status changes to a connected client."""
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def _enqueue(payload: dict[str, Any]) -> None:
        # Publishers may run on worker threads.
        loop.call_soon_threadsafe(queue.put_nowait, payload)

    async def _forward() -> None:
        while True:
            payload = await queue.get()
            await websocket.send_json({"event": NOTE_UPDATE_TOPIC, "data": payload})

    # Subscribed before the handshake completes.
    unsubscribe = event_bus.subscribe(NOTE_UPDATE_TOPIC, _enqueue)
    forwarder: asyncio.Task[None] | None = None
    try:
        await websocket.accept()
        forwarder = asyncio.create_task(_forward())
        while True:
            # Inbound frames are ignored; reading detects the disconnect.
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Note update subscriber disconnected")
    finally:
        unsubscribe()
        if forwarder is not None:
            forwarder.cancel()
            try:
                await forwarder
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.warning("Note update forwarding stopped", exc_info=True)
