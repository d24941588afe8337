"""Shared API dependencies for database access and note services."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.orm import Session

from degree_defender.db.session import get_db
from degree_defender.services.community_notes import CommunityNoteService
from degree_defender.services.events import EventBus, get_event_bus

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_event_bus_dep() -> EventBus:
    """Return the shared event bus."""
    return get_event_bus()


EventBusDep = Annotated[EventBus, Depends(get_event_bus_dep)]


def get_note_service(event_bus: EventBusDep) -> CommunityNoteService:
    """Return a note service publishing on the shared event bus."""
    return CommunityNoteService(event_bus)


NoteServiceDep = Annotated[CommunityNoteService, Depends(get_note_service)]
