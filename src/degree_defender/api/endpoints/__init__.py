"""API endpoint modules."""

from .community_notes import router as community_notes_router
from .users import router as users_router

__all__ = [
    "community_notes_router",
    "users_router",
]
