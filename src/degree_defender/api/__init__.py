"""HTTP API for the Degree Defender service."""

from .endpoints import community_notes_router, users_router

__all__ = [
    "community_notes_router",
    "users_router",
]
