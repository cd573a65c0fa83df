"""Realtime event schema documentation."""

from genrelay.api.v1.events.routes import router

__all__ = ["router"]
