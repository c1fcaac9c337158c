"""HTTP boundary for the staff API."""

from api.routes import router

__all__ = ["router"]
