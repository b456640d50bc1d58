"""API v1 package."""

from uplift.api.v1.router import router

__all__ = ["router"]
