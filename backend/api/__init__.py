from fastapi import APIRouter

# Subrouters are imported and re-exported for convenience
from .events import router as events_router  # noqa: F401
from .teams import router as teams_router  # noqa: F401
from .admin import router as admin_router  # noqa: F401

__all__ = [
    "APIRouter",
    "events_router",
    "teams_router",
    "admin_router",
]
