from fastapi import APIRouter

# Compose modular sub-routers
from api import (
    events_router,
    teams_router,
    admin_router,
)


router = APIRouter()

# main.py applies `/api` prefix; the events route is mounted before
# /teams/{round}/... so its static path wins
router.include_router(events_router)
router.include_router(teams_router)
router.include_router(admin_router)
