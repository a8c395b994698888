from fastapi import APIRouter, Query, Request
from fastapi.responses import StreamingResponse

from services.sse import WILDCARD_TEAM, WILDCARD_ROUND
from .common import sse


router = APIRouter()


@router.get("/teams/events")
async def team_events(
    request: Request,
    team: str = Query(WILDCARD_TEAM),
    round: str = Query(WILDCARD_ROUND),
):
    registry = sse()
    ip = (
        request.headers.get("x-forwarded-for")
        or request.headers.get("x-real-ip")
        or (request.client.host if request.client else "unknown")
    )
    client = registry.connect(team, round, ip=ip, user_agent=request.headers.get("user-agent", "unknown"))
    return StreamingResponse(
        registry.stream(client, is_disconnected=request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )
