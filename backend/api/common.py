from datetime import datetime, timezone
from typing import Any, Callable
import logging

from fastapi.responses import JSONResponse

from services.game_service import GameError, get_game_service, GameService
from services.sse import get_sse_registry, SSERegistry


logger = logging.getLogger(__name__)


def game() -> GameService:
    return get_game_service()


def sse() -> SSERegistry:
    return get_sse_registry()


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message, **extra})


def game_error_response(exc: GameError) -> JSONResponse:
    return error_response(exc.status_code, str(exc))


def notify(action: str, send: Callable[..., int], *args: Any) -> int:
    """Run an SSE broadcast; failures are logged and never reach the caller."""
    try:
        sent = send(*args)
        logger.info(f"{action} broadcast completed. Sent to {sent} clients.")
        return sent
    except Exception as e:
        logger.error(f"Error broadcasting {action}: {e}")
        return 0

