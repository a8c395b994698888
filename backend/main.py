import asyncio
import logging
import traceback
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config.game_config import APP_ENV, CORS_ORIGINS, SSE_CONFIG
from router import router
from models.db import init_db
from services.sse import get_sse_registry, run_sweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    sweeper = asyncio.create_task(run_sweeper(get_sse_registry(), SSE_CONFIG["sweep_interval_seconds"]))
    yield
    # Shutdown
    sweeper.cancel()
    try:
        await sweeper
    except asyncio.CancelledError:
        pass


app = FastAPI(
    title="Investment Game",
    description="Conference investment game: rounds, portfolios, settlement and live updates.",
    version="0.1.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in errors
    )
    return JSONResponse(status_code=400, content={"success": False, "error": f"Invalid request data: {detail}"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    content = {"success": False, "error": str(exc)}
    if APP_ENV == "development":
        content["details"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return JSONResponse(status_code=500, content=content)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(router, prefix="/api")
if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
