"""FastAPI application entry point."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from pathlib import Path

# Ensure gateway/ is on sys.path for absolute imports
_gateway_dir = str(Path(__file__).resolve().parent)
if _gateway_dir not in sys.path:  # pragma: no cover
    sys.path.insert(0, _gateway_dir)

try:
    __version__ = (Path(__file__).resolve().parent.parent / "VERSION").read_text().strip()
except Exception:  # pragma: no cover
    __version__ = "0.0.0-dev"

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import api_router
from config import settings
from database import init_db
from services.backends import build_backends
from services.router import BackendRouter
from ws import ws_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Configure unified logging before anything else
    from logging_config import setup_logging
    setup_logging("Server")

    import logging
    logger = logging.getLogger(__name__)

    # Startup: create tables if they don't exist
    init_db()

    router = BackendRouter(
        build_backends(settings),
        settings.BACKEND_PRIORITY,
        max_fallbacks=settings.BACKEND_MAX_FALLBACKS,
        timeout_seconds=settings.BACKEND_TIMEOUT_SECONDS,
    )
    app.state.backend_router = router
    logger.info("Generation backends: %s", ", ".join(router.priority) or "none")

    yield

    router.shutdown()
    app.state.backend_router = None


app = FastAPI(title="Conversational Exchange Gateway", version=__version__, lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL_ORIGINS else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes
app.include_router(api_router)

# WebSocket endpoints
app.include_router(ws_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True, log_config=None)
