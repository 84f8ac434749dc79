"""
mahber.api.main — FastAPI application entry point
=================================================

Run with::

    uvicorn mahber.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

load_dotenv()

from mahber import __version__  # noqa: E402
from mahber.api.deps import get_context  # noqa: E402
from mahber.api.routes.community import router as community_router  # noqa: E402
from mahber.api.routes.forums import router as forums_router  # noqa: E402
from mahber.api.routes.moderation import router as moderation_router  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — build the service context."""
    ctx = get_context()
    logger.info("Mahber API started — engine ready (%s)", ctx.engine.url.database)
    yield
    logger.info("Mahber API shutting down")


app = FastAPI(
    title="Mahber Community API",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(forums_router, prefix="/api")
app.include_router(community_router, prefix="/api")
app.include_router(moderation_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
