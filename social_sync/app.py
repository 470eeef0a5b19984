"""
Social Sync - FastAPI Application Entry Point

Run with: uvicorn social_sync.app:app --host 0.0.0.0 --port 8000 --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, Callable

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from database.database import create_db_engine, create_session_factory, init_db
from . import __version__
from .config import SocialSyncSettings, get_social_sync_settings, get_webhook_callback_url
from .engine import build_engine
from .errors import SocialSyncError
from .routes import social_router

logger = logging.getLogger(__name__)


async def handle_social_sync_error(request: Request, exc: SocialSyncError) -> JSONResponse:
    """Render engine errors as structured JSON bodies."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.type} {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(
    settings: Optional[SocialSyncSettings] = None,
    session_factory: Optional[Callable[[], Session]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client=None,
) -> FastAPI:
    """
    Build the application.

    Collaborators not passed in are created from settings at startup and
    released at shutdown.
    """
    settings = settings or get_social_sync_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown."""
        # Startup
        client = http_client or httpx.AsyncClient(timeout=settings.provider_timeout_seconds)
        factory = session_factory
        if factory is None:
            db_engine = create_db_engine(settings.database_url)
            init_db(db_engine)
            factory = create_session_factory(db_engine)

        app.state.sync_engine = build_engine(settings, factory, client, redis_client)
        logger.info(f"Starting Social Sync v{__version__}")
        logger.info(f"Webhook callback URL: {get_webhook_callback_url(settings)}")

        yield

        # Shutdown
        if http_client is None:
            await client.aclose()
        logger.info("Shutting down Social Sync")

    app = FastAPI(
        title="Social Sync",
        description="Instagram webhook ingestion, pull sync and reply relay",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_exception_handler(SocialSyncError, handle_social_sync_error)
    app.include_router(social_router)

    @app.get("/health")
    async def health():
        """Liveness check."""
        return {"status": "ok", "service": "social-sync", "version": __version__}

    return app


app = create_app()
