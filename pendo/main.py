"""FastAPI application wiring for the Pendo session router.

This module bootstraps the HTTP API:

- Configures logging, CORS (optional for the admin UI), Prometheus metrics
  and rate limiting.
- Picks the conversation store and realtime transport from the environment:
  PostgreSQL plus ``LISTEN/NOTIFY`` when ``DATABASE_URL`` is set, in-process
  otherwise.
- Mounts the conversation, queue and notification routers and exposes
  health/version endpoints.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .conversations import (
    InMemoryConversationRepository,
    PostgresConversationRepository,
    build_chat_core,
)
from .core.db import connect, ensure_schema, get_database_url
from .realtime import Broker, create_broker
from .realtime.postgres import PostgresNotifyBroker
from .routers import conversations, notifications, queue
from .routers._common import limiter

load_dotenv()

logger = logging.getLogger(__name__)


async def _build_repository(notify_messages: bool = False):
    database_url = get_database_url()
    if not database_url:
        logger.warning("DATABASE_URL not set; conversations are kept in memory only")
        return InMemoryConversationRepository()
    conn = await connect(database_url)
    try:
        await ensure_schema(conn)
    finally:
        await conn.close()
    return PostgresConversationRepository(database_url, notify_messages=notify_messages)


def create_app(broker: Broker | None = None, repository=None) -> FastAPI:
    """Build the application.

    ``broker`` and ``repository`` override the environment-selected backends;
    tests pass in-memory instances.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        realtime = broker if broker is not None else create_broker()
        repo = (
            repository
            if repository is not None
            else await _build_repository(
                notify_messages=isinstance(realtime, PostgresNotifyBroker)
            )
        )
        await realtime.start()
        app.state.chat_core = build_chat_core(repo, realtime)
        logger.info("Pendo session router %s started", __version__)
        try:
            yield
        finally:
            await realtime.stop()
            app.state.chat_core = None

    app = FastAPI(title="Pendo session router", version=__version__, lifespan=lifespan)
    init_logging(app)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)
    # Optional CORS for admin UI
    admin_ui_origins = os.getenv("ADMIN_UI_ORIGINS")
    if admin_ui_origins:
        origins = [o.strip() for o in admin_ui_origins.split(",") if o.strip()]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    app.include_router(conversations.router)
    app.include_router(queue.router)
    app.include_router(notifications.router)

    @app.get("/api/health")
    async def health() -> dict:
        """Liveness probe."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version() -> dict:
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    # Expose Prometheus metrics
    Instrumentator().instrument(app).expose(
        app, include_in_schema=False, endpoint="/api/metrics"
    )
    return app


app = create_app()
