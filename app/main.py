from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.health import router as health_router
from app.api.metrics_endpoint import router as metrics_router
from app.api.progress import router as progress_router
from app.core.clock import Clock
from app.core.config import SETTINGS, Settings
from app.core.logging import setup_logging
from app.db.redis import build_progress_storage, create_redis_client
from app.middleware.metrics import MetricsMiddleware
from app.middleware.request_context import RequestContextMiddleware, install_log_filter
from app.services.dashboard import DashboardClient
from app.services.progress_storage import ProgressStorage
from app.services.sessions import SessionRegistry

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings = SETTINGS,
    *,
    storage: ProgressStorage | None = None,
    clock: Clock | None = None,
    dashboard_client: DashboardClient | None = None,
) -> FastAPI:
    """Build the application.

    ``storage``, ``clock`` and ``dashboard_client`` override what the
    settings would build; tests use them to pin time and avoid I/O.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        redis_client = create_redis_client(settings) if storage is None else None
        client = dashboard_client
        if client is None and settings.dashboard_api_url:
            client = DashboardClient(settings.dashboard_api_url)

        app.state.redis = redis_client
        app.state.sessions = SessionRegistry(
            storage if storage is not None else build_progress_storage(redis_client),
            clock=clock,
            dashboard_client=client,
            poll_seconds=settings.dashboard_poll_seconds,
            activity_log_limit=settings.activity_log_limit,
            idle_seconds=settings.session_idle_seconds,
        )
        app.state.sessions.start_sweeper()
        try:
            yield
        finally:
            # Stops the sweeper and every learner's poller before the loop goes away.
            try:
                await app.state.sessions.close_all()
            finally:
                app.state.sessions = None
                if redis_client is not None:
                    await redis_client.aclose()
                    logger.info("Redis connection pool closed")

    app = FastAPI(
        title="learner-progress-service",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
    )
    app.state.settings = settings
    app.state.sessions = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Last added runs first: RequestContext → Metrics → CORS → route
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestContextMiddleware)

    app.include_router(metrics_router)
    app.include_router(health_router)
    app.include_router(progress_router)
    return app


setup_logging(SETTINGS.log_level, json_format=SETTINGS.log_json)
install_log_filter()

app = create_app()

logger.info(
    "learner-progress-service configured  env=%s log_level=%s port=%d redis=%s dashboard=%s",
    SETTINGS.app_env,
    SETTINGS.log_level,
    SETTINGS.port,
    "on" if SETTINGS.redis_url else "off",
    "on" if SETTINGS.dashboard_api_url else "off",
)
