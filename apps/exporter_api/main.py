"""
Rextporter FastAPI Application Entry Point.

`create_app()` builds the application with:
- Lifespan context management (HTTP client, worker pool, scrape engine)
- Request logging middleware
- OpenTelemetry instrumentation (optional)
- Scrape, health and info routes

There is no module level app: run it with
`uvicorn --factory apps.exporter_api.main:create_app` or the `rextporter` CLI.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from apps.exporter_api.middleware import RequestLoggingMiddleware
from apps.exporter_api.routers import health, metrics
from rext_config.loader import load_config
from rext_config.schemas import RootConfig
from rext_config.settings import Settings
from rext_obs.logging import get_logger, setup_logging
from rext_obs.tracing import instrument_app, setup_tracing
from rext_scrape.fetcher import HttpFetcher
from rext_scrape.pool import WorkerPool
from rext_scrape.scraper import Scraper
from rext_scrape.token import TokenManager

__version__ = "0.1.0"

logger = get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    config: RootConfig | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """
    Build the exporter application.

    Args:
        settings: Process settings, read from the environment when omitted
        config: Service graph, loaded from settings.CONFIG_PATH when omitted
        client: Shared upstream client; one is created (and closed) when omitted

    Raises:
        ConfigError: The service configuration is missing or invalid
    """
    settings = settings or Settings()
    setup_logging(settings)
    setup_tracing(settings)
    if config is None:
        config = load_config(settings.CONFIG_PATH)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan context manager.

        Handles:
        - Upstream HTTP client and token manager
        - Worker pool start/stop
        - Graceful shutdown
        """
        fetcher = HttpFetcher(client=client, timeout_seconds=settings.HTTP_TIMEOUT_SECONDS)
        pool = WorkerPool(workers=settings.WORKER_COUNT)
        pool.start()
        app.state.pool = pool
        app.state.scraper = Scraper(
            config=config,
            pool=pool,
            fetcher=fetcher,
            tokens=TokenManager(fetcher),
            scrape_timeout=settings.SCRAPE_TIMEOUT_SECONDS,
            refresh_policy=settings.refreshes_token_on,
        )
        logger.info(
            "exporter_started",
            services=len(config.services),
            workers=settings.WORKER_COUNT,
            metrics_path=settings.METRICS_PATH,
            environment=settings.ENVIRONMENT,
        )

        yield

        logger.info("exporter_stopping")
        app.state.scraper = None
        await pool.stop()
        await fetcher.close()
        logger.info("exporter_stopped")

    app = FastAPI(
        title="Rextporter",
        description="Configurable Prometheus exporter for REST APIs and metrics endpoints",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.root_config = config
    app.state.scraper = None
    app.state.pool = None

    # ========================================================================
    # MIDDLEWARE
    # ========================================================================

    app.add_middleware(RequestLoggingMiddleware)
    instrument_app(app, settings)

    # ========================================================================
    # EXCEPTION HANDLERS
    # ========================================================================

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Log unhandled exceptions and answer 500 without internals."""
        logger.exception("unhandled_exception", path=request.url.path, error=str(exc))
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred.",
            },
        )

    # ========================================================================
    # ROUTERS
    # ========================================================================

    app.include_router(health.router, prefix="", tags=["health"])
    app.include_router(metrics.create_router(settings.METRICS_PATH), prefix="", tags=["metrics"])

    @app.get("/", tags=["root"])
    async def root():
        """
        Root endpoint - exporter information.

        Returns:
            Exporter metadata and available endpoints
        """
        return {
            "name": "rextporter",
            "version": __version__,
            "metrics": settings.METRICS_PATH,
            "health": "/healthz",
            "ready": "/readyz",
            "services": [
                {"job": s.name, "instance": s.instance, "resources": len(s.resources)}
                for s in config.services
            ],
        }

    return app
