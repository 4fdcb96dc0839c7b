"""
FastAPI Dependency Injection.

Provides the scrape engine objects the lifespan stores on app.state.
"""

from fastapi import HTTPException, Request

from rext_config.schemas import RootConfig
from rext_scrape.pool import WorkerPool
from rext_scrape.scraper import Scraper


def get_scraper(request: Request) -> Scraper:
    """
    Dependency: the application's scrape orchestrator.

    Raises:
        HTTPException: 503 before startup completed or after shutdown
    """
    scraper = getattr(request.app.state, "scraper", None)
    if scraper is None:
        raise HTTPException(status_code=503, detail="scrape engine not started")
    return scraper


def get_pool(request: Request) -> WorkerPool | None:
    return getattr(request.app.state, "pool", None)


def get_root_config(request: Request) -> RootConfig:
    return request.app.state.root_config
