"""
Health Check Endpoints.

- GET /healthz: Liveness probe (API running)
- GET /readyz: Readiness probe (worker pool running, services configured)
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from apps.exporter_api.deps import get_pool, get_root_config
from rext_config.schemas import RootConfig
from rext_scrape.pool import WorkerPool

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """
    Liveness probe - is the exporter process running?

    Returns 200 OK if server is alive.
    """
    return {"status": "healthy", "service": "rextporter"}


@router.get("/readyz")
async def readyz(
    pool: WorkerPool | None = Depends(get_pool),
    config: RootConfig = Depends(get_root_config),
):
    """
    Readiness probe - can a scrape be served?

    Returns:
        200 OK when the worker pool runs and at least one service is configured
        503 Service Unavailable otherwise
    """
    checks = {
        "worker_pool": "ok" if pool is not None and pool.running else "stopped",
        "services": len(config.services),
    }
    if checks["worker_pool"] != "ok" or not config.services:
        return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})
    return {"status": "ready", "checks": checks}
