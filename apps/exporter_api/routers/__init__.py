"""
FastAPI Routers.

Contains:
- health: GET /healthz, /readyz
- metrics: GET <METRICS_PATH> (default /metrics)
"""

__all__ = ["health", "metrics"]
