"""
Rextporter FastAPI Application.

Serves:
- <METRICS_PATH>: one scrape snapshot per request
- /healthz, /readyz: Health checks
- /: Exporter information
"""

from apps.exporter_api.main import create_app

__all__ = ["create_app"]
