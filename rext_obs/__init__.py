"""
Rextporter Observability Package.

Provides:
- Structured logging (structlog)
- Per-scrape self metrics (Prometheus)
- Distributed tracing (OpenTelemetry)
"""

__all__ = ["tracing", "metrics", "logging"]
