"""
Rextporter Configuration Package.

Provides:
- Settings: process settings from environment variables
- Service graph schemas (services, resources, metrics)
- TOML loader for the service graph
"""

from rext_config.settings import Settings

__all__ = ["Settings"]
