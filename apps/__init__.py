"""
Rextporter Applications Package.

Contains:
- exporter_api: FastAPI application serving the scrape endpoint, plus the CLI
"""

__version__ = "0.1.0"
