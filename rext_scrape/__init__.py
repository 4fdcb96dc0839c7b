"""
Rextporter Scrape Engine.

Per inbound scrape: plan work from the service graph, fan out to upstreams
on a bounded worker pool, decode and shape values, relabel forwarded
expositions and render one Prometheus text body.
"""

from rext_scrape.exceptions import RextError
from rext_scrape.scraper import Scraper

__all__ = ["RextError", "Scraper"]
