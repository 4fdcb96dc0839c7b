"""
Prometheus Scrape Endpoint.

Every GET runs one full snapshot over the configured services and answers
with the text exposition. Upstream failures show up as `<metric>_up 0` in
the body; the endpoint itself answers 200.
"""

from fastapi import APIRouter, Depends
from fastapi.responses import Response

from apps.exporter_api.deps import get_scraper
from rext_scrape.exposition import CONTENT_TYPE
from rext_scrape.scraper import Scraper


def create_router(path: str = "/metrics") -> APIRouter:
    """Build the scrape router on a configurable path."""
    router = APIRouter()

    @router.get(path, response_class=Response)
    async def metrics(scraper: Scraper = Depends(get_scraper)):
        """
        Prometheus metrics endpoint.

        Example:
        ```
        # HELP seq Blockchain sequence
        # TYPE seq counter
        seq{instance="127.0.0.1:6420",job="skycoin"} 58894.0
        # HELP seq_up Whether seq was resolved in the last scrape
        # TYPE seq_up gauge
        seq_up{instance="127.0.0.1:6420",job="skycoin"} 1.0
        ```
        """
        body = await scraper.scrape()
        return Response(content=body, media_type=CONTENT_TYPE)

    return router
