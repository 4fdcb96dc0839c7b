"""Upstream HTTP fetcher.

One request per call: no retry loop, no redirect handling beyond httpx
defaults. Non-200 answers raise UpstreamStatusError, network failures raise
TransportError. gzip bodies are decoded by httpx before they are returned.
"""

import asyncio
import time
from dataclasses import dataclass
from pathlib import Path

import httpx

from .exceptions import TransportError, UpstreamStatusError

FILE_SCHEME = "file://"


@dataclass(frozen=True)
class FetchResult:
    """Raw upstream body plus the round-trip it took."""

    body: bytes
    elapsed: float


class HttpFetcher:
    """Thin wrapper over a shared httpx.AsyncClient.

    Provides:
    - Optional single auth header per request
    - Status code enforcement (200 only)
    - Exception mapping into the exporter taxonomy
    - file:// reads for services using the file protocol
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 5.0,
    ):
        """Initialize fetcher.

        Args:
            client: Shared client, one is created when omitted
            timeout_seconds: Per-request timeout for a created client
        """
        self.timeout_seconds = timeout_seconds
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=timeout_seconds,
            headers={"Accept-Encoding": "gzip"},
        )

    async def fetch(
        self,
        method: str,
        url: str,
        header: tuple[str, str] | None = None,
    ) -> FetchResult:
        """Perform one upstream request and return its body.

        Args:
            method: HTTP method
            url: Absolute URL (http, https or file)
            header: Optional (key, value) pair, e.g. a CSRF token header

        Returns:
            FetchResult with the decoded body bytes

        Raises:
            TransportError: Network or IO failure
            UpstreamStatusError: Response status other than 200
        """
        if url.startswith(FILE_SCHEME):
            return await self._read_file(url[len(FILE_SCHEME):])

        headers = {header[0]: header[1]} if header else None
        started = time.perf_counter()
        try:
            response = await self.client.request(method, url, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransportError(f"can not do the request to {url}: {e}") from e
        try:
            if response.status_code != 200:
                raise UpstreamStatusError(response.status_code, url)
            body = response.content
        finally:
            await response.aclose()
        return FetchResult(body=body, elapsed=time.perf_counter() - started)

    async def _read_file(self, path: str) -> FetchResult:
        started = time.perf_counter()
        try:
            body = await asyncio.to_thread(Path(path).read_bytes)
        except OSError as e:
            raise TransportError(f"can not read {path}: {e}") from e
        return FetchResult(body=body, elapsed=time.perf_counter() - started)

    async def close(self):
        """Close the HTTP client if this fetcher created it."""
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
