"""Pytest fixtures.

Upstream services are simulated with httpx.MockTransport so every test runs
the real fetcher, token manager and scrape engine without a network.
"""

import asyncio
from typing import Any, Callable

import httpx
import pytest
from prometheus_client.parser import text_string_to_metric_families

from rext_scrape.fetcher import HttpFetcher

SKYCOIN_HEALTH = {
    "blockchain": {"head": {"seq": 58894, "fee": 485194}, "unspents": 38171, "unconfirmed": 1},
    "version": {"branch": "develop"},
    "open_connections": 8,
    "csrf_enabled": True,
    "unversioned_api_enabled": False,
}


class FakeUpstream:
    """Scripted upstream: one handler per path, every request recorded."""

    def __init__(self):
        self.routes: dict[str, list[Callable[[httpx.Request], httpx.Response]]] = {}
        self.requests: list[httpx.Request] = []
        self.delay = 0.0

    def route(self, path: str, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.routes.setdefault(path, []).append(handler)

    def add(
        self,
        path: str,
        status: int = 200,
        json: Any = None,
        text: str | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Queue a canned answer; the last one queued keeps repeating."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(status, json=json, text=text, content=content, headers=headers)

        self.route(path, handler)

    def count(self, path: str) -> int:
        return sum(1 for request in self.requests if request.url.path == path)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        handlers = self.routes.get(request.url.path)
        if not handlers:
            return httpx.Response(404, text="not found")
        handler = handlers.pop(0) if len(handlers) > 1 else handlers[0]
        return handler(request)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handle))


def exposed_samples(body: bytes) -> list:
    """Samples exactly as written on the wire.

    TYPE lines are dropped before parsing: the client parser would report a
    counter `seq` as `seq_total`.
    """
    lines = [line for line in body.decode("utf-8").splitlines() if not line.startswith("#")]
    return [
        sample
        for family in text_string_to_metric_families("\n".join(lines) + "\n")
        for sample in family.samples
    ]


def sample_value(body: bytes, name: str, **labels: str) -> float | None:
    """Value of the first sample called `name` whose labels include `labels`."""
    for sample in exposed_samples(body):
        if sample.name == name and all(sample.labels.get(k) == v for k, v in labels.items()):
            return sample.value
    return None


def samples_named(body: bytes, name: str) -> list:
    return [sample for sample in exposed_samples(body) if sample.name == name]


@pytest.fixture
def upstream():
    """Fresh scripted upstream."""
    return FakeUpstream()


@pytest.fixture
def fetcher(upstream):
    """Fetcher wired to the scripted upstream."""
    return HttpFetcher(client=upstream.client())


@pytest.fixture
def skycoin_health():
    """Health document of a skycoin node."""
    return SKYCOIN_HEALTH


@pytest.fixture
def skycoin_service_data():
    """Service declaration matching the skycoin health document."""
    return {
        "name": "skycoin",
        "protocol": "http",
        "host": "127.0.0.1",
        "port": 6420,
        "base_path": "/api/v1",
        "resources": [
            {
                "name": "health",
                "uri": "/health",
                "metrics": [
                    {"name": "seq", "type": "counter", "description": "Blockchain sequence",
                     "node_solver": {"path": "/blockchain/head/seq"}},
                    {"name": "fee", "type": "gauge", "node_solver": {"path": "/blockchain/head/fee"}},
                    {"name": "unspents", "type": "gauge", "node_solver": {"path": "/blockchain/unspents"}},
                    {"name": "csrf_enabled", "type": "gauge", "node_solver": {"path": "/csrf_enabled"}},
                    {"name": "unversioned_api_enabled", "type": "gauge",
                     "node_solver": {"path": "/unversioned_api_enabled"}},
                    {"name": "open_connections", "type": "gauge", "node_solver": {"path": "/open_connections"}},
                ],
            }
        ],
    }
