"""Scrape orchestrator tests.

End to end through the pool, cache, token manager and exposition, with the
upstreams simulated by httpx.MockTransport.
"""

import copy
from contextlib import asynccontextmanager

import httpx
import pytest
import structlog

from conftest import samples_named, sample_value
from rext_config.loader import parse_config
from rext_scrape.fetcher import HttpFetcher
from rext_scrape.pool import WorkerPool
from rext_scrape.scraper import Scraper

HEALTH_PATH = "/api/v1/health"
TOKEN_PATH = "/api/v1/csrf"
SKYCOIN = {"job": "skycoin", "instance": "127.0.0.1:6420"}
CSRF = {
    "kind": "CSRF",
    "token_header_key": "X-CSRF-Token",
    "token_gen_endpoint": "/csrf",
    "token_path_in_response": "/csrf_token",
}


@asynccontextmanager
async def running_scraper(config, upstream, **kwargs):
    """Scraper on a started pool; everything torn down on exit."""
    pool = WorkerPool(workers=3)
    pool.start()
    fetcher = HttpFetcher(client=upstream.client())
    try:
        yield Scraper(config, pool, fetcher, **kwargs)
    finally:
        await pool.stop()
        await fetcher.client.aclose()


def with_auth(service_data):
    data = copy.deepcopy(service_data)
    data["auth"] = dict(CSRF)
    return data


class TestSkycoinHealth:
    """Literal scenarios over the skycoin health document."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "sample,expected",
        [
            ("seq", 58894),
            ("fee", 485194),
            ("unspents", 38171),
            ("csrf_enabled", 1),
            ("unversioned_api_enabled", 0),
            ("open_connections", 8),
        ],
    )
    async def test_emitted_values(self, upstream, skycoin_health, skycoin_service_data, sample, expected):
        """Test each configured metric is emitted with its value and _up=1."""
        upstream.add(HEALTH_PATH, json=skycoin_health)
        config = parse_config({"services": [skycoin_service_data]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        assert sample_value(body, sample, **SKYCOIN) == expected
        assert sample_value(body, f"{sample}_up", **SKYCOIN) == 1

    @pytest.mark.asyncio
    async def test_one_fetch_per_resource(self, upstream, skycoin_health, skycoin_service_data):
        """Test six metrics on one resource share a single upstream fetch."""
        upstream.add(HEALTH_PATH, json=skycoin_health)
        config = parse_config({"services": [skycoin_service_data]})

        async with running_scraper(config, upstream) as scraper:
            await scraper.scrape()
            assert upstream.count(HEALTH_PATH) == 1
            await scraper.scrape()
            assert upstream.count(HEALTH_PATH) == 2

    @pytest.mark.asyncio
    async def test_counter_keeps_configured_name(self, upstream, skycoin_health, skycoin_service_data):
        """Test a counter is written under its configured name, with no _total suffix."""
        upstream.add(HEALTH_PATH, json=skycoin_health)
        config = parse_config({"services": [skycoin_service_data]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        lines = body.decode("utf-8").splitlines()
        assert "# TYPE seq counter" in lines
        assert 'seq{instance="127.0.0.1:6420",job="skycoin"} 58894.0' in lines
        assert "# TYPE fee gauge" in lines
        assert b"seq_total" not in body
        assert len(samples_named(body, "seq")) == 1
        assert len(samples_named(body, "seq_up")) == 1

    @pytest.mark.asyncio
    async def test_self_metrics(self, upstream, skycoin_health, skycoin_service_data):
        """Test scrape and data source self metrics are exported."""
        upstream.add(HEALTH_PATH, json=skycoin_health)
        config = parse_config({"services": [skycoin_service_data]})
        datasource = "http://127.0.0.1:6420/api/v1/health"

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        assert sample_value(body, "scrape_duration_seconds", **SKYCOIN) >= 0
        assert sample_value(body, "scrape_samples_scraped", **SKYCOIN) == 6
        assert sample_value(body, "data_source_scrape_duration_seconds", datasource=datasource, **SKYCOIN) >= 0
        assert sample_value(body, "data_source_response_duration_seconds", datasource=datasource, **SKYCOIN) >= 0
        assert sample_value(body, "data_source_scrape_samples_scraped", datasource=datasource, **SKYCOIN) == 6


class TestFailures:
    """Failures become _up=0 and keep the last good value."""

    @pytest.mark.asyncio
    async def test_last_good_value_survives_outage(self, upstream, skycoin_health, skycoin_service_data):
        """Test a failed scrape reports _up=0 with the previous value."""
        upstream.add(HEALTH_PATH, json=skycoin_health)
        upstream.add(HEALTH_PATH, status=500)
        config = parse_config({"services": [skycoin_service_data]})

        async with running_scraper(config, upstream) as scraper:
            await scraper.scrape()
            assert len(scraper.last_values) == 6
            body = await scraper.scrape()
            assert len(scraper.last_values) == 6

        assert sample_value(body, "seq", **SKYCOIN) == 58894
        assert sample_value(body, "seq_up", **SKYCOIN) == 0
        assert sample_value(body, "scrape_samples_scraped", **SKYCOIN) == 0

    @pytest.mark.asyncio
    async def test_never_scraped_value_is_absent(self, upstream, skycoin_service_data):
        """Test a metric without any success only emits _up=0."""
        upstream.add(HEALTH_PATH, status=503)
        config = parse_config({"services": [skycoin_service_data]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        assert samples_named(body, "seq") == []
        assert sample_value(body, "seq_up", **SKYCOIN) == 0

    @pytest.mark.asyncio
    async def test_bad_path_fails_only_that_metric(self, upstream, skycoin_health, skycoin_service_data):
        """Test a path error does not affect sibling metrics."""
        data = copy.deepcopy(skycoin_service_data)
        data["resources"][0]["metrics"].append(
            {"name": "branch", "type": "gauge", "node_solver": {"path": "/version/branch"}}
        )
        upstream.add(HEALTH_PATH, json=skycoin_health)
        config = parse_config({"services": [data]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        assert sample_value(body, "branch_up", **SKYCOIN) == 0
        assert sample_value(body, "fee_up", **SKYCOIN) == 1

    @pytest.mark.asyncio
    async def test_deadline_reports_timeout(self, upstream, skycoin_health, skycoin_service_data):
        """Test tasks missing the scrape deadline report _up=0 and the body is still served."""
        upstream.add(HEALTH_PATH, json=skycoin_health)
        upstream.delay = 0.3
        config = parse_config({"services": [skycoin_service_data]})

        async with running_scraper(config, upstream, scrape_timeout=0.05) as scraper:
            body = await scraper.scrape()

        assert sample_value(body, "seq_up", **SKYCOIN) == 0
        assert sample_value(body, "scrape_duration_seconds", **SKYCOIN) < 0.3


class TestAuth:
    """CSRF token handling during scrapes."""

    @pytest.mark.asyncio
    async def test_token_header_sent(self, upstream, skycoin_health, skycoin_service_data):
        """Test data requests carry the token obtained from the service."""
        upstream.add(TOKEN_PATH, json={"csrf_token": "t1"})
        upstream.add(HEALTH_PATH, json=skycoin_health)
        config = parse_config({"services": [with_auth(skycoin_service_data)]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()
            await scraper.scrape()

        data_requests = [r for r in upstream.requests if r.url.path == HEALTH_PATH]
        assert all(r.headers["X-CSRF-Token"] == "t1" for r in data_requests)
        assert upstream.count(TOKEN_PATH) == 1
        assert sample_value(body, "seq_up", **SKYCOIN) == 1

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once(self, upstream, skycoin_health, skycoin_service_data):
        """Test a 403 refreshes the token and retries the fetch once."""
        issued = []

        def token(request):
            issued.append(f"t{len(issued) + 1}")
            return httpx.Response(200, json={"csrf_token": issued[-1]})

        def health(request):
            if request.headers.get("X-CSRF-Token") != "t2":
                return httpx.Response(403)
            return httpx.Response(200, json=skycoin_health)

        upstream.route(TOKEN_PATH, token)
        upstream.route(HEALTH_PATH, health)
        config = parse_config({"services": [with_auth(skycoin_service_data)]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        assert upstream.count(TOKEN_PATH) == 2
        assert upstream.count(HEALTH_PATH) == 2
        assert sample_value(body, "seq", **SKYCOIN) == 58894

    @pytest.mark.asyncio
    async def test_retry_failure_surfaces(self, upstream, skycoin_service_data):
        """Test a second rejection is not retried again."""
        upstream.add(TOKEN_PATH, json={"csrf_token": "t"})
        upstream.add(HEALTH_PATH, status=401)
        config = parse_config({"services": [with_auth(skycoin_service_data)]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        assert upstream.count(HEALTH_PATH) == 2
        assert sample_value(body, "seq_up", **SKYCOIN) == 0

    @pytest.mark.asyncio
    async def test_other_status_not_refreshed(self, upstream, skycoin_service_data):
        """Test statuses outside the refresh policy fail without a retry."""
        upstream.add(TOKEN_PATH, json={"csrf_token": "t"})
        upstream.add(HEALTH_PATH, status=500)
        config = parse_config({"services": [with_auth(skycoin_service_data)]})

        async with running_scraper(config, upstream) as scraper:
            await scraper.scrape()

        assert upstream.count(HEALTH_PATH) == 1
        assert upstream.count(TOKEN_PATH) == 1

    @pytest.mark.asyncio
    async def test_widened_refresh_policy(self, upstream, skycoin_health, skycoin_service_data):
        """Test a custom policy can refresh on any non-200 status."""
        upstream.add(TOKEN_PATH, json={"csrf_token": "t"})
        upstream.add(HEALTH_PATH, status=500)
        upstream.add(HEALTH_PATH, json=skycoin_health)
        config = parse_config({"services": [with_auth(skycoin_service_data)]})

        async with running_scraper(config, upstream, refresh_policy=lambda status: status != 200) as scraper:
            body = await scraper.scrape()

        assert upstream.count(TOKEN_PATH) == 2
        assert sample_value(body, "seq_up", **SKYCOIN) == 1

    @pytest.mark.asyncio
    async def test_auth_failure_fails_service(self, upstream, skycoin_service_data):
        """Test an unobtainable token fails every metric of the service."""
        upstream.add(TOKEN_PATH, status=500)
        config = parse_config({"services": [with_auth(skycoin_service_data)]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        ups = [s for s in samples_named(body, "seq_up") + samples_named(body, "fee_up")]
        assert [s.value for s in ups] == [0, 0]
        assert upstream.count(HEALTH_PATH) == 0


class TestShapesAndForwarders:
    """Vectors, histograms, prometheus decoder and forwarders in one scrape."""

    @pytest.mark.asyncio
    async def test_vector_and_histogram(self, upstream):
        """Test labelled vectors and histograms are exposed with identity labels."""
        upstream.add(
            "/api/v1/network/connections",
            json={
                "connections": [{"height": 10}, {"height": 12}],
                "addresses": ["10.0.0.1:6000", "10.0.0.2:6000"],
                "latencies": [0.5, 1, 2, 7],
            },
        )
        service = {
            "name": "skycoin", "host": "127.0.0.1", "port": 6420, "base_path": "/api/v1",
            "resources": [{
                "name": "connections",
                "uri": "/network/connections",
                "metrics": [
                    {"name": "peer_height", "type": "gauge",
                     "node_solver": {"path": "/connections"},
                     "options": {"item_path": "/height"},
                     "labels": [{"name": "address", "node_solver": {"path": "/addresses"}}]},
                    {"name": "peer_latency", "type": "histogram",
                     "node_solver": {"path": "/latencies"}, "buckets": [1, 5]},
                ],
            }],
        }
        config = parse_config({"services": [service]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        assert sample_value(body, "peer_height", address="10.0.0.2:6000", **SKYCOIN) == 12
        assert sample_value(body, "peer_latency_bucket", le="5.0", **SKYCOIN) == 3
        assert sample_value(body, "peer_latency_bucket", le="+Inf", **SKYCOIN) == 4
        assert sample_value(body, "peer_latency_sum", **SKYCOIN) == 10.5
        # 2 vector samples + 3 buckets, _count and _sum
        assert sample_value(body, "scrape_samples_scraped", **SKYCOIN) == 7

    @pytest.mark.asyncio
    async def test_prometheus_decoder_resource(self, upstream):
        """Test api resources can read values out of an exposition body."""
        upstream.add("/metrics", text="# TYPE process_open_fds gauge\nprocess_open_fds 42\n")
        service = {
            "name": "node", "host": "10.0.0.5", "port": 9100,
            "resources": [{
                "name": "process", "uri": "/metrics", "decoder": "prometheus",
                "metrics": [{"name": "open_fds", "type": "gauge",
                             "node_solver": {"path": "/process_open_fds/samples/0/value"}}],
            }],
        }
        config = parse_config({"services": [service]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        assert sample_value(body, "open_fds", job="node", instance="10.0.0.5:9100") == 42

    @pytest.mark.asyncio
    async def test_forwarder_resource(self, upstream):
        """Test forwarded bodies are relabelled and appended."""
        upstream.add("/metrics", text="foo_total 3\n")
        service = {
            "name": "svcA", "host": "10.0.0.1", "port": 9000,
            "resources": [{"name": "node", "uri": "/metrics", "kind": "forwarder"}],
        }
        config = parse_config({"services": [service]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        svc_a = {"job": "svcA", "instance": "10.0.0.1:9000"}
        assert sample_value(body, "foo_total", **svc_a) == 3
        assert sample_value(body, "fordwader_scrape_duration_seconds", **svc_a) >= 0
        assert sample_value(body, "fordwader_response_duration_seconds", **svc_a) >= 0
        assert sample_value(body, "scrape_samples_scraped", **svc_a) == 1

    @pytest.mark.asyncio
    async def test_shared_forwarder_url_keeps_each_identity(self, upstream):
        """Test two services forwarding one URL each get their own job label."""
        upstream.add("/metrics", text="foo_total 3\n")
        services = [
            {"name": name, "host": "10.0.0.1", "port": 9000,
             "resources": [{"name": "node", "uri": "/metrics", "kind": "forwarder"}]}
            for name in ("svcA", "svcB")
        ]
        config = parse_config({"services": services})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        jobs = sorted(s.labels["job"] for s in samples_named(body, "foo_total"))
        assert jobs == ["svcA", "svcB"]
        assert upstream.count("/metrics") == 1
        for job in jobs:
            assert sample_value(body, "fordwader_scrape_duration_seconds", job=job) >= 0
            assert sample_value(body, "scrape_samples_scraped", job=job) == 1

    @pytest.mark.asyncio
    async def test_task_log_context(self, upstream, skycoin_health, skycoin_service_data):
        """Test upstream requests run with the task's service and resource bound for logging."""
        seen = []

        def health(request):
            seen.append(structlog.contextvars.get_contextvars())
            return httpx.Response(200, json=skycoin_health)

        upstream.route(HEALTH_PATH, health)
        config = parse_config({"services": [skycoin_service_data]})

        async with running_scraper(config, upstream) as scraper:
            await scraper.scrape()

        [context] = seen
        assert context["service"] == "skycoin"
        assert context["resource"] == "health"

    @pytest.mark.asyncio
    async def test_same_metric_on_two_services(self, upstream, skycoin_health, skycoin_service_data):
        """Test a metric configured on two services shares one family."""
        second = copy.deepcopy(skycoin_service_data)
        second["name"] = "skycoin-b"
        second["port"] = 6421
        upstream.add(HEALTH_PATH, json=skycoin_health)
        config = parse_config({"services": [skycoin_service_data, second]})

        async with running_scraper(config, upstream) as scraper:
            body = await scraper.scrape()

        assert body.count(b"# TYPE fee gauge") == 1
        jobs = {s.labels["job"] for s in samples_named(body, "fee")}
        assert jobs == {"skycoin", "skycoin-b"}
        # the two services resolve to different URLs
        assert upstream.count(HEALTH_PATH) == 2
