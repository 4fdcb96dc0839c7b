"""Scrape orchestrator.

One call to `Scraper.scrape()` serves one inbound scrape:

1. Open a Snapshot (fresh cache, fresh self-metrics, start time)
2. Plan one task per metric of every api resource and one per forwarder resource
3. Run the tasks on the worker pool under the scrape deadline
4. Fold results into value and `_up` families, keep last good values
5. Record self-metrics and render the exposition

Nothing below this module reaches the HTTP layer as an exception: every
failure ends up as `_up 0` plus a log line.
"""

import asyncio
import time
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable

from structlog.contextvars import bound_contextvars

from rext_config.schemas import AuthSpec, MetricDef, Resource, RootConfig, Service
from rext_obs.logging import get_logger
from rext_obs.metrics import SnapshotMetrics

from .cache import SnapshotCache
from .decoders import decode, decode_prometheus_text
from .exceptions import AuthError, RextError, ScrapeTimeoutError, UpstreamStatusError
from .exposition import ValueCollector, render
from .fetcher import FetchResult, HttpFetcher
from .forwarder import ForwardedBody, UpstreamExposition, forward_families
from .pool import WorkerPool
from .shapers import ShapedValue, sample_count, shape
from .token import TokenManager

logger = get_logger(__name__)

# (service index, resource index, metric index)
MetricHandle = tuple[int, int, int]

DEFAULT_REFRESH_STATUSES = frozenset({401, 403})
FORWARDER = "forwarder"


def default_refresh_policy(status: int) -> bool:
    return status in DEFAULT_REFRESH_STATUSES


@dataclass(frozen=True)
class PlannedTask:
    """One unit of work: a metric to shape or a forwarder to relabel."""

    service_idx: int
    resource_idx: int
    metric_idx: int | None = None

    @property
    def is_forwarder(self) -> bool:
        return self.metric_idx is None

    @property
    def handle(self) -> MetricHandle:
        return (self.service_idx, self.resource_idx, self.metric_idx)


@dataclass
class TaskOutcome:
    task: PlannedTask
    value: Any = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class Snapshot:
    """Transient state of one inbound scrape."""

    cache: SnapshotCache = field(default_factory=SnapshotCache)
    metrics: SnapshotMetrics = field(default_factory=SnapshotMetrics)
    errors: list[tuple[PlannedTask, BaseException]] = field(default_factory=list)
    auth_errors: dict[tuple[str, str], AuthError] = field(default_factory=dict)
    started: float = field(default_factory=time.perf_counter)

    def elapsed(self) -> float:
        return time.perf_counter() - self.started


class LastValueStore:
    """Last successfully shaped value per metric, across snapshots."""

    def __init__(self):
        self._values: dict[MetricHandle, ShapedValue] = {}

    def get(self, handle: MetricHandle) -> ShapedValue | None:
        return self._values.get(handle)

    def set(self, handle: MetricHandle, value: ShapedValue) -> None:
        self._values[handle] = value

    def __len__(self) -> int:
        return len(self._values)


class Scraper:
    """Turns the service graph into one exposition body per call."""

    def __init__(
        self,
        config: RootConfig,
        pool: WorkerPool,
        fetcher: HttpFetcher,
        tokens: TokenManager | None = None,
        scrape_timeout: float = 10.0,
        refresh_policy: Callable[[int], bool] | None = None,
    ):
        """Initialize scraper.

        Args:
            config: Validated service graph
            pool: Started worker pool
            fetcher: Upstream fetcher shared by every task
            tokens: Token manager, built on `fetcher` when omitted
            scrape_timeout: Deadline in seconds for a whole scrape
            refresh_policy: Decides whether an upstream status triggers a token refresh
        """
        self.config = config
        self.pool = pool
        self.fetcher = fetcher
        self.tokens = tokens or TokenManager(fetcher)
        self.scrape_timeout = scrape_timeout
        self.refresh_policy = refresh_policy or default_refresh_policy
        self.last_values = LastValueStore()

    # ========================================================================
    # PLANNING
    # ========================================================================

    def plan(self) -> list[PlannedTask]:
        """One task per metric definition, one per forwarder resource."""
        tasks = []
        for si, service in enumerate(self.config.services):
            for ri, resource in enumerate(service.resources):
                if resource.is_forwarder:
                    tasks.append(PlannedTask(si, ri))
                    continue
                for mi in range(len(resource.metrics)):
                    tasks.append(PlannedTask(si, ri, mi))
        return tasks

    def _lookup(self, task: PlannedTask) -> tuple[Service, Resource, MetricDef | None]:
        service = self.config.services[task.service_idx]
        resource = service.resources[task.resource_idx]
        metric = None if task.is_forwarder else resource.metrics[task.metric_idx]
        return service, resource, metric

    # ========================================================================
    # SCRAPE
    # ========================================================================

    async def scrape(self) -> bytes:
        """Run one snapshot and return the rendered exposition."""
        snapshot = Snapshot()
        planned = self.plan()
        runners = {
            asyncio.create_task(self._submit_and_wait(snapshot, task)): task
            for task in planned
        }

        done: set[asyncio.Task] = set()
        if runners:
            try:
                done, pending = await asyncio.wait(runners, timeout=self.scrape_timeout)
            except asyncio.CancelledError:
                for runner in runners:
                    runner.cancel()
                raise
            for runner in pending:
                runner.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning("scrape_deadline_exceeded", pending=len(pending), timeout=self.scrape_timeout)

        outcomes = []
        for runner, task in runners.items():
            if runner in done and not runner.cancelled():
                error = runner.exception()
                outcomes.append(TaskOutcome(task, None if error else runner.result(), error))
            else:
                outcomes.append(TaskOutcome(task, error=ScrapeTimeoutError(
                    f"no result within {self.scrape_timeout}s"
                )))

        body = self._compose(snapshot, outcomes)
        logger.info(
            "scrape_completed",
            tasks=len(planned),
            failed=len(snapshot.errors),
            fetches=snapshot.cache.loads,
            duration=round(snapshot.elapsed(), 6),
        )
        return body

    async def _submit_and_wait(self, snapshot: Snapshot, task: PlannedTask) -> Any:
        future = await self.pool.submit(partial(self._run, snapshot, task))
        return await future

    async def _run(self, snapshot: Snapshot, task: PlannedTask) -> ShapedValue | ForwardedBody:
        service, resource, metric = self._lookup(task)
        with bound_contextvars(
            service=service.name,
            resource=resource.name or resource.uri,
            metric=metric.name if metric else None,
        ):
            if metric is None:
                return await self._forward(snapshot, service, resource)
            document = await self._resolve(snapshot, service, resource)
            return shape(metric, document)

    async def _forward(self, snapshot: Snapshot, service: Service, resource: Resource) -> ForwardedBody:
        """Relabel a forwarded body for one service.

        The parsed upstream body is shared through the snapshot cache; the
        identity labels are added per service on copies of its families.
        """
        started = time.perf_counter()
        upstream: UpstreamExposition | None = None
        try:
            upstream = await self._resolve(snapshot, service, resource)
            return forward_families(service, upstream.families)
        finally:
            snapshot.metrics.observe_forwarder(
                service.name, service.instance,
                scrape_duration=time.perf_counter() - started if upstream is not None else None,
                response_duration=upstream.response_duration if upstream is not None else None,
            )

    # ========================================================================
    # RESOURCE RESOLUTION
    # ========================================================================

    async def _resolve(self, snapshot: Snapshot, service: Service, resource: Resource) -> Any:
        url = service.resource_url(resource)
        reader = FORWARDER if resource.is_forwarder else resource.decoder
        return await snapshot.cache.get_or_load(
            (resource.http_method, url, reader),
            partial(self._load, snapshot, service, resource, url),
        )

    async def _load(self, snapshot: Snapshot, service: Service, resource: Resource, url: str) -> Any:
        if resource.is_forwarder:
            fetched = await self._fetch(snapshot, service, resource, url)
            return UpstreamExposition(decode_prometheus_text(fetched.body), fetched.elapsed)

        started = time.perf_counter()
        result: FetchResult | None = None
        try:
            result = await self._fetch(snapshot, service, resource, url)
            return decode(resource.decoder, result.body)
        finally:
            response = result.elapsed if result is not None else None
            snapshot.metrics.observe_data_source(
                service.name, service.instance, url, time.perf_counter() - started, response
            )

    async def _fetch(self, snapshot: Snapshot, service: Service, resource: Resource, url: str) -> FetchResult:
        auth = resource.effective_auth(service.auth)
        if auth is None:
            return await self.fetcher.fetch(resource.http_method, url)

        token = await self._token(snapshot, service, auth)
        try:
            return await self.fetcher.fetch(resource.http_method, url, (auth.token_header_key, token))
        except UpstreamStatusError as e:
            if not self.refresh_policy(e.status):
                raise
            logger.info("token_rejected", service=service.name, url=url, status=e.status)
        token = await self._token(snapshot, service, auth, stale=token)
        return await self.fetcher.fetch(resource.http_method, url, (auth.token_header_key, token))

    async def _token(self, snapshot: Snapshot, service: Service, auth: AuthSpec, stale: str | None = None) -> str:
        """Token for a service; an AuthError fails the service for the whole snapshot."""
        key = (service.name, auth.token_gen_endpoint)
        if key in snapshot.auth_errors:
            raise snapshot.auth_errors[key]
        try:
            if stale is None:
                return await self.tokens.token_for(service, auth)
            return await self.tokens.refresh(service, auth, stale)
        except AuthError as e:
            snapshot.auth_errors[key] = e
            raise

    # ========================================================================
    # COMPOSITION
    # ========================================================================

    def _compose(self, snapshot: Snapshot, outcomes: list[TaskOutcome]) -> bytes:
        values = ValueCollector()
        forwarded: list[bytes] = []

        for outcome in outcomes:
            service, resource, metric = self._lookup(outcome.task)
            if not outcome.ok:
                self._record_failure(snapshot, outcome, service, resource, metric)
            if metric is None:
                if outcome.ok:
                    fb: ForwardedBody = outcome.value
                    forwarded.append(fb.body)
                    snapshot.metrics.add_samples(service.name, service.instance, fb.samples)
                continue

            handle = outcome.task.handle
            if outcome.ok:
                self.last_values.set(handle, outcome.value)
                snapshot.metrics.add_samples(
                    service.name, service.instance, sample_count(outcome.value),
                    datasource=service.resource_url(resource),
                )
            last = self.last_values.get(handle)
            if last is not None:
                values.add_value(service, metric, last)
            values.add_up(service, metric, outcome.ok)

        for service in self.config.services:
            snapshot.metrics.observe_service(service.name, service.instance, snapshot.elapsed())
        return render(values, [snapshot.metrics], forwarded)

    def _record_failure(
        self,
        snapshot: Snapshot,
        outcome: TaskOutcome,
        service: Service,
        resource: Resource,
        metric: MetricDef | None,
    ) -> None:
        error = outcome.error
        snapshot.errors.append((outcome.task, error))
        kind = error.kind if isinstance(error, RextError) else "internal"
        log = logger.warning if isinstance(error, RextError) else logger.error
        log(
            "scrape_task_failed",
            service=service.name,
            resource=resource.name or resource.uri,
            metric=metric.name if metric else None,
            kind=kind,
            error=str(error),
            error_type=type(error).__name__,
        )
