"""
Self-Observation Metrics.

Per-snapshot gauges describing the scrape itself. A fresh SnapshotMetrics
is created for every inbound scrape, filled while the scrape runs and
collected into the response; nothing here survives across scrapes.
"""

from typing import Iterator

from prometheus_client.core import GaugeMetricFamily

# ============================================================================
# METRIC NAMES
# ============================================================================

SCRAPE_DURATION = "scrape_duration_seconds"
SCRAPE_SAMPLES = "scrape_samples_scraped"
DATA_SOURCE_SCRAPE_DURATION = "data_source_scrape_duration_seconds"
DATA_SOURCE_RESPONSE_DURATION = "data_source_response_duration_seconds"
DATA_SOURCE_SAMPLES = "data_source_scrape_samples_scraped"
FORWARDER_RESPONSE_DURATION = "fordwader_response_duration_seconds"
FORWARDER_SCRAPE_DURATION = "fordwader_scrape_duration_seconds"

SERVICE_LABELS = ["job", "instance"]
DATA_SOURCE_LABELS = ["job", "instance", "datasource"]

SELF_METRIC_NAMES = (
    SCRAPE_DURATION,
    SCRAPE_SAMPLES,
    DATA_SOURCE_SCRAPE_DURATION,
    DATA_SOURCE_RESPONSE_DURATION,
    DATA_SOURCE_SAMPLES,
    FORWARDER_RESPONSE_DURATION,
    FORWARDER_SCRAPE_DURATION,
)


class SnapshotMetrics:
    """Accumulates self-metrics for one scrape and yields them as gauge families."""

    def __init__(self):
        self.scrape_duration: dict[tuple[str, str], float] = {}
        self.samples_scraped: dict[tuple[str, str], float] = {}
        self.data_source_scrape_duration: dict[tuple[str, str, str], float] = {}
        self.data_source_response_duration: dict[tuple[str, str, str], float] = {}
        self.data_source_samples: dict[tuple[str, str, str], float] = {}
        self.forwarder_response_duration: dict[tuple[str, str], float] = {}
        self.forwarder_scrape_duration: dict[tuple[str, str], float] = {}

    # ========================================================================
    # RECORDING
    # ========================================================================

    def observe_service(self, job: str, instance: str, duration: float) -> None:
        self.scrape_duration[(job, instance)] = duration
        self.samples_scraped.setdefault((job, instance), 0.0)

    def add_samples(self, job: str, instance: str, count: int, datasource: str | None = None) -> None:
        """Count samples emitted for a service and, optionally, one of its resources."""
        key = (job, instance)
        self.samples_scraped[key] = self.samples_scraped.get(key, 0.0) + count
        if datasource is not None:
            ds_key = (job, instance, datasource)
            self.data_source_samples[ds_key] = self.data_source_samples.get(ds_key, 0.0) + count

    def observe_data_source(
        self,
        job: str,
        instance: str,
        datasource: str,
        scrape_duration: float,
        response_duration: float | None = None,
    ) -> None:
        key = (job, instance, datasource)
        self.data_source_scrape_duration[key] = scrape_duration
        self.data_source_samples.setdefault(key, 0.0)
        if response_duration is not None:
            self.data_source_response_duration[key] = response_duration

    def observe_forwarder(
        self,
        job: str,
        instance: str,
        scrape_duration: float | None = None,
        response_duration: float | None = None,
    ) -> None:
        """Record forwarder timings; several forwarders on one service add up."""
        key = (job, instance)
        if scrape_duration is not None:
            self.forwarder_scrape_duration[key] = self.forwarder_scrape_duration.get(key, 0.0) + scrape_duration
        if response_duration is not None:
            self.forwarder_response_duration[key] = (
                self.forwarder_response_duration.get(key, 0.0) + response_duration
            )

    # ========================================================================
    # COLLECTION
    # ========================================================================

    def collect(self) -> Iterator[GaugeMetricFamily]:
        yield _gauge(SCRAPE_DURATION, "Seconds the last scrape took per service", SERVICE_LABELS, self.scrape_duration)
        yield _gauge(SCRAPE_SAMPLES, "Samples successfully emitted per service", SERVICE_LABELS, self.samples_scraped)
        yield _gauge(
            DATA_SOURCE_SCRAPE_DURATION,
            "Seconds spent resolving a data source, fetch and decode included",
            DATA_SOURCE_LABELS,
            self.data_source_scrape_duration,
        )
        yield _gauge(
            DATA_SOURCE_RESPONSE_DURATION,
            "Upstream round-trip seconds per data source",
            DATA_SOURCE_LABELS,
            self.data_source_response_duration,
        )
        yield _gauge(
            DATA_SOURCE_SAMPLES,
            "Samples successfully emitted per data source",
            DATA_SOURCE_LABELS,
            self.data_source_samples,
        )
        yield _gauge(
            FORWARDER_RESPONSE_DURATION,
            "Upstream round-trip seconds of forwarded metrics endpoints",
            SERVICE_LABELS,
            self.forwarder_response_duration,
        )
        yield _gauge(
            FORWARDER_SCRAPE_DURATION,
            "Seconds spent fetching and relabelling forwarded metrics",
            SERVICE_LABELS,
            self.forwarder_scrape_duration,
        )


def _gauge(name: str, documentation: str, labels: list[str], values: dict[tuple, float]) -> GaugeMetricFamily:
    family = GaugeMetricFamily(name, documentation, labels=labels)
    for label_values, value in values.items():
        family.add_metric(list(label_values), value)
    return family
