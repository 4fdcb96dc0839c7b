"""Exposition of shaped metric values.

Value families are grouped by exposed name so the same metric configured on
several services lands in a single family, each sample carrying its own
`job` and `instance`. Every family is written under its configured name,
counters included: `generate_latest` would rename a counter `seq` to
`seq_total`, so value families go through `encode_values` instead.
Self-metrics and forwarded bodies keep the client library encoder.
"""

from typing import Iterable, Iterator

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.metrics_core import Metric
from prometheus_client.samples import Sample
from prometheus_client.utils import floatToGoString

from rext_config.schemas import MetricDef, Service
from rext_obs.logging import get_logger

from .shapers import HistogramValue, ShapedValue, VectorSample

logger = get_logger(__name__)

CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"


def up_name(metric: MetricDef) -> str:
    return f"{metric.name}_up"


class ValueCollector:
    """Collects `<name>` and `<name>_up` families for one snapshot."""

    def __init__(self):
        self._families: dict[str, Metric] = {}

    def add_value(self, service: Service, metric: MetricDef, value: ShapedValue) -> None:
        family = self._family(metric.name, metric.type, metric.description)
        if family is None:
            return
        identity = {"job": service.name, "instance": service.instance}
        if isinstance(value, HistogramValue):
            _add_histogram(family, metric.name, identity, value)
        elif isinstance(value, list):
            for sample in value:
                family.add_sample(metric.name, {**_vector_labels(metric, sample), **identity}, sample.value)
        else:
            family.add_sample(metric.name, identity, value)

    def add_up(self, service: Service, metric: MetricDef, up: bool) -> None:
        family = self._family(up_name(metric), "gauge", f"Whether {metric.name} was resolved in the last scrape")
        if family is None:
            return
        family.add_sample(
            up_name(metric),
            {"job": service.name, "instance": service.instance},
            1.0 if up else 0.0,
        )

    def _family(self, name: str, metric_type: str, documentation: str) -> Metric | None:
        # Configuration validation rejects conflicting types for one name.
        family = self._families.get(name)
        if family is None:
            family = Metric(name, documentation, metric_type)
            self._families[name] = family
        elif family.type != metric_type:
            logger.warning("metric_type_conflict", metric=name, exposed=family.type, configured=metric_type)
            return None
        return family

    def collect(self) -> Iterator[Metric]:
        return iter(list(self._families.values()))


def _vector_labels(metric: MetricDef, sample: VectorSample) -> dict[str, str]:
    return dict(zip(metric.label_names, sample.labels))


def _add_histogram(family: Metric, name: str, identity: dict[str, str], value: HistogramValue) -> None:
    for bound, count in value.buckets:
        family.add_sample(f"{name}_bucket", {**identity, "le": floatToGoString(bound)}, count)
    family.add_sample(f"{name}_count", identity, value.count)
    family.add_sample(f"{name}_sum", identity, value.sum)


# ============================================================================
# TEXT FORMAT
# ============================================================================


def _escape_help(text: str) -> str:
    return text.replace("\\", r"\\").replace("\n", r"\n")


def _escape_label_value(value: str) -> str:
    return value.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


def _sample_line(sample: Sample) -> str:
    if sample.labels:
        labels = ",".join(
            f'{name}="{_escape_label_value(value)}"' for name, value in sorted(sample.labels.items())
        )
        return f"{sample.name}{{{labels}}} {floatToGoString(sample.value)}\n"
    return f"{sample.name} {floatToGoString(sample.value)}\n"


def encode_values(families: Iterable[Metric]) -> bytes:
    """Text format (0.0.4) of value families, family and sample names as given."""
    output = []
    for family in families:
        output.append(f"# HELP {family.name} {_escape_help(family.documentation)}\n")
        output.append(f"# TYPE {family.name} {family.type}\n")
        output.extend(_sample_line(sample) for sample in family.samples)
    return "".join(output).encode("utf-8")


def render(values: ValueCollector, collectors: Iterable = (), forwarded: Iterable[bytes] = ()) -> bytes:
    """Serialise one scrape: value families, then collectors, then forwarded bodies verbatim."""
    registry = CollectorRegistry(auto_describe=False)
    for collector in collectors:
        registry.register(collector)
    return encode_values(values.collect()) + generate_latest(registry) + b"".join(forwarded)
