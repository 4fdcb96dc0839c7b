"""Metrics forwarder.

Pass-through resources already speak the Prometheus text format. Their body
is parsed, every sample gets the owning service's `job` and `instance`
labels, and the result is re-encoded for splicing into the scrape output.

When an upstream sample already carries one of the identity labels, the
exporter's value wins and the upstream value moves to `exported_<label>`.
"""

import copy
from dataclasses import dataclass
from typing import Iterable

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.metrics_core import Metric

from rext_config.schemas import Service
from rext_obs.logging import get_logger

from .decoders import decode_prometheus_text

logger = get_logger(__name__)

EXPORTED_PREFIX = "exported_"


@dataclass(frozen=True)
class ForwardedBody:
    """Relabelled exposition text ready to append to the response."""

    body: bytes
    samples: int


@dataclass(frozen=True)
class UpstreamExposition:
    """Parsed forwarder body, shared by every service forwarding the same URL."""

    families: list[Metric]
    response_duration: float


class _StaticCollector:
    """Serves an already built list of families to a registry."""

    def __init__(self, families: list[Metric]):
        self.families = families

    def collect(self) -> Iterable[Metric]:
        return iter(self.families)


def identity_labels(service: Service) -> dict[str, str]:
    return {"job": service.name, "instance": service.instance}


def inject_labels(
    families: list[Metric],
    labels: dict[str, str],
    metric_names: Iterable[str] | None = None,
) -> list[Metric]:
    """Add `labels` to every sample of the selected families.

    The input families are left untouched, so one parsed body can be
    relabelled for several services.

    Args:
        families: Parsed metric families
        labels: Label pairs to add
        metric_names: Only touch these families; all of them when empty

    Returns:
        Relabelled copies, in input order
    """
    selected = set(metric_names or ())
    relabelled = []
    for family in families:
        clone = copy.copy(family)
        if selected and family.name not in selected:
            clone.samples = list(family.samples)
        else:
            clone.samples = [
                sample._replace(labels=_merge_labels(sample.labels, labels))
                for sample in family.samples
            ]
        relabelled.append(clone)
    return relabelled


def _merge_labels(existing: dict[str, str], added: dict[str, str]) -> dict[str, str]:
    merged = dict(existing)
    for name, value in added.items():
        if name in merged and merged[name] != value:
            merged[EXPORTED_PREFIX + name] = merged[name]
        merged[name] = value
    return merged


def encode_families(families: list[Metric]) -> bytes:
    """Serialise families in the text exposition format."""
    registry = CollectorRegistry(auto_describe=False)
    registry.register(_StaticCollector(families))
    return generate_latest(registry)


def append_labels(
    body: bytes,
    labels: dict[str, str],
    metric_names: Iterable[str] | None = None,
) -> bytes:
    """Parse `body`, add `labels` to the selected families and re-encode it.

    Raises:
        DecodeError: Body is not valid exposition text
    """
    return encode_families(inject_labels(decode_prometheus_text(body), labels, metric_names))


def find_metric_names(body: bytes) -> list[str]:
    """Names of all families in an exposition body."""
    return [family.name for family in decode_prometheus_text(body)]


def find_metric_names_without_labels(body: bytes, labels: Iterable[str]) -> list[str]:
    """Names of families where some sample misses at least one of `labels`."""
    wanted = list(labels)
    missing = []
    for family in decode_prometheus_text(body):
        if not family.samples or any(
            name not in sample.labels for sample in family.samples for name in wanted
        ):
            missing.append(family.name)
    return missing


def forward_body(service: Service, body: bytes) -> ForwardedBody:
    """Relabel an upstream exposition body with the service identity.

    Raises:
        DecodeError: Body is not valid exposition text
    """
    return forward_families(service, decode_prometheus_text(body))


def forward_families(service: Service, parsed: list[Metric]) -> ForwardedBody:
    """Encode copies of parsed upstream families labelled with the service identity."""
    families = inject_labels(parsed, identity_labels(service))
    samples = sum(len(family.samples) for family in families)
    logger.debug("forwarder_relabelled", service=service.name, families=len(families), samples=samples)
    return ForwardedBody(body=encode_families(families), samples=samples)
