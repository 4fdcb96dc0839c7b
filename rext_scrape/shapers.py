"""Metric shapers.

Turn a decoded document into the value a MetricDef publishes:

- scalar: one float (counter or gauge without labels)
- vector: one VectorSample per element of a sequence (counter or gauge with labels)
- histogram: count, sum and cumulative buckets over a sequence of numbers
"""

import math
from dataclasses import dataclass
from typing import Any

from rext_config.schemas import MetricDef

from .exceptions import ShapeMismatchError, TypeMismatchError
from .path import as_float, as_sequence, lookup


@dataclass(frozen=True)
class VectorSample:
    """One labelled sample; `labels` follow the MetricDef label order."""

    labels: tuple[str, ...]
    value: float


@dataclass(frozen=True)
class HistogramValue:
    """Histogram aggregate. `buckets` are (upper bound, cumulative count), +Inf last."""

    buckets: tuple[tuple[float, float], ...]
    count: float
    sum: float


ShapedValue = float | list[VectorSample] | HistogramValue


def _solver_path(metric: MetricDef) -> str:
    return metric.node_solver.path if metric.node_solver else "/"


def shape_scalar(metric: MetricDef, doc: Any) -> float:
    path = _solver_path(metric)
    return as_float(lookup(path, doc), path)


def shape_vector(metric: MetricDef, doc: Any) -> list[VectorSample]:
    """Build labelled samples from parallel sequences.

    The metric path resolves to the value sequence; element i's value is the
    metric's item path evaluated inside element i. Each label path resolves,
    against the same document, to a sequence of the same length whose
    element i is the label value.

    Raises:
        ShapeMismatchError: A label sequence length differs from the values
        TypeMismatchError: A value is not numeric or a label is not a string
    """
    path = _solver_path(metric)
    items = as_sequence(lookup(path, doc), path)
    item_path = metric.item_path

    label_columns: list[list[Any]] = []
    for label in metric.labels:
        label_path = label.node_solver.path
        column = as_sequence(lookup(label_path, doc), label_path)
        if len(column) != len(items):
            raise ShapeMismatchError(
                f"label {label.name} has {len(column)} values, metric {metric.name} has {len(items)}"
            )
        label_columns.append(column)

    samples = []
    for i, item in enumerate(items):
        value = as_float(lookup(item_path, item), f"{path}/{i}{item_path}")
        values = []
        for label, column in zip(metric.labels, label_columns):
            if not isinstance(column[i], str):
                raise TypeMismatchError(
                    f"label {label.name} value at index {i} is a {type(column[i]).__name__}, expected a string"
                )
            values.append(column[i])
        samples.append(VectorSample(labels=tuple(values), value=value))
    return samples


def shape_histogram(metric: MetricDef, doc: Any) -> HistogramValue:
    path = _solver_path(metric)
    observations = [
        as_float(v, f"{path}/{i}") for i, v in enumerate(as_sequence(lookup(path, doc), path))
    ]
    buckets = [
        (bound, float(sum(1 for v in observations if v <= bound)))
        for bound in metric.bucket_bounds()
    ]
    buckets.append((math.inf, float(len(observations))))
    return HistogramValue(
        buckets=tuple(buckets),
        count=float(len(observations)),
        sum=math.fsum(observations),
    )


def shape(metric: MetricDef, doc: Any) -> ShapedValue:
    """Dispatch to the shaper matching the metric type and labels."""
    if metric.type == "histogram":
        return shape_histogram(metric, doc)
    if metric.is_vector:
        return shape_vector(metric, doc)
    return shape_scalar(metric, doc)


def sample_count(value: ShapedValue) -> int:
    """Number of exposition samples a shaped value produces."""
    if isinstance(value, HistogramValue):
        # every bucket plus _count and _sum
        return len(value.buckets) + 2
    if isinstance(value, list):
        return len(value)
    return 1
