"""Body decoders.

Two dialects:
- json: standard JSON, every number coerced to float
- prometheus: text exposition format, parsed with prometheus_client
"""

import json
from typing import Any, Callable

from prometheus_client.metrics_core import Metric
from prometheus_client.parser import text_string_to_metric_families

from .exceptions import DecodeError

JSON = "json"
PROMETHEUS = "prometheus"


def decode_json(body: bytes) -> Any:
    """Decode a JSON body into maps, lists, strings, booleans and floats."""
    try:
        return json.loads(body, parse_int=float)
    except ValueError as e:
        raise DecodeError(f"can not decode body as json: {e}", body=body) from e


def decode_prometheus_text(body: bytes) -> list[Metric]:
    """Parse a text exposition body into metric families.

    Raises:
        DecodeError: Body is not valid UTF-8 or not valid exposition text
    """
    try:
        return list(text_string_to_metric_families(body.decode("utf-8")))
    except ValueError as e:
        raise DecodeError(f"can not parse body as prometheus text: {e}", body=body) from e


def families_to_tree(families: list[Metric]) -> dict[str, Any]:
    """Present parsed families as a document the path evaluator can walk.

    Shape: {family: {"name", "type", "help", "samples": [{"name", "labels", "value"}]}}
    """
    tree: dict[str, Any] = {}
    for family in families:
        tree[family.name] = {
            "name": family.name,
            "type": family.type,
            "help": family.documentation,
            "samples": [
                {"name": s.name, "labels": dict(s.labels), "value": float(s.value)}
                for s in family.samples
            ],
        }
    return tree


def _decode_prometheus_tree(body: bytes) -> dict[str, Any]:
    return families_to_tree(decode_prometheus_text(body))


DECODERS: dict[str, Callable[[bytes], Any]] = {
    JSON: decode_json,
    PROMETHEUS: _decode_prometheus_tree,
}


def decode(dialect: str, body: bytes) -> Any:
    """Decode `body` with the named dialect."""
    decoder = DECODERS.get(dialect)
    if decoder is None:
        raise DecodeError(f"unknown decoder {dialect!r}", body=body)
    return decoder(body)
