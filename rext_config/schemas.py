"""Exporter configuration model (Pydantic).

The in-memory graph the scrape orchestrator consumes:

    RootConfig -> Service -> Resource -> MetricDef -> LabelDef
                                                   -> NodeSolver

Pydantic enforces the structural shape when a file is loaded. The semantic
rules live in `validate_config()` on every node: it logs each problem with
the node kind and offending field, and returns True when anything is wrong.
"""

import re
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from rext_obs.logging import get_logger
from rext_obs.metrics import SELF_METRIC_NAMES

logger = get_logger(__name__)

PROTOCOLS = ("http", "https", "file")
HTTP_METHODS = ("GET", "POST", "HEAD")
RESOURCE_KINDS = ("api", "forwarder")
DECODER_NAMES = ("json", "prometheus")
METRIC_TYPES = ("counter", "gauge", "histogram")
AUTH_CSRF = "CSRF"
SOLVER_JSON_PATH = "jsonPath"
OPT_ITEM_PATH = "item_path"

METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
# added to every exported sample by the exporter itself
RESERVED_LABELS = ("job", "instance", "le")


def _config_error(kind: str, field: str, message: str, **context: Any) -> None:
    logger.error("config_invalid", kind=kind, field=field, reason=message, **context)


def _join_url_path(base: str, uri: str) -> str:
    base = base.rstrip("/")
    uri = uri.lstrip("/")
    if not uri:
        return base or "/"
    return f"{base}/{uri}"


class _ConfigNode(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


# ============================================================================
# PATHS AND LABELS
# ============================================================================


class NodeSolver(_ConfigNode):
    """Where a value lives inside a decoded document."""

    dialect: str = Field(SOLVER_JSON_PATH, description="Path dialect, jsonPath only")
    path: str = Field("", description="Slash delimited path, e.g. /blockchain/head/seq")
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("path")
    @classmethod
    def _leading_slash(cls, value: str) -> str:
        if value and not value.startswith("/"):
            return "/" + value
        return value

    def validate_config(self) -> bool:
        has_errors = False
        if not self.path:
            has_errors = True
            _config_error("node_solver", "path", "node path is required")
        if self.dialect != SOLVER_JSON_PATH:
            has_errors = True
            _config_error("node_solver", "dialect", "unsupported dialect", dialect=self.dialect)
        return has_errors


class LabelDef(_ConfigNode):
    """A label whose values are read from a parallel sequence."""

    name: str = ""
    node_solver: NodeSolver | None = None

    def validate_config(self) -> bool:
        has_errors = False
        if not self.name:
            has_errors = True
            _config_error("label", "name", "name is required")
        elif not LABEL_NAME_RE.match(self.name) or self.name.startswith("__"):
            has_errors = True
            _config_error("label", "name", "not a valid prometheus label name", label=self.name)
        elif self.name in RESERVED_LABELS:
            has_errors = True
            _config_error("label", "name", "label name is reserved", label=self.name)
        if self.node_solver is None:
            has_errors = True
            _config_error("label", "node_solver", "node solver is required", label=self.name)
        elif self.node_solver.validate_config():
            has_errors = True
        return has_errors


# ============================================================================
# METRICS
# ============================================================================


class ExponentialBuckets(_ConfigNode):
    """Buckets start, start*factor, start*factor^2, ... (count of them)."""

    start: float
    factor: float
    count: int

    def expand(self) -> list[float]:
        return [self.start * self.factor**i for i in range(self.count)]


class MetricDef(_ConfigNode):
    """Declaration of one published metric."""

    name: str = ""
    type: str = ""
    description: str = ""
    node_solver: NodeSolver | None = None
    labels: list[LabelDef] = Field(default_factory=list)
    buckets: list[float] | None = None
    exponential_buckets: ExponentialBuckets | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def _lower_type(cls, value: str) -> str:
        return value.lower()

    @property
    def is_vector(self) -> bool:
        return bool(self.labels)

    @property
    def item_path(self) -> str:
        return str(self.options.get(OPT_ITEM_PATH, "/"))

    @property
    def label_names(self) -> list[str]:
        return [label.name for label in self.labels]

    def exposed_names(self) -> list[str]:
        """Series names this metric claims in the exposition, `_up` included.

        A counter also claims `<name>_total`, the name OpenMetrics readers
        give its samples.
        """
        names = [self.name, f"{self.name}_up"]
        if self.type == "counter" and not self.name.endswith("_total"):
            names.append(f"{self.name}_total")
        elif self.type == "histogram":
            names.extend(f"{self.name}{suffix}" for suffix in ("_bucket", "_count", "_sum"))
        return names

    def bucket_bounds(self) -> list[float]:
        """Upper bounds for a histogram, sorted ascending."""
        if self.buckets is not None:
            return sorted(self.buckets)
        if self.exponential_buckets is not None:
            return self.exponential_buckets.expand()
        return []

    def validate_config(self) -> bool:
        has_errors = False
        if not self.name:
            has_errors = True
            _config_error("metric", "name", "name is required")
        elif not METRIC_NAME_RE.match(self.name):
            has_errors = True
            _config_error("metric", "name", "not a valid prometheus metric name", metric=self.name)
        if self.type == "summary":
            has_errors = True
            _config_error("metric", "type", "summary metrics are not supported yet", metric=self.name)
        elif self.type not in METRIC_TYPES:
            has_errors = True
            _config_error(
                "metric", "type", f"type should be one of {', '.join(METRIC_TYPES)}",
                metric=self.name, type=self.type,
            )
        if self.type == "histogram":
            if self._histogram_has_errors():
                has_errors = True
        elif self.buckets is not None or self.exponential_buckets is not None:
            has_errors = True
            _config_error("metric", "buckets", "only histograms take buckets", metric=self.name)
        if self.is_vector and OPT_ITEM_PATH not in self.options:
            has_errors = True
            _config_error("metric", "options.item_path", "metric vectors need an item path", metric=self.name)
        if self.node_solver is None:
            has_errors = True
            _config_error("metric", "node_solver", "node solver is required", metric=self.name)
        elif self.node_solver.validate_config():
            has_errors = True
        for label in self.labels:
            if label.validate_config():
                has_errors = True
        return has_errors

    def _histogram_has_errors(self) -> bool:
        has_errors = False
        if (self.buckets is None) == (self.exponential_buckets is None):
            has_errors = True
            _config_error(
                "metric", "buckets",
                "histogram needs exactly one of buckets or exponential_buckets",
                metric=self.name,
            )
        elif self.buckets is not None and not self.buckets:
            has_errors = True
            _config_error("metric", "buckets", "histogram should have buckets defined", metric=self.name)
        elif self.exponential_buckets is not None:
            exp = self.exponential_buckets
            if exp.start <= 0 or exp.factor <= 1 or exp.count < 1:
                has_errors = True
                _config_error(
                    "metric", "exponential_buckets",
                    "need start > 0, factor > 1 and count >= 1",
                    metric=self.name,
                )
        if self.labels:
            has_errors = True
            _config_error("metric", "labels", "histogram vectors are not supported", metric=self.name)
        return has_errors


# ============================================================================
# AUTH, RESOURCES AND SERVICES
# ============================================================================


class AuthSpec(_ConfigNode):
    """Header token auth: GET token_gen_endpoint, read token, send it in a header."""

    kind: str = AUTH_CSRF
    token_header_key: str = ""
    token_gen_endpoint: str = ""
    token_path_in_response: str = ""

    def validate_config(self) -> bool:
        has_errors = False
        if not self.kind:
            has_errors = True
            _config_error("auth", "kind", "type is required in auth config")
        elif self.kind != AUTH_CSRF:
            has_errors = True
            _config_error("auth", "kind", "unsupported auth kind", auth_kind=self.kind)
        else:
            for field in ("token_header_key", "token_gen_endpoint", "token_path_in_response"):
                if not getattr(self, field):
                    has_errors = True
                    _config_error("auth", field, "required for CSRF auth")
        return has_errors


class Resource(_ConfigNode):
    """A path on a service fetched as one unit."""

    name: str = ""
    uri: str = ""
    http_method: str = "GET"
    kind: str = "api"
    decoder: str = "json"
    auth: AuthSpec | None = None
    metrics: list[MetricDef] = Field(default_factory=list)

    @field_validator("http_method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.upper()

    @property
    def is_forwarder(self) -> bool:
        return self.kind == "forwarder"

    def effective_auth(self, service_auth: AuthSpec | None) -> AuthSpec | None:
        """Resource level auth overrides the service default."""
        return self.auth if self.auth is not None else service_auth

    def validate_config(self) -> bool:
        has_errors = False
        if self.kind not in RESOURCE_KINDS:
            has_errors = True
            _config_error("resource", "kind", "kind should be api or forwarder", resource=self.name, value=self.kind)
        if not self.uri:
            has_errors = True
            _config_error("resource", "uri", "resource path is required", resource=self.name)
        if self.http_method not in HTTP_METHODS:
            has_errors = True
            _config_error("resource", "http_method", "unsupported method", resource=self.name, value=self.http_method)
        if self.kind == "api" and self.decoder not in DECODER_NAMES:
            has_errors = True
            _config_error("resource", "decoder", "unknown decoder", resource=self.name, value=self.decoder)
        if self.is_forwarder and self.metrics:
            has_errors = True
            _config_error("resource", "metrics", "forwarder resources take no metric definitions", resource=self.name)
        if self.auth is not None and self.auth.validate_config():
            has_errors = True
        for metric in self.metrics:
            if metric.validate_config():
                has_errors = True
        return has_errors


class Service(_ConfigNode):
    """An upstream endpoint. `name` becomes the job label, host:port the instance."""

    name: str = ""
    protocol: str = "http"
    host: str = ""
    port: int = 0
    base_path: str = ""
    auth: AuthSpec | None = None
    resources: list[Resource] = Field(default_factory=list)

    @property
    def instance(self) -> str:
        return f"{self.host}:{self.port}"

    @property
    def base_url(self) -> str:
        if self.protocol == "file":
            return "file://" + _join_url_path("/", self.base_path)
        return _join_url_path(f"{self.protocol}://{self.host}:{self.port}", self.base_path)

    def url_for(self, uri: str) -> str:
        """Absolute URL of a path below the service base."""
        if self.protocol == "file":
            return "file://" + _join_url_path(_join_url_path("/", self.base_path), uri)
        return _join_url_path(self.base_url, uri)

    def resource_url(self, resource: Resource) -> str:
        return self.url_for(resource.uri)

    def validate_config(self) -> bool:
        has_errors = False
        if not self.name:
            has_errors = True
            _config_error("service", "name", "job name is required in service config")
        if self.protocol not in PROTOCOLS:
            has_errors = True
            _config_error("service", "protocol", "unsupported protocol", service=self.name, value=self.protocol)
        elif self.protocol != "file":
            if not self.host:
                has_errors = True
                _config_error("service", "host", "host is required", service=self.name)
            if not 1 <= self.port <= 65535:
                has_errors = True
                _config_error("service", "port", "port should be in 1-65535", service=self.name, value=self.port)
            for resource in self.resources:
                if not _is_valid_http_url(self.resource_url(resource)):
                    has_errors = True
                    _config_error(
                        "service", "resources", "resource does not resolve to a valid url",
                        service=self.name, url=self.resource_url(resource),
                    )
        if self.auth is not None and self.auth.validate_config():
            has_errors = True
        for resource in self.resources:
            if resource.validate_config():
                has_errors = True
        return has_errors


def _is_valid_http_url(url: str) -> bool:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.host)


class RootConfig(_ConfigNode):
    """Top level node: the static list of services."""

    services: list[Service] = Field(default_factory=list)

    def validate_config(self) -> bool:
        has_errors = False
        seen: set[str] = set()
        for service in self.services:
            if service.name and service.name in seen:
                has_errors = True
                _config_error("service", "name", "service names must be unique", service=service.name)
            seen.add(service.name)
            if service.validate_config():
                has_errors = True
        if self._exposed_names_have_errors():
            has_errors = True
        return has_errors

    def _exposed_names_have_errors(self) -> bool:
        """Metric names must not clash once rendered into one exposition.

        The same name may appear on several services as long as the type
        agrees; within one service it may appear only once.
        """
        has_errors = False
        types: dict[str, str] = {}
        owners: dict[str, str] = {}
        for service in self.services:
            in_service: set[str] = set()
            for resource in service.resources:
                for metric in resource.metrics:
                    if not metric.name:
                        continue
                    if metric.name in in_service:
                        has_errors = True
                        _config_error(
                            "metric", "name", "metric defined twice for one service",
                            service=service.name, metric=metric.name,
                        )
                    in_service.add(metric.name)
                    known_type = types.setdefault(metric.name, metric.type)
                    if known_type != metric.type:
                        has_errors = True
                        _config_error(
                            "metric", "type", "metric name used with different types",
                            service=service.name, metric=metric.name, type=metric.type, other_type=known_type,
                        )
                    for exposed in metric.exposed_names():
                        if exposed in SELF_METRIC_NAMES:
                            has_errors = True
                            _config_error(
                                "metric", "name", "name is taken by an exporter self metric",
                                service=service.name, metric=metric.name, exposed=exposed,
                            )
                        owner = owners.setdefault(exposed, metric.name)
                        if owner != metric.name:
                            has_errors = True
                            _config_error(
                                "metric", "name", "exposed name clashes with another metric",
                                service=service.name, metric=metric.name, exposed=exposed, other=owner,
                            )
        return has_errors
