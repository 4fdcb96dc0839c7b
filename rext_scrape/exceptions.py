"""Scrape engine exceptions.

One class per failure kind an upstream scrape can run into. Everything
raised below the orchestrator is a RextError; the orchestrator turns each
one into an `_up=0` sample instead of failing the inbound scrape.
"""


class RextError(Exception):
    """Base exception for the exporter."""

    kind = "error"


class ConfigError(RextError):
    """Configuration could not be loaded or failed validation."""

    kind = "config"


class TransportError(RextError):
    """Network or IO failure while talking to an upstream."""

    kind = "transport"


class UpstreamStatusError(RextError):
    """Upstream answered with a non-200 status."""

    kind = "upstream_status"

    def __init__(self, status: int, url: str):
        super().__init__(f"upstream {url} answered with status {status}")
        self.status = status
        self.url = url


class DecodeError(RextError):
    """Body is not parseable in the declared dialect."""

    kind = "decode"

    def __init__(self, message: str, body: bytes = b""):
        super().__init__(message)
        self.body = body


class NotFoundError(RextError):
    """Path lookup hit a missing key or an out of range index."""

    kind = "not_found"


class TypeMismatchError(RextError):
    """A node did not hold the type the caller expected."""

    kind = "type_mismatch"


class ShapeMismatchError(RextError):
    """Label sequences and value sequence differ in length."""

    kind = "shape_mismatch"


class AuthError(RextError):
    """A token could not be obtained for a service."""

    kind = "auth"


class ScrapeTimeoutError(RextError):
    """The scrape deadline elapsed before the task reported back."""

    kind = "timeout"


class PoolClosedError(RextError):
    """Work was submitted to, or still queued in, a stopped pool."""

    kind = "pool_closed"
