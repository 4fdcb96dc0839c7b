"""CSRF token manager.

One token slot per (service, token endpoint). The slot is filled lazily on
first use and refilled after an expiry signal. Filling is serialised by a
per-slot lock so a cold start with N concurrent workers issues a single
token request; once a token is cached readers get it without waiting.
"""

import asyncio
from dataclasses import dataclass, field

from rext_config.schemas import AuthSpec, Service
from rext_obs.logging import get_logger

from .decoders import decode_json
from .exceptions import AuthError, RextError
from .fetcher import HttpFetcher
from .path import lookup

logger = get_logger(__name__)


@dataclass
class TokenSlot:
    """Current token for one service; empty until first acquisition."""

    token: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class TokenManager:
    """Obtain, cache and refresh header tokens for services."""

    def __init__(self, fetcher: HttpFetcher):
        self.fetcher = fetcher
        self._slots: dict[tuple[str, str], TokenSlot] = {}

    def _slot(self, service: Service, auth: AuthSpec) -> TokenSlot:
        key = (service.name, auth.token_gen_endpoint)
        slot = self._slots.get(key)
        if slot is None:
            slot = self._slots[key] = TokenSlot()
        return slot

    async def token_for(self, service: Service, auth: AuthSpec) -> str:
        """Return the cached token, obtaining one if the slot is empty.

        Raises:
            AuthError: The token endpoint failed or returned no usable token
        """
        slot = self._slot(service, auth)
        if slot.token:
            return slot.token
        async with slot.lock:
            if not slot.token:
                slot.token = await self._obtain(service, auth)
            return slot.token

    def invalidate(self, service: Service, auth: AuthSpec, stale: str | None = None) -> None:
        """Clear the slot.

        With `stale` given the slot is only cleared while it still holds that
        token, so a token another worker just refreshed survives.
        """
        slot = self._slot(service, auth)
        if stale is None or slot.token == stale:
            slot.token = None

    async def refresh(self, service: Service, auth: AuthSpec, stale: str | None) -> str:
        """Drop `stale` and return a fresh token.

        Concurrent callers holding the same stale token observe one refresh.
        """
        slot = self._slot(service, auth)
        async with slot.lock:
            if slot.token and slot.token != stale:
                return slot.token
            slot.token = None
            logger.info("token_refresh", service=service.name)
            slot.token = await self._obtain(service, auth)
            return slot.token

    async def _obtain(self, service: Service, auth: AuthSpec) -> str:
        url = service.url_for(auth.token_gen_endpoint)
        try:
            result = await self.fetcher.fetch("GET", url)
            value = lookup(auth.token_path_in_response, decode_json(result.body))
        except RextError as e:
            logger.error("token_request_failed", service=service.name, url=url, error=str(e), kind=e.kind)
            raise AuthError(f"can not get a token for {service.name}: {e}") from e
        if not isinstance(value, str):
            raise AuthError(f"token for {service.name} at {auth.token_path_in_response} is not a string")
        if not value:
            raise AuthError(f"token endpoint for {service.name} returned an empty token")
        return value
