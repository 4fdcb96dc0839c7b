"""Per-snapshot single-flight cache.

Keyed by resolved resource URL and the way its body is read. The first
caller for a key runs the loader; concurrent callers for the same key wait
on its future and observe the same value or the same exception. Entries
live until the snapshot is dropped.
"""

import asyncio
from typing import Any, Awaitable, Callable, Hashable

from .exceptions import TransportError


class SnapshotCache:
    """Deduplicate upstream fetches within one scrape."""

    def __init__(self):
        self._entries: dict[Hashable, asyncio.Future] = {}
        self.loads = 0

    def __contains__(self, key: Hashable) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_load(self, key: Hashable, loader: Callable[[], Awaitable[Any]]) -> Any:
        """Return the value for `key`, running `loader` only for the first caller.

        Failures are cached like values: every caller of a failed key gets
        the same exception.
        """
        entry = self._entries.get(key)
        if entry is not None:
            return await asyncio.shield(entry)

        # Check and insert happen without an await in between, so they are
        # atomic on the event loop.
        entry = asyncio.get_running_loop().create_future()
        self._entries[key] = entry
        self.loads += 1
        try:
            value = await loader()
        except asyncio.CancelledError:
            entry.set_exception(TransportError(f"load of {key} was cancelled"))
            entry.exception()
            raise
        except Exception as e:
            entry.set_exception(e)
            entry.exception()
            raise
        entry.set_result(value)
        return value
