"""
Request-scoped memoization of expensive collaborator calls.

Each calculation instance owns one or more ``MemoCache`` objects and is
discarded at the end of the request, so entries are never evicted. A slot
first holds the in-flight task and is replaced by the resolved value once it
completes. Concurrent callers asking for the same key while the first fetch
is still running await that same task instead of issuing a duplicate query.

Different datasets get different caches (per scenario, per tag, per state
category) so keys from semantically different call sites cannot collide.
"""

import asyncio
from typing import Any, Awaitable, Callable, Generic, NamedTuple, Optional, TypeVar, Union

import structlog

T = TypeVar("T")


class CacheKey(NamedTuple):
    """
    Composite cache key.

    Attributes:
        org_id: Organisation the data belongs to
        selector: Scenario, state category or another dataset selector
        tag: Normalisation tag, when the dataset is tag-joined
        filter_digest: Fingerprint of the filter state the data was fetched with
    """

    org_id: str
    selector: str = ""
    tag: str = ""
    filter_digest: str = ""


class MemoCache(Generic[T]):
    """
    Get-or-create cache with in-flight de-duplication.

    Example:
        >>> cache: MemoCache[list[WorkItem]] = MemoCache("scenario_items")
        >>> items = await cache.get_or_create(key, lambda: state.get_work_items(...))
    """

    def __init__(self, name: str):
        """
        Initialize an empty cache.

        Args:
            name: Cache name used in log events
        """
        self.name = name
        self._entries: dict[CacheKey, Union[asyncio.Future, Any]] = {}
        self.logger = structlog.get_logger()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def peek(self, key: CacheKey) -> Optional[T]:
        """Resolved value for ``key``, or None when absent or still pending."""
        entry = self._entries.get(key)
        if entry is None or isinstance(entry, asyncio.Future):
            return None
        return entry

    async def get_or_create(self, key: CacheKey, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Return the cached value for ``key``, creating it with ``factory`` once.

        A failed or cancelled creation is removed from the cache and its
        exception is raised to every caller that awaited it; the next call
        retries.

        Args:
            key: Composite key
            factory: Zero-argument coroutine function producing the value

        Returns:
            The resolved value
        """
        entry = self._entries.get(key)
        if isinstance(entry, asyncio.Future):
            if not entry.cancelled():
                return await entry
            del self._entries[key]
        elif key in self._entries:
            return entry

        self.logger.debug("cache_miss", cache=self.name, key=key)
        task = asyncio.ensure_future(factory())
        self._entries[key] = task
        try:
            value = await task
        except BaseException:
            if self._entries.get(key) is task:
                del self._entries[key]
            raise

        self._entries[key] = value
        return value
