"""Advisory cache of the last resource listings fetched from the backend.

Bucket listings are keyed by owner, file listings by bucket. Entries are
never updated in place. A successful provisioning or teardown
invalidates them, so the next read re-queries the backend and the cache
never has to reconcile its own writes with concurrent unrelated reads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from .models import BackendView, ResourceIdentity
from .workflow.clock import Clock, SystemClock

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CacheEntry:
    views: tuple[BackendView, ...]
    fetched_at: float
    generation: int


class ListingCache:
    """Cache-or-fetch for bucket listings and per-bucket file listings.

    ``max_age`` (seconds) optionally expires entries; ``None`` keeps them
    until invalidated and ``0`` refetches on every read. A fetch that started before an invalidation is not
    stored, so a stale response can never repopulate the cache.
    """

    def __init__(self, *, max_age: float | None = None, clock: Clock | None = None) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._generation = 0
        self._max_age = max_age
        self._clock = clock or SystemClock()

    @property
    def generation(self) -> int:
        return self._generation

    def get(self, key: str) -> tuple[BackendView, ...] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.generation != self._generation:
            return None
        if self._max_age is not None:
            if self._clock.monotonic() - entry.fetched_at >= self._max_age:
                return None
        return entry.views

    def invalidate(self) -> None:
        """Drop every entry."""
        self._generation += 1
        self._entries.clear()
        logger.debug('Listing cache invalidated (generation=%d)', self._generation)

    async def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], Awaitable[list[BackendView]]],
    ) -> list[BackendView]:
        cached = self.get(key)
        if cached is not None:
            return list(cached)
        generation = self._generation
        views = await fetch()
        if generation == self._generation:
            self._entries[key] = CacheEntry(
                views=tuple(views),
                fetched_at=self._clock.monotonic(),
                generation=generation,
            )
        return list(views)

    @staticmethod
    def buckets_key(owner: str) -> str:
        return f'buckets:{owner}'

    @staticmethod
    def files_key(bucket: ResourceIdentity) -> str:
        return f'files:{bucket.value}'
