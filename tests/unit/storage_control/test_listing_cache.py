"""Listing cache tests: cache-or-fetch, invalidation, and expiry."""

from __future__ import annotations

import asyncio

import pytest

from storage_control.cache import ListingCache
from storage_control.models import BackendView, ResourceIdentity, ResourceKind
from storage_control.workflow.clock import ManualClock

B1 = ResourceIdentity(ResourceKind.BUCKET, 'B1')
OWNER = '0x' + 'a1' * 20


def _views(*ids: str) -> list[BackendView]:
    return [
        BackendView(identity=ResourceIdentity(ResourceKind.BUCKET, i), root='0x00')
        for i in ids
    ]


class _CountingFetch:
    def __init__(self, views):
        self.views = views
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return list(self.views)


class TestCacheOrFetch:
    @pytest.mark.asyncio
    async def test_second_read_served_from_cache(self):
        cache = ListingCache()
        fetch = _CountingFetch(_views('B1', 'B2'))

        first = await cache.get_or_fetch(ListingCache.buckets_key(OWNER), fetch)
        second = await cache.get_or_fetch(ListingCache.buckets_key(OWNER), fetch)

        assert first == second
        assert fetch.calls == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        cache = ListingCache()
        fetch = _CountingFetch(_views('B1'))

        await cache.get_or_fetch(ListingCache.buckets_key(OWNER), fetch)
        await cache.get_or_fetch(ListingCache.files_key(B1), fetch)

        assert fetch.calls == 2
        assert ListingCache.files_key(B1) == 'files:B1'

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self):
        cache = ListingCache()
        fetch = _CountingFetch(_views('B1'))
        await cache.get_or_fetch('buckets', fetch)

        cache.invalidate()
        fetch.views = _views('B1', 'B2')
        refreshed = await cache.get_or_fetch('buckets', fetch)

        assert fetch.calls == 2
        assert len(refreshed) == 2
        assert cache.generation == 1

    @pytest.mark.asyncio
    async def test_fetch_racing_invalidation_is_not_stored(self):
        cache = ListingCache()
        release = asyncio.Event()

        async def slow_fetch():
            await release.wait()
            return _views('stale')

        task = asyncio.create_task(cache.get_or_fetch('buckets', slow_fetch))
        await asyncio.sleep(0)
        cache.invalidate()
        release.set()
        await task

        assert cache.get('buckets') is None

    @pytest.mark.asyncio
    async def test_fetch_error_leaves_cache_empty(self):
        cache = ListingCache()

        async def failing():
            raise ConnectionError('down')

        with pytest.raises(ConnectionError):
            await cache.get_or_fetch('buckets', failing)
        assert cache.get('buckets') is None


class TestMaxAge:
    @pytest.mark.asyncio
    async def test_entries_expire(self):
        clock = ManualClock()
        cache = ListingCache(max_age=30.0, clock=clock)
        fetch = _CountingFetch(_views('B1'))

        await cache.get_or_fetch('buckets', fetch)
        clock.advance(29.0)
        await cache.get_or_fetch('buckets', fetch)
        clock.advance(2.0)
        await cache.get_or_fetch('buckets', fetch)

        assert fetch.calls == 2

    @pytest.mark.asyncio
    async def test_bucket_listings_are_scoped_by_owner(self):
        cache = ListingCache()
        alice = _CountingFetch(_views('A1'))
        bob = _CountingFetch([])

        await cache.get_or_fetch(ListingCache.buckets_key('0xalice'), alice)
        listed = await cache.get_or_fetch(ListingCache.buckets_key('0xbob'), bob)

        assert listed == []
        assert alice.calls == 1
        assert bob.calls == 1

    @pytest.mark.asyncio
    async def test_zero_max_age_always_refetches(self):
        cache = ListingCache(max_age=0.0, clock=ManualClock())
        fetch = _CountingFetch(_views('B1'))

        await cache.get_or_fetch('buckets', fetch)
        await cache.get_or_fetch('buckets', fetch)

        assert fetch.calls == 2
