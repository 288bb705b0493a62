"""
Unit tests for the single-flight HydrationCache.

Tests cover:
- One lookup per owner under concurrency
- Cache hits and seeding
- Failure and not-found handling
- attach() behavior
"""

import asyncio

import pytest

from leadsync.models import OwnerDisplayInfo
from leadsync.sync.hydration import HydrationCache
from leadsync.sync.tasks import BackgroundTasks
from tests.helpers import make_lead


class FakeDirectory:
    """Owner lookup with a call counter and optional failures."""

    def __init__(self, delay=0.01):
        self.delay = delay
        self.calls = []
        self.fail_next = 0
        self.names = {"u1": "Ana", "u2": "Bruno"}

    async def lookup(self, owner_id):
        self.calls.append(owner_id)
        await asyncio.sleep(self.delay)
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectionError("profile service unavailable")
        name = self.names.get(owner_id)
        return OwnerDisplayInfo(owner_id, name) if name else None


class TestHydrationCache:
    """Tests for ensure()."""

    @pytest.fixture
    def directory(self):
        return FakeDirectory()

    @pytest.fixture
    def resolved(self):
        return []

    @pytest.fixture
    def cache(self, directory, resolved):
        return HydrationCache(
            directory.lookup,
            on_resolved=lambda record_id, info: resolved.append((record_id, info.owner_id)),
        )

    @pytest.mark.asyncio
    async def test_concurrent_ensure_single_lookup(self, cache, directory, resolved):
        """M concurrent calls for an unseen owner produce one lookup."""
        results = await asyncio.gather(
            *(cache.ensure("u2", record_id=f"l{i}") for i in range(10))
        )

        assert directory.calls == ["u2"]
        assert cache.lookups == 1
        assert cache.coalesced == 9
        assert sum(1 for r in results if r is not None) == 1
        assert sorted(resolved) == sorted((f"l{i}", "u2") for i in range(10))
        assert not cache.is_pending("u2")

    @pytest.mark.asyncio
    async def test_cached_owner_hits(self, cache, directory):
        await cache.ensure("u1")
        info = await cache.ensure("u1")

        assert info.display_name == "Ana"
        assert directory.calls == ["u1"]
        assert cache.hits == 1
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_failed_lookup_is_retried(self, cache, directory):
        directory.fail_next = 1

        assert await cache.ensure("u1") is None
        assert cache.get("u1") is None
        assert not cache.is_pending("u1")

        info = await cache.ensure("u1")

        assert info.display_name == "Ana"
        assert directory.calls == ["u1", "u1"]

    @pytest.mark.asyncio
    async def test_unknown_owner_not_cached(self, cache, directory):
        assert await cache.ensure("ghost") is None
        assert await cache.ensure("ghost") is None

        assert directory.calls == ["ghost", "ghost"]

    @pytest.mark.asyncio
    async def test_empty_owner_is_noop(self, cache, directory):
        assert await cache.ensure(None) is None
        assert directory.calls == []


class TestHydrationAttach:
    """Tests for attach()."""

    @pytest.mark.asyncio
    async def test_embedded_owner_seeds_cache(self):
        directory = FakeDirectory()
        cache = HydrationCache(directory.lookup)
        lead = make_lead("l1", owner=OwnerDisplayInfo("u1", "Ana"))

        assert cache.attach(lead, BackgroundTasks()) is lead
        assert cache.get("u1").display_name == "Ana"
        assert directory.calls == []

    @pytest.mark.asyncio
    async def test_cache_hit_enriches(self):
        cache = HydrationCache(FakeDirectory().lookup)
        cache.put(OwnerDisplayInfo("u1", "Ana"))

        lead = cache.attach(make_lead("l1"), BackgroundTasks())

        assert lead.owner.display_name == "Ana"

    @pytest.mark.asyncio
    async def test_miss_schedules_lookup(self):
        directory = FakeDirectory()
        resolved = []
        cache = HydrationCache(
            directory.lookup,
            on_resolved=lambda record_id, info: resolved.append(record_id),
        )
        tasks = BackgroundTasks()

        lead = cache.attach(make_lead("l1", owner_id="u2"), tasks)
        await tasks.join()

        assert lead.owner is None
        assert resolved == ["l1"]
        assert cache.get("u2").display_name == "Bruno"

    @pytest.mark.asyncio
    async def test_unassigned_lead_untouched(self):
        directory = FakeDirectory()
        cache = HydrationCache(directory.lookup)
        tasks = BackgroundTasks()

        cache.attach(make_lead("l1", owner_id=None), tasks)

        assert len(tasks) == 0
