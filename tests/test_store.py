"""Tests for the definition store."""

import asyncio
import json

import pytest

from togglebox.cache import MemoryBackend, NamespacedCache
from togglebox.errors import NetworkError, ValidationError
from togglebox.store import DefinitionStore


def make_store(transport, cache=None, ttl_seconds=300.0):
    return DefinitionStore(
        transport,
        platform="web",
        environment="production",
        version="stable",
        cache=cache,
        ttl_seconds=ttl_seconds,
    )


class TestRefresh:
    """Tests for DefinitionStore.refresh."""

    async def test_initial_snapshot_is_empty(self, transport):
        store = make_store(transport)
        assert store.loaded is False
        assert store.snapshot.flags == {}
        assert store.is_stale()

    async def test_refresh_adopts_payload(self, transport):
        store = make_store(transport)
        definitions = await store.refresh()

        assert store.loaded
        assert store.snapshot is definitions
        assert definitions.version == "7"
        assert not store.is_stale()

    async def test_concurrent_refreshes_share_one_fetch(self, transport):
        """Fifty concurrent refreshes issue one fetch and observe one snapshot."""
        transport.delay = 0.05
        store = make_store(transport)

        results = await asyncio.gather(*(store.refresh() for _ in range(50)))

        assert transport.fetch_calls == 1
        assert store.fetch_count == 1
        assert all(r is results[0] for r in results)
        assert store.snapshot is results[0]

    async def test_malformed_payload_keeps_previous_snapshot(self, transport):
        store = make_store(transport)
        before = await store.refresh()

        transport.payload["flags"]["new-checkout"]["rollout"] = 250
        with pytest.raises(ValidationError):
            await store.refresh()

        assert store.snapshot is before

    async def test_network_error_keeps_previous_snapshot(self, transport):
        store = make_store(transport)
        before = await store.refresh()

        transport.fetch_error = NetworkError("unreachable")
        with pytest.raises(NetworkError):
            await store.refresh()

        assert store.snapshot is before

    async def test_unclassified_error_is_classified(self, transport):
        store = make_store(transport)
        transport.fetch_error = ConnectionResetError("reset by peer")

        with pytest.raises(NetworkError):
            await store.refresh()
        assert store.loaded is False

    async def test_not_modified_renews_freshness(self, transport):
        store = make_store(transport, ttl_seconds=0.05)
        first = await store.refresh()
        await asyncio.sleep(0.06)
        assert store.is_stale()

        transport.not_modified = True
        second = await store.refresh()

        assert second is not first
        assert second.flags is first.flags
        assert second.fetched_at > first.fetched_at
        assert not store.is_stale()
        assert store.get_snapshot() is second

    async def test_not_modified_does_not_notify_listeners(self, transport):
        store = make_store(transport)
        seen = []
        store.on_update(lambda old, new: seen.append(new.version))
        await store.refresh()

        transport.not_modified = True
        await store.refresh()
        await store.refresh()

        assert seen == ["7"]

    async def test_not_modified_renews_cached_copy(self, transport):
        cache = NamespacedCache(MemoryBackend(), prefix="togglebox")
        store = make_store(transport, cache=cache)
        first = await store.refresh()

        transport.not_modified = True
        second = await store.refresh()

        envelope = json.loads(cache.get(store.cache_key).decode("utf-8"))
        assert envelope["fetchedAt"] == second.fetched_at
        assert envelope["fetchedAt"] >= first.fetched_at

    async def test_listeners_see_old_and_new(self, transport):
        store = make_store(transport)
        seen = []
        store.on_update(lambda old, new: seen.append((old.version, new.version)))

        await store.refresh()

        assert seen == [("", "7")]

    async def test_failing_listener_does_not_break_refresh(self, transport):
        store = make_store(transport)

        def boom(old, new):
            raise RuntimeError("listener bug")

        store.on_update(boom)
        await store.refresh()
        assert store.loaded


class TestCache:
    """Tests for the cache interaction."""

    async def test_refresh_writes_cache(self, transport):
        backend = MemoryBackend()
        store = make_store(transport, cache=NamespacedCache(backend))
        await store.refresh()

        raw = backend.get("togglebox:definitions:web:production:stable")
        envelope = json.loads(raw)
        assert envelope["payload"]["version"] == "7"

    async def test_load_prefers_cache(self, transport):
        backend = MemoryBackend()
        await make_store(transport, cache=NamespacedCache(backend)).refresh()
        assert transport.fetch_calls == 1

        store = make_store(transport, cache=NamespacedCache(backend))
        definitions = await store.load()

        assert transport.fetch_calls == 1
        assert definitions.flags["new-checkout"].rollout == 100

    async def test_load_fetches_on_cache_miss(self, transport):
        store = make_store(transport, cache=NamespacedCache(MemoryBackend()))
        await store.load()
        assert transport.fetch_calls == 1

    async def test_unusable_cache_entry_is_ignored(self, transport):
        backend = MemoryBackend()
        backend.set("togglebox:definitions:web:production:stable", b"{garbage", 60)
        store = make_store(transport, cache=NamespacedCache(backend))

        await store.load()

        assert transport.fetch_calls == 1
        assert store.snapshot.version == "7"

    async def test_clear_cache_keeps_snapshot(self, transport):
        backend = MemoryBackend()
        store = make_store(transport, cache=NamespacedCache(backend))
        before = await store.refresh()

        assert store.clear_cache() is True
        assert len(backend) == 0
        assert store.snapshot is before
