"""Tests for photoshow.core.refresh — background cache refresh.

Tests cover:
- Rebuilding the cache from the object store listing.
- Keeping local records and dropping cloud records gone from the store.
- Collapsing concurrent triggers into one in-flight refresh.
- Read-through returning current data while refreshing in the background.
- Error reporting through the refresher status.
- Manual refreshes joining the in-flight refresh.
- Records warm-started from older camelCase snapshots.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from photoshow.core.cache_manager import CacheManager
from photoshow.core.errors import ObjectStoreError
from photoshow.core.refresh import CacheRefresher
from photoshow.core.stores.file_store import FileCacheStore


class SlowObjectStore:
    """Object store whose listing blocks until released."""

    def __init__(self, objects: list[dict]) -> None:
        self.objects = objects
        self.calls = 0
        self.release = asyncio.Event()

    async def list_objects(self) -> list[dict]:
        self.calls += 1
        await self.release.wait()
        return self.objects


class BrokenObjectStore:
    async def list_objects(self) -> list[dict]:
        raise ObjectStoreError("bucket unreachable")


@pytest.fixture
def manager(file_store) -> CacheManager:
    return CacheManager(file_store)


async def _put(object_store, key: str, prompt: str) -> None:
    await object_store.put_object(key, b"png-bytes", {"prompt": prompt, "tags": ["t"]})


class TestRefresh:
    """Test refresh() against a local object store."""

    @pytest.mark.asyncio
    async def test_refresh_loads_object_store(self, manager, object_store):
        await _put(object_store, "a.png", "first")
        await _put(object_store, "b.png", "second")
        refresher = CacheRefresher(manager, object_store)

        merged = await refresher.refresh()

        assert sorted(image["id"] for image in merged) == ["a.png", "b.png"]
        assert all(image["is_cloud_image"] for image in merged)
        assert await manager.is_initialized() is True
        assert refresher.refresh_count == 1
        assert refresher.last_refresh_at is not None

    @pytest.mark.asyncio
    async def test_local_records_survive_deleted_cloud_records_go(
        self, manager, object_store
    ):
        await _put(object_store, "a.png", "cloud")
        await _put(object_store, "b.png", "cloud")
        refresher = CacheRefresher(manager, object_store)
        await refresher.refresh()
        await manager.add_or_update(
            {
                "id": "local-1",
                "prompt": "local",
                "created_at": "2024-01-01",
                "is_cloud_image": False,
            }
        )

        await object_store.delete_object("b.png")
        merged = await refresher.refresh()

        assert sorted(image["id"] for image in merged) == ["a.png", "local-1"]

    @pytest.mark.asyncio
    async def test_refresh_error_propagates(self, manager):
        refresher = CacheRefresher(manager, BrokenObjectStore())
        with pytest.raises(ObjectStoreError):
            await refresher.refresh()


class TestBackgroundRefresh:
    """Test trigger(), read_through() and status."""

    @pytest.mark.asyncio
    async def test_concurrent_triggers_collapse(self, manager):
        store = SlowObjectStore([{"key": "a.png", "size": 1}])
        refresher = CacheRefresher(manager, store)

        assert refresher.trigger() is True
        assert refresher.trigger() is False
        await asyncio.sleep(0)
        assert refresher.status["isRefreshing"] is True

        store.release.set()
        await refresher.wait()

        assert store.calls == 1
        assert refresher.is_refreshing is False
        assert [image["id"] for image in await manager.get_all()] == ["a.png"]

    @pytest.mark.asyncio
    async def test_read_through_returns_immediately_when_cold(self, manager):
        store = SlowObjectStore([{"key": "a.png"}])
        refresher = CacheRefresher(manager, store)

        status = await refresher.read_through()

        assert status.images == []
        assert status.is_initialized is False
        assert refresher.is_refreshing is True

        store.release.set()
        await refresher.wait()
        manager.invalidate()
        status = await refresher.read_through()
        assert [image["id"] for image in status.images] == ["a.png"]
        assert refresher.is_refreshing is False

    @pytest.mark.asyncio
    async def test_read_through_fresh_cache_does_not_refresh(self, manager):
        store = SlowObjectStore([])
        refresher = CacheRefresher(manager, store, expire_minutes=30)
        await manager.init([{"id": "x"}])

        await refresher.read_through()

        assert refresher.is_refreshing is False
        assert store.calls == 0

    @pytest.mark.asyncio
    async def test_background_failure_recorded(self, manager):
        refresher = CacheRefresher(manager, BrokenObjectStore())
        refresher.trigger()
        await refresher.wait()

        assert refresher.status["lastError"] == "bucket unreachable"
        assert refresher.refresh_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_refresh(self, manager):
        store = SlowObjectStore([])
        refresher = CacheRefresher(manager, store)
        refresher.trigger()
        await asyncio.sleep(0)

        await refresher.shutdown()

        assert refresher.is_refreshing is False
        assert refresher.refresh_count == 0

    @pytest.mark.asyncio
    async def test_refresh_now_joins_in_flight_refresh(self, manager):
        store = SlowObjectStore([{"key": "a.png"}])
        refresher = CacheRefresher(manager, store)

        refresher.trigger()
        manual = asyncio.create_task(refresher.refresh_now())
        await asyncio.sleep(0)
        store.release.set()
        merged = await manual

        assert store.calls == 1
        assert refresher.refresh_count == 1
        assert [image["id"] for image in merged] == ["a.png"]

    @pytest.mark.asyncio
    async def test_refresh_now_starts_refresh_when_idle(self, manager, object_store):
        await _put(object_store, "a.png", "cloud")
        refresher = CacheRefresher(manager, object_store)

        merged = await refresher.refresh_now()

        assert [image["id"] for image in merged] == ["a.png"]
        assert refresher.is_refreshing is False

    @pytest.mark.asyncio
    async def test_refresh_now_raises_and_records_error(self, manager):
        refresher = CacheRefresher(manager, BrokenObjectStore())

        with pytest.raises(ObjectStoreError):
            await refresher.refresh_now()
        await refresher.wait()

        assert refresher.status["lastError"] == "bucket unreachable"


class TestLegacySnapshot:
    """Records warm-started from an older snapshot take part in refreshes."""

    @pytest.mark.asyncio
    async def test_deleted_camel_case_cloud_record_dropped(self, temp_dir, object_store):
        path = temp_dir / "legacy-cache.json"
        legacy = {
            "id": "gone.png",
            "isCloudImage": True,
            "cloudFileName": "gone.png",
            "tags": '["cat"]',
        }
        path.write_text(json.dumps({"images": [legacy], "isInitialized": True}))
        manager = CacheManager(FileCacheStore(snapshot_path=path))
        refresher = CacheRefresher(manager, object_store)

        assert await refresher.refresh() == []

    @pytest.mark.asyncio
    async def test_tag_values_are_lists_after_warm_start(self, temp_dir):
        path = temp_dir / "legacy-cache.json"
        legacy = {"id": "local.png", "isCloudImage": False, "tags": '["category"]'}
        path.write_text(json.dumps({"images": [legacy], "isInitialized": True}))
        manager = CacheManager(FileCacheStore(snapshot_path=path))

        images = await manager.get_all()

        assert images[0]["tags"] == ["category"]
        assert "cat" not in images[0]["tags"]
