"""
Tests for MediaCache: retention cap, ordering and failure behaviour.
"""

import pytest

from chatkeep.memory.media_cache import MAX_MEDIA_ITEMS, MediaCache
from chatkeep.memory.models import MediaAsset, sort_key
from chatkeep.memory.storage import InMemoryObjectMedium


class FailingObjectMedium:
    async def put(self, asset):
        raise OSError("quota exceeded")

    async def get_all(self):
        raise OSError("quota exceeded")

    async def delete(self, asset_id):
        raise OSError("quota exceeded")

    async def clear(self):
        raise OSError("quota exceeded")


class TrimFailingMedium(InMemoryObjectMedium):
    async def delete(self, asset_id):
        raise OSError("delete refused")


class TestMediaCache:
    @pytest.mark.asyncio
    async def test_add_returns_asset_and_lists_it(self, objects, clock):
        cache = MediaCache(objects, clock=clock)
        asset = await cache.add("data:image/png;base64,AAA")
        assert asset is not None
        assert asset.url == "data:image/png;base64,AAA"
        assert [a.id for a in await cache.get_all()] == [asset.id]

    @pytest.mark.asyncio
    async def test_newest_first(self, objects, clock):
        cache = MediaCache(objects, clock=clock)
        for i in range(5):
            await cache.add(f"data:{i}")
            clock.advance(seconds=1)
        urls = [a.url for a in await cache.get_all()]
        assert urls == ["data:4", "data:3", "data:2", "data:1", "data:0"]

    @pytest.mark.asyncio
    async def test_retention_cap_evicts_oldest(self, objects, clock):
        cache = MediaCache(objects, clock=clock)
        for i in range(MAX_MEDIA_ITEMS + 5):
            await cache.add(f"data:{i}")
            clock.advance(seconds=1)

        items = await cache.get_all()
        assert len(items) == MAX_MEDIA_ITEMS
        assert len(await objects.get_all()) == MAX_MEDIA_ITEMS
        created = [sort_key(a.created_at) for a in items]
        assert created == sorted(created, reverse=True)
        urls = {a.url for a in items}
        assert "data:4" not in urls
        assert "data:5" in urls

    @pytest.mark.asyncio
    async def test_get_all_caps_even_when_trim_lagged(self, clock):
        medium = TrimFailingMedium()
        cache = MediaCache(medium, max_items=3, clock=clock)
        for i in range(6):
            await cache.add(f"data:{i}")
            clock.advance(seconds=1)

        assert len(await medium.get_all()) == 6
        assert [a.url for a in await cache.get_all()] == ["data:5", "data:4", "data:3"]

    @pytest.mark.asyncio
    async def test_clear(self, objects, clock):
        cache = MediaCache(objects, clock=clock)
        await cache.add("data:x")
        await cache.clear()
        assert await cache.get_all() == []

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        cache = MediaCache(FailingObjectMedium())
        assert await cache.add("data:x") is None
        assert await cache.get_all() == []
        await cache.clear()

    @pytest.mark.asyncio
    async def test_preexisting_rows_sorted_by_created_at(self, objects):
        await objects.put(MediaAsset(id="old", url="u1", created_at="2024-01-01T00:00:00.000Z"))
        await objects.put(MediaAsset(id="new", url="u2", created_at="2024-06-01T00:00:00.000Z"))
        await objects.put(MediaAsset(id="mid", url="u3", created_at="2024-03-01T00:00:00.000Z"))
        cache = MediaCache(objects)
        assert [a.id for a in await cache.get_all()] == ["new", "mid", "old"]
