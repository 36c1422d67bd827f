# chatkeep/memory/media_cache.py

import asyncio
from datetime import datetime
from typing import Callable, List, Optional

from chatkeep.memory.models import MediaAsset, new_id, now_iso, sort_key, utcnow
from chatkeep.memory.storage import ObjectMedium
from chatkeep.utils.logging import get_logger

logger = get_logger(__name__)

MAX_MEDIA_ITEMS = 300


def newest_first(assets: List[MediaAsset]) -> List[MediaAsset]:
    return sorted(assets, key=lambda a: sort_key(a.created_at), reverse=True)


class MediaCache:
    """
    Recent generated images, newest first, capped at `max_items`.

    Store failures never reach the caller: add() and clear() become no-ops
    and get_all() returns an empty list.
    """

    def __init__(
        self,
        medium: ObjectMedium,
        max_items: int = MAX_MEDIA_ITEMS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.medium = medium
        self.max_items = max_items
        self.clock = clock
        self._lock = asyncio.Lock()

    async def add(self, url: str) -> Optional[MediaAsset]:
        """Store a new asset stamped now, then evict the oldest beyond max_items."""
        asset = MediaAsset(id=new_id(), url=url, created_at=now_iso(self.clock()))
        async with self._lock:
            try:
                await self.medium.put(asset)
            except Exception as e:
                logger.error("Failed to store media asset: %s", e)
                return None

            try:
                await self._evict_overflow()
            except Exception as e:
                logger.warning("Failed to trim media cache: %s", e)
        return asset

    async def _evict_overflow(self) -> None:
        items = newest_first(await self.medium.get_all())
        overflow = items[self.max_items:]
        for stale in overflow:
            await self.medium.delete(stale.id)
        if overflow:
            logger.info("Evicted %d media assets beyond cap of %d.", len(overflow), self.max_items)

    async def get_all(self) -> List[MediaAsset]:
        try:
            items = await self.medium.get_all()
        except Exception as e:
            logger.error("Failed to read media cache: %s", e)
            return []
        # Cap again in case eviction lagged behind a failed trim.
        return newest_first(items)[: self.max_items]

    async def clear(self) -> None:
        async with self._lock:
            try:
                await self.medium.clear()
            except Exception as e:
                logger.error("Failed to clear media cache: %s", e)
