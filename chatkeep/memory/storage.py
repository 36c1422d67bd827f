# chatkeep/memory/storage.py
"""
Durable media behind the chatkeep stores.

Two shapes of storage are used:

- KeyValueMedium: synchronous string get/set/remove with a capacity that the
  caller cannot know in advance. set_item() raises CapacityExceeded when the
  namespace would grow past it. Backs conversations, quota and session context.
- ObjectMedium: asynchronous keyed store of MediaAsset rows (put/get_all/
  delete/clear). Backs the recent-image cache.

Each medium has a SQLite implementation and an in-memory one. A namespace
(usually the session id) isolates independent sessions sharing one file.
"""

import asyncio
import threading
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from chatkeep.memory.db import get_connection, init_db
from chatkeep.memory.errors import CapacityExceeded
from chatkeep.memory.models import MediaAsset


def _size_of(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class KeyValueMedium(Protocol):
    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class ObjectMedium(Protocol):
    async def put(self, asset: MediaAsset) -> None: ...

    async def get_all(self) -> List[MediaAsset]: ...

    async def delete(self, asset_id: str) -> None: ...

    async def clear(self) -> None: ...


# ---------------------------------------------------------------------------
# Key/value media
# ---------------------------------------------------------------------------

class InMemoryKeyValueMedium:
    """Dict-backed medium. capacity=0 means unbounded."""

    def __init__(self, capacity: int = 0) -> None:
        self.capacity = capacity
        self._items: Dict[str, str] = {}
        self._lock = threading.Lock()

    def used(self, excluding: Optional[str] = None) -> int:
        return sum(_size_of(k, v) for k, v in self._items.items() if k != excluding)

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            needed = self.used(excluding=key) + _size_of(key, value)
            if self.capacity and needed > self.capacity:
                raise CapacityExceeded(key, needed, self.capacity)
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class SqliteKeyValueMedium:
    """
    kv_items-backed medium. The capacity applies to the sum of key and value
    sizes (UTF-8 bytes) within this medium's namespace.
    """

    def __init__(self, db_path: Union[str, Path], namespace: str = "default", capacity: int = 0) -> None:
        self.db_path = str(db_path)
        self.namespace = namespace
        self.capacity = capacity
        self._lock = threading.Lock()
        init_db(self.db_path)

    def get_item(self, key: str) -> Optional[str]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT value FROM kv_items WHERE namespace = ? AND key = ?",
                (self.namespace, key),
            ).fetchone()
        finally:
            conn.close()
        return row["value"] if row else None

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                if self.capacity:
                    row = conn.execute(
                        """
                        SELECT COALESCE(SUM(LENGTH(CAST(key AS BLOB)) + LENGTH(CAST(value AS BLOB))), 0) AS used
                        FROM kv_items
                        WHERE namespace = ? AND key != ?
                        """,
                        (self.namespace, key),
                    ).fetchone()
                    needed = int(row["used"]) + _size_of(key, value)
                    if needed > self.capacity:
                        raise CapacityExceeded(key, needed, self.capacity)

                conn.execute(
                    """
                    INSERT INTO kv_items (namespace, key, value) VALUES (?, ?, ?)
                    ON CONFLICT(namespace, key) DO UPDATE SET value = excluded.value
                    """,
                    (self.namespace, key, value),
                )
                conn.commit()
            finally:
                conn.close()

    def remove_item(self, key: str) -> None:
        with self._lock:
            conn = get_connection(self.db_path)
            try:
                conn.execute(
                    "DELETE FROM kv_items WHERE namespace = ? AND key = ?",
                    (self.namespace, key),
                )
                conn.commit()
            finally:
                conn.close()


# ---------------------------------------------------------------------------
# Object media
# ---------------------------------------------------------------------------

class InMemoryObjectMedium:
    def __init__(self) -> None:
        self._items: Dict[str, MediaAsset] = {}

    async def put(self, asset: MediaAsset) -> None:
        self._items[asset.id] = asset

    async def get_all(self) -> List[MediaAsset]:
        return list(self._items.values())

    async def delete(self, asset_id: str) -> None:
        self._items.pop(asset_id, None)

    async def clear(self) -> None:
        self._items.clear()


class SqliteObjectMedium:
    """media_assets-backed medium; blocking SQLite work runs in a worker thread."""

    def __init__(self, db_path: Union[str, Path], namespace: str = "default") -> None:
        self.db_path = str(db_path)
        self.namespace = namespace
        init_db(self.db_path)

    def _execute(self, sql: str, params: tuple) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()

    def _fetch_all(self) -> List[MediaAsset]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT id, url, created_at FROM media_assets WHERE namespace = ?",
                (self.namespace,),
            ).fetchall()
        finally:
            conn.close()
        return [MediaAsset(id=row["id"], url=row["url"], created_at=row["created_at"]) for row in rows]

    async def put(self, asset: MediaAsset) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO media_assets (namespace, id, url, created_at)
            VALUES (?, ?, ?, ?)
            """,
            (self.namespace, asset.id, asset.url, asset.created_at),
        )

    async def get_all(self) -> List[MediaAsset]:
        return await asyncio.to_thread(self._fetch_all)

    async def delete(self, asset_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM media_assets WHERE namespace = ? AND id = ?",
            (self.namespace, asset_id),
        )

    async def clear(self) -> None:
        await asyncio.to_thread(
            self._execute,
            "DELETE FROM media_assets WHERE namespace = ?",
            (self.namespace,),
        )
