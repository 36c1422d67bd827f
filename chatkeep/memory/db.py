# chatkeep/memory/db.py

import sqlite3
from pathlib import Path
from typing import Union

_initialized: set = set()


def get_connection(db_path: Union[str, Path]) -> sqlite3.Connection:
    """
    Return a SQLite connection.
    Uses Row factory to allow dict-like access.
    Caller is responsible for closing.
    """
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Union[str, Path]) -> None:
    """
    Initialize the database schema if it does not exist.
    Safe to call multiple times; only the first call per path touches the file.
    """
    key = str(db_path)
    if key in _initialized:
        return

    conn = get_connection(db_path)
    cur = conn.cursor()

    # kv_items: string values keyed per session namespace (conversations, quota, context)
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS kv_items (
            namespace TEXT NOT NULL,
            key TEXT NOT NULL,
            value TEXT NOT NULL,
            PRIMARY KEY (namespace, key)
        )
        """
    )

    # media_assets: recent generated images, one row per asset
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS media_assets (
            namespace TEXT NOT NULL,
            id TEXT NOT NULL,
            url TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (namespace, id)
        )
        """
    )
    cur.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_media_assets_created
        ON media_assets (namespace, created_at)
        """
    )

    conn.commit()
    conn.close()
    _initialized.add(key)
