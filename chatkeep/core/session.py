# chatkeep/core/session.py

from dataclasses import dataclass
from typing import Optional

from chatkeep.config.settings import Settings, load_settings
from chatkeep.memory.conversation_store import ConversationStore
from chatkeep.memory.media_cache import MediaCache
from chatkeep.memory.quota import QuotaCounter
from chatkeep.memory.session_context import SessionContextStore
from chatkeep.memory.storage import (
    InMemoryKeyValueMedium,
    InMemoryObjectMedium,
    SqliteKeyValueMedium,
    SqliteObjectMedium,
)


@dataclass
class ChatSession:
    """Every store one logical session drives. Sessions never share stores."""

    session_id: str
    conversations: ConversationStore
    media: MediaCache
    quota: QuotaCounter
    context: SessionContextStore


def build_session(session_id: str = "default", settings: Optional[Settings] = None) -> ChatSession:
    """SQLite-backed session, namespaced by session_id inside settings.db_path."""
    settings = settings or load_settings()
    kv = SqliteKeyValueMedium(settings.db_path, namespace=session_id, capacity=settings.kv_capacity_bytes)
    objects = SqliteObjectMedium(settings.db_path, namespace=session_id)
    return ChatSession(
        session_id=session_id,
        conversations=ConversationStore(kv),
        media=MediaCache(objects, max_items=settings.media_max_items),
        quota=QuotaCounter(kv, limit=settings.image_daily_limit),
        context=SessionContextStore(kv),
    )


def build_memory_session(session_id: str = "default", capacity: int = 0) -> ChatSession:
    """Process-local session; nothing survives the process."""
    kv = InMemoryKeyValueMedium(capacity=capacity)
    return ChatSession(
        session_id=session_id,
        conversations=ConversationStore(kv),
        media=MediaCache(InMemoryObjectMedium()),
        quota=QuotaCounter(kv),
        context=SessionContextStore(kv),
    )
