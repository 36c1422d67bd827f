# chatkeep/memory/models.py

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

ISO_FMT = "%Y-%m-%dT%H:%M:%S"

PLACEHOLDER_TITLE = "(new conversation)"
TITLE_MAX_CHARS = 60
GENERATED_IMAGE_PLACEHOLDER = "[Generated Image]"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso(now: Optional[datetime] = None) -> str:
    """UTC timestamp with millisecond precision, e.g. 2024-05-01T12:00:00.123Z"""
    moment = (now or utcnow()).astimezone(timezone.utc)
    return moment.strftime(ISO_FMT) + f".{moment.microsecond // 1000:03d}Z"


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """
    Parse a timestamp written by now_iso() (or any ISO-8601 string).
    Naive values are taken as UTC. Returns None when unparseable.
    """
    if not value or not isinstance(value, str):
        return None
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def sort_key(value: Optional[str]) -> datetime:
    return parse_iso(value) or _EPOCH


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Message:
    role: str            # 'user' or 'assistant'
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class Conversation:
    id: str
    title: str = PLACEHOLDER_TITLE
    created_at: str = ""
    updated_at: str = ""
    messages: List[Message] = field(default_factory=list)
    memory: str = ""
    memory_updated_at: str = ""
    greeted: bool = False

    @classmethod
    def create(cls, title: Optional[str] = None, now: Optional[datetime] = None) -> "Conversation":
        stamp = now_iso(now)
        return cls(
            id=new_id(),
            title=title or PLACEHOLDER_TITLE,
            created_at=stamp,
            updated_at=stamp,
        )

    def has_placeholder_title(self) -> bool:
        return not self.title or self.title == PLACEHOLDER_TITLE

    def touch(self, now: Optional[datetime] = None) -> None:
        """Advance updated_at, never moving it backwards."""
        stamp = now_iso(now)
        if sort_key(stamp) >= sort_key(self.updated_at):
            self.updated_at = stamp

    def to_dict(self) -> Dict[str, Any]:
        """Display-safe projection; this is exactly what gets persisted."""
        return {
            "id": self.id,
            "title": self.title,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "messages": [m.to_dict() for m in self.messages],
            "memory": self.memory or "",
            "memoryUpdatedAt": self.memory_updated_at or "",
            "greeted": bool(self.greeted),
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Conversation":
        messages: List[Message] = []
        for m in raw.get("messages") or []:
            if not isinstance(m, dict):
                continue
            messages.append(Message(role=str(m.get("role") or "assistant"), content=str(m.get("content") or "")))

        return cls(
            id=str(raw.get("id") or new_id()),
            title=str(raw.get("title") or PLACEHOLDER_TITLE),
            created_at=str(raw.get("createdAt") or ""),
            updated_at=str(raw.get("updatedAt") or ""),
            messages=messages,
            memory=str(raw.get("memory") or ""),
            memory_updated_at=str(raw.get("memoryUpdatedAt") or ""),
            greeted=bool(raw.get("greeted")),
        )


@dataclass
class MediaAsset:
    id: str
    url: str
    created_at: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "url": self.url, "createdAt": self.created_at}


@dataclass
class QuotaRecord:
    date: str            # UTC calendar day, YYYY-MM-DD
    count: int = 0


def derive_title(text: str) -> str:
    """First user message, whitespace-collapsed and cut to TITLE_MAX_CHARS."""
    collapsed = " ".join(str(text or "").split())
    return collapsed[:TITLE_MAX_CHARS] or PLACEHOLDER_TITLE
