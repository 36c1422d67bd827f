# chatkeep/memory/conversation_store.py
"""
Durable collection of Conversation records on a capacity-bounded medium.

save() walks a fixed degradation ladder: it first tries to persist everything,
then keeps fewer messages per conversation, then fewer conversations, and as a
last resort persists an empty collection. Conversations are ordered by
updated_at (most recent first) before any trimming, so the least recently
used ones are always sacrificed first. save() never raises.
"""

import json
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from chatkeep.memory.errors import MalformedStoredData
from chatkeep.memory.models import Conversation, sort_key
from chatkeep.memory.storage import KeyValueMedium
from chatkeep.utils.logging import get_logger

logger = get_logger(__name__)

CONVERSATIONS_KEY = "chatkeep_convos_v1"
ACTIVE_ID_KEY = "chatkeep_active_id"


class SaveStage(str, Enum):
    FULL = "full"
    TRIM_MESSAGES = "trim_messages"
    TRIM_CONVERSATIONS = "trim_conversations"
    RESET = "reset"


@dataclass(frozen=True)
class LadderStep:
    stage: SaveStage
    max_messages: Optional[int] = None        # per conversation, most recent kept
    max_conversations: Optional[int] = None   # most recently updated kept


def _build_default_ladder() -> List[LadderStep]:
    steps = [LadderStep(SaveStage.FULL)]
    steps += [LadderStep(SaveStage.TRIM_MESSAGES, max_messages=k) for k in (120, 100, 80, 60, 40, 20)]
    steps += [
        LadderStep(SaveStage.TRIM_CONVERSATIONS, max_messages=40, max_conversations=n)
        for n in (30, 25, 20, 15, 10, 5, 3, 1)
    ]
    return steps


DEFAULT_LADDER: List[LadderStep] = _build_default_ladder()


@dataclass
class SaveResult:
    stage: SaveStage
    step: Optional[LadderStep]
    conversations: List[Conversation] = field(default_factory=list)
    attempts: int = 0

    @property
    def degraded(self) -> bool:
        return self.stage != SaveStage.FULL


def sort_by_recency(conversations: Sequence[Conversation]) -> List[Conversation]:
    """Most recently updated first; conversations with unreadable timestamps sink."""
    return sorted(
        (c for c in conversations if c is not None),
        key=lambda c: sort_key(c.updated_at),
        reverse=True,
    )


def parse_collection(raw: Optional[str]) -> List[Any]:
    """Decode the stored collection. Raises MalformedStoredData unless it is a JSON list."""
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedStoredData(f"not valid JSON: {e}") from e
    if not isinstance(data, list):
        raise MalformedStoredData(f"expected a list, got {type(data).__name__}")
    return data


def apply_step(payload: List[Dict[str, Any]], step: LadderStep) -> List[Dict[str, Any]]:
    """Trim an already-sorted display-safe payload according to one ladder step."""
    rows = payload
    if step.max_conversations is not None:
        rows = rows[: step.max_conversations]
    if step.max_messages is not None:
        rows = [dict(row, messages=row["messages"][-step.max_messages:]) for row in rows]
    return rows


class ConversationStore:
    def __init__(
        self,
        medium: KeyValueMedium,
        key: str = CONVERSATIONS_KEY,
        ladder: Optional[Sequence[LadderStep]] = None,
    ) -> None:
        self.medium = medium
        self.key = key
        self.ladder: List[LadderStep] = list(ladder or DEFAULT_LADDER)
        self._lock = threading.Lock()

    # ---------- WRITE PATH ----------

    def _attempt(self, rows: List[Dict[str, Any]]) -> bool:
        """One write attempt. Any medium failure counts as a rejected attempt."""
        try:
            self.medium.set_item(self.key, json.dumps(rows, ensure_ascii=False, separators=(",", ":")))
            return True
        except Exception as e:
            logger.debug("Conversation write rejected (%d conversations): %s", len(rows), e)
            return False

    def _reset(self) -> None:
        try:
            self.medium.remove_item(self.key)
            self.medium.set_item(self.key, "[]")
        except Exception as e:
            logger.error("Could not persist empty conversation collection: %s", e)

    def save(self, conversations: Sequence[Conversation]) -> SaveResult:
        """
        Persist conversations through the degradation ladder.

        Returns a SaveResult whose `conversations` is exactly what is now
        durable. The caller must replace its live collection with it so that
        memory and storage never diverge. On a FULL save this is the caller's
        own objects (sorted); on any degraded stage these are trimmed copies.
        """
        with self._lock:
            ordered = sort_by_recency(conversations)
            payload = [c.to_dict() for c in ordered]

            for attempts, step in enumerate(self.ladder, start=1):
                rows = apply_step(payload, step)
                if not self._attempt(rows):
                    continue

                if step.stage == SaveStage.FULL:
                    return SaveResult(stage=step.stage, step=step, conversations=ordered, attempts=attempts)

                logger.warning(
                    "Conversation store degraded: stage=%s max_messages=%s max_conversations=%s "
                    "(kept %d of %d conversations).",
                    step.stage.value,
                    step.max_messages,
                    step.max_conversations,
                    len(rows),
                    len(payload),
                )
                return SaveResult(
                    stage=step.stage,
                    step=step,
                    conversations=[Conversation.from_dict(row) for row in rows],
                    attempts=attempts,
                )

            logger.error(
                "Conversation store could not hold even one trimmed conversation; "
                "resetting to an empty collection (dropped %d).",
                len(payload),
            )
            self._reset()
            return SaveResult(stage=SaveStage.RESET, step=None, conversations=[], attempts=len(self.ladder))

    # ---------- READ PATH ----------

    def load(self) -> List[Conversation]:
        """
        Read the stored collection. Missing keys, JSON errors and any payload
        that is not a list yield an empty list; non-object items are skipped.
        """
        try:
            raw = self.medium.get_item(self.key)
        except Exception as e:
            logger.error("Failed to read conversations: %s", e)
            return []

        try:
            data = parse_collection(raw)
        except MalformedStoredData as e:
            logger.warning("Stored conversations unreadable; starting empty: %s", e)
            return []

        conversations: List[Conversation] = []
        seen = set()
        for item in data:
            if not isinstance(item, dict):
                continue
            conv = Conversation.from_dict(item)
            if conv.id in seen:
                continue
            seen.add(conv.id)
            conversations.append(conv)
        return conversations

    # ---------- ACTIVE SELECTION ----------

    def save_active_id(self, conversation_id: str) -> None:
        try:
            self.medium.set_item(ACTIVE_ID_KEY, conversation_id or "")
        except Exception as e:
            logger.warning("Failed to persist active conversation id: %s", e)

    def load_active_id(self) -> str:
        try:
            return self.medium.get_item(ACTIVE_ID_KEY) or ""
        except Exception as e:
            logger.warning("Failed to read active conversation id: %s", e)
            return ""
