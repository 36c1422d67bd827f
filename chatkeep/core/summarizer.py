# chatkeep/core/summarizer.py

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from chatkeep.config.settings import Settings
from chatkeep.memory.models import Conversation, now_iso, parse_iso, utcnow
from chatkeep.utils.logging import get_logger

logger = get_logger(__name__)

MEMORY_PURPOSE = "conversation memory (compact facts, preferences, unresolved tasks)"

MIN_MESSAGES = 16
STALE_AFTER = timedelta(minutes=5)
WINDOW_MESSAGES = 60
MAX_MEMORY_CHARS = 1200


class Summarizer(Protocol):
    def summarize(self, text: str, purpose: Optional[str] = None) -> str: ...


# (conversation_id, memory, memory_updated_at, expected previous memory_updated_at) -> committed?
CommitFn = Callable[[str, str, str, str], bool]


def transcript_lines(conversation: Conversation, window: int = WINDOW_MESSAGES) -> str:
    return "\n".join(
        f"{m.role or 'assistant'}: {m.content or ''}" for m in conversation.messages[-window:]
    )


class MemorySummarizer:
    """
    Keeps a conversation's rolling `memory` fresh.

    A refresh runs only when the conversation has at least `min_messages`
    messages and its memory is at least `stale_after` old (measured from
    created_at when it was never summarized). Failures leave the conversation
    untouched and are not retried; the next qualifying call re-evaluates.
    """

    def __init__(
        self,
        client: Summarizer,
        commit: Optional[CommitFn] = None,
        clock: Callable[[], datetime] = utcnow,
        min_messages: int = MIN_MESSAGES,
        stale_after: timedelta = STALE_AFTER,
        window: int = WINDOW_MESSAGES,
        max_chars: int = MAX_MEMORY_CHARS,
    ) -> None:
        self.client = client
        self.commit = commit
        self.clock = clock
        self.min_messages = min_messages
        self.stale_after = stale_after
        self.window = window
        self.max_chars = max_chars

    @classmethod
    def from_settings(
        cls,
        client: Summarizer,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> "MemorySummarizer":
        return cls(
            client,
            clock=clock,
            min_messages=settings.memory_min_messages,
            stale_after=timedelta(seconds=settings.memory_stale_seconds),
            window=settings.memory_window_messages,
            max_chars=settings.memory_max_chars,
        )

    def is_due(self, conversation: Conversation, now: Optional[datetime] = None) -> bool:
        if len(conversation.messages) < self.min_messages:
            return False
        reference = parse_iso(conversation.memory_updated_at) or parse_iso(conversation.created_at)
        if reference is None:
            return True
        return (now or self.clock()) - reference >= self.stale_after

    async def maybe_refresh(self, conversation: Conversation) -> bool:
        """Returns True when a new memory was committed."""
        if not self.is_due(conversation):
            return False

        expected = conversation.memory_updated_at
        text = transcript_lines(conversation, self.window)

        try:
            summary = await asyncio.to_thread(self.client.summarize, text, MEMORY_PURPOSE)
        except Exception as e:
            logger.warning("Memory refresh skipped for conversation %s: %s", conversation.id, e)
            return False

        memo = str(summary or "")[: self.max_chars]
        if not memo.strip():
            logger.info("Memory refresh for conversation %s returned nothing; keeping old memory.", conversation.id)
            return False

        stamp = now_iso(self.clock())
        if self.commit is None:
            conversation.memory = memo
            conversation.memory_updated_at = stamp
            return True
        return self.commit(conversation.id, memo, stamp, expected)
