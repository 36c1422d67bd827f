# chatkeep/core/chat.py

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Set

from chatkeep.core.session import ChatSession
from chatkeep.core.summarizer import MemorySummarizer
from chatkeep.memory.conversation_store import SaveResult, sort_by_recency
from chatkeep.memory.errors import CollaboratorFailure
from chatkeep.memory.models import (
    GENERATED_IMAGE_PLACEHOLDER,
    Conversation,
    Message,
    derive_title,
    utcnow,
)
from chatkeep.memory.session_context import LAST_CITY
from chatkeep.utils.logging import get_logger

logger = get_logger(__name__)

# SAFEGUARD: bounds on user text + history sent along with a turn
MAX_USER_TEXT_CHARS = 8000
MAX_HISTORY_MESSAGES = 20

IMAGE_COMMAND = "/image "
IMAGE_TURN_PREFIX = "Generate image: "
GREETING_INPUT = "[system_greet]"
FALLBACK_GREETING = "Hello! How can I help today?"
QUOTA_MESSAGE = "Daily image limit reached."

DEFAULT_DIRECTIVES = {"policy": {"followups": "one_if_needed", "max_followups": 1}}


class Backend(Protocol):
    def chat(
        self,
        input_text: str,
        history: List[Dict[str, str]],
        context: Optional[Dict[str, Any]] = None,
        directives: Optional[Dict[str, Any]] = None,
    ) -> str: ...

    def summarize(self, text: str, purpose: Optional[str] = None, description: Optional[str] = None) -> str: ...

    def generate_image(self, prompt: str, size: str = ...) -> str: ...


@dataclass
class ImageResult:
    ok: bool
    url: Optional[str] = None
    error: Optional[str] = None
    quota_exhausted: bool = False


@dataclass
class TurnResult:
    conversation_id: str
    reply: str = ""
    image: Optional[ImageResult] = None


class ConversationController:
    """
    Owns the live conversation collection of one ChatSession and keeps it in
    lockstep with the ConversationStore: every mutation is followed by a save,
    and the live collection is replaced by whatever the save made durable.
    """

    def __init__(
        self,
        session: ChatSession,
        backend: Backend,
        summarizer: Optional[MemorySummarizer] = None,
        clock=utcnow,
    ) -> None:
        self.session = session
        self.backend = backend
        self.clock = clock
        self.summarizer = summarizer or MemorySummarizer(backend, clock=clock)
        if self.summarizer.commit is None:
            self.summarizer.commit = self._apply_memory

        self.conversations: List[Conversation] = session.conversations.load()
        self.active_id: str = session.conversations.load_active_id()
        self._tasks: Set[asyncio.Task] = set()
        self._images_in_flight = 0

        logger.info(
            "Session %s loaded %d conversations (active=%s).",
            session.session_id,
            len(self.conversations),
            self.active_id or "-",
        )

    # ---------- PERSISTENCE ----------

    def _now(self) -> datetime:
        return self.clock()

    def _persist(self) -> SaveResult:
        result = self.session.conversations.save(self.conversations)
        self.conversations = result.conversations
        return result

    def _set_active(self, conversation_id: str) -> None:
        self.active_id = conversation_id
        self.session.conversations.save_active_id(conversation_id)

    # ---------- COLLECTION MANAGEMENT ----------

    def find(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        if not conversation_id:
            return None
        for c in self.conversations:
            if c.id == conversation_id:
                return c
        return None

    def get(self, conversation_id: str) -> Conversation:
        conv = self.find(conversation_id)
        if conv is None:
            raise KeyError(conversation_id)
        return conv

    def list_conversations(self) -> List[Conversation]:
        return sort_by_recency(self.conversations)

    def ensure_active(self) -> Conversation:
        """Return the active conversation, creating one if there is none."""
        current = self.find(self.active_id)
        if current is not None:
            return current

        if not self.conversations:
            self.conversations.insert(0, Conversation.create(now=self._now()))
            self._persist()

        # The store can reset to empty under extreme pressure; never return None.
        if not self.conversations:
            self.conversations.append(Conversation.create(now=self._now()))

        current = self.list_conversations()[0]
        self._set_active(current.id)
        return current

    def new_conversation(self) -> Conversation:
        conv = Conversation.create(now=self._now())
        self.conversations.insert(0, conv)
        self._set_active(conv.id)
        self._persist()
        logger.info("Started conversation %s.", conv.id)
        return self.find(conv.id) or self.ensure_active()

    def select(self, conversation_id: str) -> Conversation:
        conv = self.get(conversation_id)
        self._set_active(conv.id)
        return conv

    def delete(self, conversation_id: str) -> bool:
        before = len(self.conversations)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if len(self.conversations) == before:
            return False

        if self.active_id == conversation_id:
            self.active_id = ""
        self._persist()
        self.ensure_active()
        logger.info("Deleted conversation %s.", conversation_id)
        return True

    def transcript(self, conversation_id: str) -> str:
        conv = self.get(conversation_id)
        return "\n\n".join(f"{(m.role or 'assistant').upper()}: {m.content or ''}" for m in conv.messages)

    # ---------- TURN RECORDING ----------

    def _append(self, conv: Conversation, role: str, content: str) -> None:
        conv.messages.append(Message(role=role, content=content))
        conv.touch(self._now())

    def record_user_message(self, text: str) -> Conversation:
        cleaned = (text or "").strip()
        if not cleaned:
            raise ValueError("No meaningful input text was provided.")
        if len(cleaned) > MAX_USER_TEXT_CHARS:
            logger.warning(
                "User text length %d exceeds MAX_USER_TEXT_CHARS=%d; truncating.",
                len(cleaned),
                MAX_USER_TEXT_CHARS,
            )
            cleaned = cleaned[:MAX_USER_TEXT_CHARS]

        conv = self.ensure_active()
        if conv.has_placeholder_title():
            conv.title = derive_title(cleaned)
        self._append(conv, "user", cleaned)
        self._persist()

        self.session.context.update(cleaned)
        live = self.find(conv.id) or self.ensure_active()
        self._schedule_refresh(live)
        return live

    def record_assistant_reply(self, text: str, conversation_id: Optional[str] = None) -> Conversation:
        conv = self.find(conversation_id) or self.ensure_active()
        self._append(conv, "assistant", text)
        self._persist()
        self.session.context.update(text)
        return self.find(conv.id) or self.ensure_active()

    # ---------- MEMORY ----------

    def _schedule_refresh(self, conv: Conversation) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No event loop (plain sync caller); memory waits for the next async turn.
            return
        task = loop.create_task(self.summarizer.maybe_refresh(conv))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _apply_memory(self, conversation_id: str, memory: str, stamp: str, expected: str) -> bool:
        conv = self.find(conversation_id)
        if conv is None:
            logger.info("Conversation %s vanished before its memory refresh landed.", conversation_id)
            return False
        if conv.memory_updated_at != expected:
            logger.info("Discarding stale memory refresh for conversation %s.", conversation_id)
            return False
        conv.memory = memory
        conv.memory_updated_at = stamp
        self._persist()
        return True

    async def drain(self) -> None:
        """Wait for in-flight memory refreshes."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    # ---------- BACKEND TURNS ----------

    def _system_messages(self, conv: Conversation) -> List[Dict[str, str]]:
        msgs: List[Dict[str, str]] = []
        if conv.memory:
            msgs.append({
                "role": "system",
                "content": "Conversation memory (use to personalize; don't parrot):\n" + conv.memory,
            })
        city = self.session.context.get(LAST_CITY)
        if city:
            msgs.append({"role": "system", "content": "Last referenced city this session: " + city})
        return msgs

    def build_history(self, conv: Conversation) -> List[Dict[str, str]]:
        """System hints, then the recent history without the just-sent user message."""
        prior = conv.messages[:-1][-MAX_HISTORY_MESSAGES:]
        return self._system_messages(conv) + [m.to_dict() for m in prior]

    async def send(self, text: str) -> TurnResult:
        """
        One full user turn. The user message is durable before the backend is
        called; a backend failure raises CollaboratorFailure afterwards.
        Text starting with "/image " is an image request and skips chat.
        """
        cleaned = (text or "").strip()
        if cleaned.startswith(IMAGE_COMMAND):
            return await self.request_image(cleaned[len(IMAGE_COMMAND):])

        conv = self.record_user_message(text)
        user_text = conv.messages[-1].content
        history = self.build_history(conv)
        context = {LAST_CITY: self.session.context.get(LAST_CITY)}

        try:
            raw = await asyncio.to_thread(self.backend.chat, user_text, history, context, DEFAULT_DIRECTIVES)
        except CollaboratorFailure:
            raise
        except Exception as e:
            logger.error("Chat backend failed for conversation %s: %s", conv.id, e)
            raise CollaboratorFailure(f"chat failed: {e}") from e

        return await self._handle_reply(raw, conv.id)

    async def _handle_reply(self, raw: str, conversation_id: str) -> TurnResult:
        reply = (raw or "").strip()
        if reply.startswith(IMAGE_COMMAND):
            prompt = reply[len(IMAGE_COMMAND):].strip()
            image = await self.generate_image(prompt, conversation_id=conversation_id)
            return TurnResult(conversation_id=conversation_id, image=image)

        conv = self.record_assistant_reply(reply, conversation_id)
        return TurnResult(conversation_id=conv.id, reply=reply)

    async def request_image(self, prompt: str, size: str = "1024x1024") -> TurnResult:
        """
        User-typed image request. The request is recorded as a user turn and
        the chat backend is not consulted.
        """
        prompt = (prompt or "").strip()
        if not prompt:
            raise ValueError("Image prompt is empty.")

        conv = self.ensure_active()
        self._append(conv, "user", IMAGE_TURN_PREFIX + prompt)
        self._persist()
        conversation_id = (self.find(conv.id) or self.ensure_active()).id

        image = await self.generate_image(prompt, size=size, conversation_id=conversation_id)
        return TurnResult(conversation_id=conversation_id, image=image)

    async def greet(self) -> Optional[str]:
        """Issue the opening assistant message once for an empty conversation."""
        conv = self.ensure_active()
        if conv.messages or conv.greeted:
            return None

        conv.greeted = True
        self._persist()

        try:
            reply = await asyncio.to_thread(
                self.backend.chat, GREETING_INPUT, self._system_messages(conv), None, None
            )
        except Exception as e:
            logger.warning("Greeting request failed; using fallback: %s", e)
            reply = FALLBACK_GREETING

        result = await self._handle_reply(reply or FALLBACK_GREETING, conv.id)
        return result.reply or None

    # ---------- IMAGES ----------

    async def generate_image(
        self,
        prompt: str,
        size: str = "1024x1024",
        conversation_id: Optional[str] = None,
    ) -> ImageResult:
        """
        Quota is checked before and charged only after a successful generation.
        Generations still in flight hold a slot, so concurrent requests cannot
        overrun the limit. Failures are reported on the result; persisted state
        is untouched.
        """
        prompt = (prompt or "").strip()
        if not prompt:
            return ImageResult(ok=False, error="Image prompt is empty.")

        if self.session.quota.remaining() <= self._images_in_flight:
            logger.info("Image generation refused: daily quota exhausted for session %s.", self.session.session_id)
            return ImageResult(ok=False, error=QUOTA_MESSAGE, quota_exhausted=True)

        self._images_in_flight += 1
        try:
            image_b64 = await asyncio.to_thread(self.backend.generate_image, prompt, size)
        except Exception as e:
            logger.error("Image generation failed: %s", e)
            return ImageResult(ok=False, error=str(e) or "Generation failed")
        else:
            self.session.quota.consume()
        finally:
            self._images_in_flight -= 1

        url = "data:image/png;base64," + image_b64
        await self.session.media.add(url)

        conv = self.find(conversation_id) if conversation_id else self.ensure_active()
        if conv is not None and not any(
            m.role == "assistant" and m.content == GENERATED_IMAGE_PLACEHOLDER for m in conv.messages
        ):
            conv.messages.append(Message(role="assistant", content=GENERATED_IMAGE_PLACEHOLDER))
            self._persist()

        return ImageResult(ok=True, url=url)
