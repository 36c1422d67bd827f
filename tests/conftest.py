"""
Shared pytest fixtures for chatkeep tests.

Provides:
- A controllable clock
- In-memory and SQLite storage media
- A scripted stand-in for the chat/summarize/image gateway
- A ready ConversationController over an in-memory session
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from chatkeep.core.chat import ConversationController
from chatkeep.core.session import build_memory_session
from chatkeep.memory.errors import CollaboratorFailure
from chatkeep.memory.models import Conversation, Message, now_iso
from chatkeep.memory.storage import InMemoryKeyValueMedium, InMemoryObjectMedium


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeBackend:
    """Scripted gateway: records every call, fails on demand."""

    def __init__(self) -> None:
        self.replies: List[str] = []
        self.summary = "User likes tea. Open task: book flights."
        self.image_b64 = "aGVsbG8="
        self.fail_chat = False
        self.fail_summary = False
        self.fail_image = False
        self.chat_calls: List[Dict[str, Any]] = []
        self.summary_calls: List[Dict[str, Any]] = []
        self.image_calls: List[Dict[str, Any]] = []

    def chat(self, input_text, history, context=None, directives=None) -> str:
        self.chat_calls.append(
            {"input": input_text, "history": history, "context": context, "directives": directives}
        )
        if self.fail_chat:
            raise CollaboratorFailure("chat gateway unavailable", status_code=503)
        if self.replies:
            return self.replies.pop(0)
        return f"echo: {input_text}"

    def summarize(self, text, purpose=None, description=None) -> str:
        self.summary_calls.append({"text": text, "purpose": purpose})
        if self.fail_summary:
            raise CollaboratorFailure("summarizer timed out")
        return self.summary

    def generate_image(self, prompt, size="1024x1024") -> str:
        self.image_calls.append({"prompt": prompt, "size": size})
        if self.fail_image:
            raise CollaboratorFailure("content policy rejection", status_code=400)
        return self.image_b64


def make_conversation(
    n_messages: int = 0,
    updated_at: Optional[datetime] = None,
    title: str = "(new conversation)",
    content_size: int = 0,
) -> Conversation:
    moment = updated_at or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    conv = Conversation.create(title=title, now=moment)
    pad = "x" * content_size
    for i in range(n_messages):
        role = "user" if i % 2 == 0 else "assistant"
        conv.messages.append(Message(role=role, content=f"m{i}{pad}"))
    conv.updated_at = now_iso(moment)
    return conv


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def kv() -> InMemoryKeyValueMedium:
    return InMemoryKeyValueMedium()


@pytest.fixture
def objects() -> InMemoryObjectMedium:
    return InMemoryObjectMedium()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def session():
    return build_memory_session("test")


@pytest.fixture
def controller(session, backend, clock) -> ConversationController:
    ctl = ConversationController(session, backend, clock=clock)
    yield ctl
    ctl.close()


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "chatkeep.db"
