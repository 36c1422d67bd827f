# chatkeep/api/server.py
"""
FastAPI server for chatkeep:

- /chat                       : one user turn (persist, call gateway, persist reply)
- /greet                      : opening assistant message for an empty conversation
- /conversations/*            : list, create, select, delete, transcript
- /images                     : generate (quota-checked), list recent, clear
- /quota                      : today's image quota
- /health                     : basic health check

Every request names a session_id (default "default"). Each session owns an
independent set of stores; sessions never share conversation, quota or media
state.

Run with: uvicorn chatkeep.api.server:app  (install the "server" extra)
"""

import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from chatkeep.clients.backend_client import DEFAULT_IMAGE_SIZE, BackendClient
from chatkeep.config.settings import load_settings
from chatkeep.core.chat import ConversationController
from chatkeep.core.session import build_session
from chatkeep.core.summarizer import MemorySummarizer
from chatkeep.memory.errors import CollaboratorFailure, QuotaExceeded
from chatkeep.memory.models import Conversation
from chatkeep.utils.logging import get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Shutdown: cancel in-flight memory refreshes of every session
    registry.close()


app = FastAPI(
    title="chatkeep API",
    description="Conversation history, image cache and daily quota for a generative chat client.",
    version="1.0.0",
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Session registry
# ---------------------------------------------------------------------------

def _safe_session_id(session_id: Optional[str]) -> str:
    safe = "".join(ch for ch in (session_id or "") if ch.isalnum() or ch in ("-", "_"))
    return safe[:64] or "default"


def _default_factory(session_id: str) -> ConversationController:
    settings = load_settings()
    client = BackendClient(settings)
    return ConversationController(
        build_session(session_id, settings),
        client,
        summarizer=MemorySummarizer.from_settings(client, settings),
    )


class SessionRegistry:
    """One ConversationController per session id, built on first use."""

    def __init__(self, factory: Callable[[str], ConversationController] = _default_factory) -> None:
        self.factory = factory
        self._controllers: Dict[str, ConversationController] = {}

    def get(self, session_id: Optional[str]) -> ConversationController:
        key = _safe_session_id(session_id)
        controller = self._controllers.get(key)
        if controller is None:
            controller = self.factory(key)
            self._controllers[key] = controller
        return controller

    def close(self) -> None:
        for controller in self._controllers.values():
            controller.close()
        self._controllers.clear()


registry = SessionRegistry()


def get_registry() -> SessionRegistry:
    return registry


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, description="User message in plain text.")
    session_id: Optional[str] = None


class ImageResponse(BaseModel):
    ok: bool
    url: Optional[str] = None
    error: Optional[str] = None
    quota_exhausted: bool = False


class ChatResponse(BaseModel):
    conversation_id: str
    reply: str
    image: Optional[ImageResponse] = None


class GreetResponse(BaseModel):
    conversation_id: str
    reply: Optional[str] = None


class MessageModel(BaseModel):
    role: str
    content: str


class ConversationSummary(BaseModel):
    id: str
    title: str
    created_at: str
    updated_at: str
    message_count: int
    active: bool = False


class ConversationDetail(ConversationSummary):
    messages: List[MessageModel]
    memory: str = ""
    memory_updated_at: str = ""
    greeted: bool = False


class ImageRequest(BaseModel):
    prompt: str = Field(..., min_length=1)
    size: str = DEFAULT_IMAGE_SIZE
    session_id: Optional[str] = None


class MediaAssetModel(BaseModel):
    id: str
    url: str
    created_at: str


class QuotaResponse(BaseModel):
    date: str
    count: int
    limit: int
    remaining: int


def _summary(conv: Conversation, active_id: str) -> ConversationSummary:
    return ConversationSummary(
        id=conv.id,
        title=conv.title,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
        message_count=len(conv.messages),
        active=conv.id == active_id,
    )


def _detail(conv: Conversation, active_id: str) -> ConversationDetail:
    return ConversationDetail(
        id=conv.id,
        title=conv.title,
        created_at=conv.created_at,
        updated_at=conv.updated_at,
        message_count=len(conv.messages),
        active=conv.id == active_id,
        messages=[MessageModel(role=m.role, content=m.content) for m in conv.messages],
        memory=conv.memory,
        memory_updated_at=conv.memory_updated_at,
        greeted=conv.greeted,
    )


def _find_or_404(controller: ConversationController, conversation_id: str) -> Conversation:
    try:
        return controller.get(conversation_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown conversation {conversation_id!r}.")


# ---------------------------------------------------------------------------
# Chat endpoints
# ---------------------------------------------------------------------------

@app.post("/chat", response_model=ChatResponse)
async def chat(req: ChatRequest, reg: SessionRegistry = Depends(get_registry)) -> ChatResponse:
    request_id = str(uuid.uuid4())
    start_time = time.monotonic()
    logger.info("[chat] request_id=%s message_len=%d", request_id, len(req.message))

    controller = reg.get(req.session_id)
    try:
        turn = await controller.send(req.message)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except CollaboratorFailure as e:
        logger.error("[chat] request_id=%s backend failure: %s", request_id, e)
        raise HTTPException(status_code=502, detail=str(e))

    latency_ms = int((time.monotonic() - start_time) * 1000)
    logger.info("[chat] request_id=%s OK latency_ms=%d", request_id, latency_ms)

    image = ImageResponse(**asdict(turn.image)) if turn.image is not None else None
    return ChatResponse(conversation_id=turn.conversation_id, reply=turn.reply, image=image)


@app.post("/greet", response_model=GreetResponse)
async def greet(
    session_id: Optional[str] = Query(None),
    reg: SessionRegistry = Depends(get_registry),
) -> GreetResponse:
    controller = reg.get(session_id)
    reply = await controller.greet()
    return GreetResponse(conversation_id=controller.ensure_active().id, reply=reply)


@app.get("/health")
def health_check() -> dict:
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Conversation endpoints
# ---------------------------------------------------------------------------

@app.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    session_id: Optional[str] = Query(None),
    reg: SessionRegistry = Depends(get_registry),
) -> List[ConversationSummary]:
    controller = reg.get(session_id)
    return [_summary(c, controller.active_id) for c in controller.list_conversations()]


@app.post("/conversations", response_model=ConversationDetail)
async def create_conversation(
    session_id: Optional[str] = Query(None),
    reg: SessionRegistry = Depends(get_registry),
) -> ConversationDetail:
    controller = reg.get(session_id)
    conv = controller.new_conversation()
    return _detail(conv, controller.active_id)


@app.get("/conversations/{conversation_id}", response_model=ConversationDetail)
async def get_conversation(
    conversation_id: str,
    session_id: Optional[str] = Query(None),
    reg: SessionRegistry = Depends(get_registry),
) -> ConversationDetail:
    controller = reg.get(session_id)
    return _detail(_find_or_404(controller, conversation_id), controller.active_id)


@app.post("/conversations/{conversation_id}/select", response_model=ConversationDetail)
async def select_conversation(
    conversation_id: str,
    session_id: Optional[str] = Query(None),
    reg: SessionRegistry = Depends(get_registry),
) -> ConversationDetail:
    controller = reg.get(session_id)
    conv = controller.select(_find_or_404(controller, conversation_id).id)
    return _detail(conv, controller.active_id)


@app.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    session_id: Optional[str] = Query(None),
    reg: SessionRegistry = Depends(get_registry),
) -> dict:
    controller = reg.get(session_id)
    if not controller.delete(conversation_id):
        raise HTTPException(status_code=404, detail=f"Unknown conversation {conversation_id!r}.")
    return {"deleted": conversation_id, "active_id": controller.active_id}


@app.get("/conversations/{conversation_id}/transcript", response_class=PlainTextResponse)
async def conversation_transcript(
    conversation_id: str,
    session_id: Optional[str] = Query(None),
    reg: SessionRegistry = Depends(get_registry),
) -> str:
    controller = reg.get(session_id)
    _find_or_404(controller, conversation_id)
    return controller.transcript(conversation_id)


# ---------------------------------------------------------------------------
# Image + quota endpoints
# ---------------------------------------------------------------------------

@app.post("/images", response_model=ImageResponse)
async def generate_image(req: ImageRequest, reg: SessionRegistry = Depends(get_registry)) -> ImageResponse:
    controller = reg.get(req.session_id)
    try:
        turn = await controller.request_image(req.prompt, size=req.size)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    result = turn.image
    if result.quota_exhausted:
        raise HTTPException(status_code=429, detail=str(QuotaExceeded(result.error)))
    if not result.ok:
        raise HTTPException(status_code=502, detail=result.error or "Generation failed")
    return ImageResponse(**asdict(result))


@app.get("/images", response_model=List[MediaAssetModel])
async def list_images(
    session_id: Optional[str] = Query(None),
    reg: SessionRegistry = Depends(get_registry),
) -> List[MediaAssetModel]:
    controller = reg.get(session_id)
    assets = await controller.session.media.get_all()
    return [MediaAssetModel(id=a.id, url=a.url, created_at=a.created_at) for a in assets]


@app.delete("/images")
async def clear_images(
    session_id: Optional[str] = Query(None),
    reg: SessionRegistry = Depends(get_registry),
) -> dict:
    controller = reg.get(session_id)
    await controller.session.media.clear()
    return {"cleared": True}


@app.get("/quota", response_model=QuotaResponse)
async def quota(
    session_id: Optional[str] = Query(None),
    reg: SessionRegistry = Depends(get_registry),
) -> QuotaResponse:
    controller = reg.get(session_id)
    counter = controller.session.quota
    record = counter.current()
    return QuotaResponse(
        date=record.date,
        count=record.count,
        limit=counter.limit,
        remaining=max(0, counter.limit - record.count),
    )
