"""
FastAPI application: the chatline entry point.

Endpoints:
  POST   /api/chat?conversationId=...      stream a reply (text/event-stream)
  GET    /api/conversations                conversations with at least one turn
  POST   /api/conversations                create an empty conversation
  GET    /api/conversations/{id}
  PATCH  /api/conversations/{id}           title and/or model (model locked once used)
  DELETE /api/conversations/{id}           cascades to turns
  GET    /api/conversations/{id}/turns     ordered by sequence
  POST   /api/conversations/cleanup        drop conversations that never got a turn
  GET    /api/models
  GET    /api/health

Every endpoint requires a bearer token.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from chatline import __version__
from chatline.auth import TokenAuthenticator, User
from chatline.backends.registry import ModelRegistry
from chatline.chat import ChatOrchestrator
from chatline.config import get_config
from chatline.errors import ChatError, ConversationNotFound, PersistenceError
from chatline.storage.sqlite_store import SQLiteStore
from chatline.titles import TitleSynthesizer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Globals, initialized at startup
# ---------------------------------------------------------------------------
sqlite_store: SQLiteStore | None = None
model_registry: ModelRegistry | None = None
orchestrator: ChatOrchestrator | None = None
authenticator: TokenAuthenticator | None = None


def _setup_logging(cfg: dict):
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, log_cfg.get("level", "INFO").upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        from pathlib import Path
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


async def _cleanup_loop(store: SQLiteStore, interval: float, min_age: float):
    """Periodically delete conversations that never received a turn."""
    while True:
        await asyncio.sleep(interval)
        try:
            deleted = store.delete_empty_conversations(min_age_seconds=min_age)
            if deleted:
                logger.info("Cleanup: removed %d empty conversations", deleted)
        except PersistenceError as e:
            logger.warning("Cleanup failed: %s", e)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    global sqlite_store, model_registry, orchestrator, authenticator

    cfg = get_config()
    _setup_logging(cfg)

    sqlite_store = SQLiteStore(cfg["storage"]["sqlite_path"])
    model_registry = ModelRegistry.from_config(cfg)
    titles = TitleSynthesizer.from_config(cfg, model_registry)
    orchestrator = ChatOrchestrator(sqlite_store, model_registry, titles)
    authenticator = TokenAuthenticator.from_config(cfg)

    for kind in model_registry.unconfigured_providers():
        logger.warning("Provider '%s' has no API key; its models will fail", kind)

    server_cfg = cfg.get("server", {})
    logger.info(
        "chatline started, listening on %s:%s, default model %s",
        server_cfg.get("host", "0.0.0.0"),
        server_cfg.get("port", 8000),
        model_registry.default_model,
    )
    logger.info("Storage: SQLite=%s", cfg["storage"]["sqlite_path"])
    logger.info("Titles: %s", f"enabled ({titles.model_id})" if titles else "disabled")

    cleanup_task = None
    cleanup_cfg = cfg.get("cleanup", {}) or {}
    interval = float(cleanup_cfg.get("interval_seconds", 0) or 0)
    if interval > 0:
        min_age = float(cleanup_cfg.get("min_age_seconds", 3600))
        cleanup_task = asyncio.create_task(_cleanup_loop(sqlite_store, interval, min_age))
        logger.info("Cleanup: every %.0fs (min age %.0fs)", interval, min_age)

    yield

    if cleanup_task:
        cleanup_task.cancel()
    await orchestrator.drain()
    logger.info("chatline shutting down")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(
    title="chatline",
    description="Streaming multi-provider chat backend",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse({"error": exc.reason}, status_code=exc.status_code)


bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> User:
    """Resolve the bearer token to a user, or raise Unauthenticated."""
    token = credentials.credentials if credentials else None
    return authenticator.authenticate(token)


CurrentUser = Annotated[User, Depends(get_current_user)]


async def _read_json(request: Request) -> dict | JSONResponse:
    try:
        body = await request.json()
    except ValueError:  # JSONDecodeError and UnicodeDecodeError
        return JSONResponse({"error": "invalid JSON"}, status_code=400)
    if not isinstance(body, dict):
        return JSONResponse({"error": "body must be a JSON object"}, status_code=400)
    return body


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

@app.post("/api/chat")
async def chat(request: Request, user: CurrentUser, conversationId: str | None = None):
    """
    Stream a reply for the conversation. The conversationId query parameter
    takes precedence over one in the body.
    """
    body = await _read_json(request)
    if isinstance(body, JSONResponse):
        return body

    messages = body.get("messages") or []
    if not isinstance(messages, list):
        return JSONResponse({"error": "messages must be a list"}, status_code=400)
    if not all(isinstance(m, dict) and isinstance(m.get("role"), str) for m in messages):
        return JSONResponse({"error": "each message needs a string role"}, status_code=400)

    stream = await orchestrator.handle(
        conversationId or body.get("conversationId"),
        messages,
        user,
        system=body.get("system"),
    )
    return StreamingResponse(
        stream,
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------

@app.get("/api/conversations")
async def list_conversations(user: CurrentUser):
    """Conversations with at least one turn, most recently active first."""
    return JSONResponse({"conversations": sqlite_store.list_conversations(user.id)})


@app.post("/api/conversations")
async def create_conversation(request: Request, user: CurrentUser):
    body = await _read_json(request)
    if isinstance(body, JSONResponse):
        return body

    model_id = body.get("model_id") or model_registry.default_model
    model_registry.resolve(model_id)

    conv = sqlite_store.create_conversation(user.id, model_id, title=body.get("title"))
    logger.info("Created conversation %s (model=%s)", conv.id, model_id)
    return JSONResponse({"conversation": conv.to_dict()})


@app.post("/api/conversations/cleanup")
async def cleanup_conversations(user: CurrentUser):
    deleted = sqlite_store.delete_empty_conversations(user_id=user.id)
    return JSONResponse({"deleted": deleted})


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, user: CurrentUser):
    conv = sqlite_store.get_conversation(conversation_id, user_id=user.id)
    if conv is None:
        raise ConversationNotFound()
    return JSONResponse({"conversation": conv.to_dict()})


@app.patch("/api/conversations/{conversation_id}")
async def update_conversation(conversation_id: str, request: Request, user: CurrentUser):
    body = await _read_json(request)
    if isinstance(body, JSONResponse):
        return body

    title = body.get("title")
    model_id = body.get("model_id")
    if title is None and model_id is None:
        return JSONResponse({"error": "No valid fields to update"}, status_code=400)
    if model_id is not None:
        model_registry.resolve(model_id)

    conv = sqlite_store.update_conversation(
        conversation_id, user.id, title=title, model_id=model_id,
    )
    if conv is None:
        raise ConversationNotFound()
    return JSONResponse({"conversation": conv.to_dict()})


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, user: CurrentUser):
    if not sqlite_store.delete_conversation(conversation_id, user.id):
        raise ConversationNotFound()
    return JSONResponse({"success": True})


@app.get("/api/conversations/{conversation_id}/turns")
async def list_turns(conversation_id: str, user: CurrentUser):
    if sqlite_store.get_conversation(conversation_id, user_id=user.id) is None:
        raise ConversationNotFound()
    turns = sqlite_store.list_turns(conversation_id)
    return JSONResponse({"turns": [t.to_dict() for t in turns]})


# ---------------------------------------------------------------------------
# Models / health
# ---------------------------------------------------------------------------

@app.get("/api/models")
async def list_models(user: CurrentUser):
    return JSONResponse({
        "default": model_registry.default_model,
        "models": model_registry.list_models(),
    })


@app.get("/api/health")
async def health(user: CurrentUser):
    """Health check."""
    return JSONResponse({
        "status": "ok",
        "version": __version__,
        "unconfigured_providers": model_registry.unconfigured_providers(),
    })
