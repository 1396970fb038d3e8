"""
HTTP surface: FastAPI app serving chat turns as server-sent events.

The authenticated user id arrives in a request header set by whatever
fronts this service (``X-User-Id`` by default).
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from parley import __version__
from parley.chat.wire import DONE_SENTINEL, encode_sse
from parley.config import ParleyConfig
from parley.errors import TurnRejectedError
from parley.llm.parts import Message
from parley.llm.providers.base import Provider
from parley.llm.providers.openrouter import OpenRouterProvider
from parley.metrics.pricing import PricingCache
from parley.orchestrator.collaborators import ResolvedKeys
from parley.orchestrator.core import TurnOrchestrator, TurnRequest
from parley.storage.store import ChatStore

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


class UnauthenticatedError(Exception):
    pass


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class StopBody(BaseModel):
    thread_id: str | None = Field(default=None, alias="threadId")
    message: dict | None = None


class TruncateBody(BaseModel):
    keep_count: int = Field(alias="keepCount", ge=0)


class DeleteAttachmentsBody(BaseModel):
    ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_store(request: Request) -> ChatStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> TurnOrchestrator:
    return request.app.state.orchestrator


def get_current_user(request: Request) -> str:
    header = request.app.state.config.server.user_header
    user_id = request.headers.get(header, "").strip()
    if not user_id:
        raise UnauthenticatedError()
    return user_id


async def watch_disconnect(request: Request, abort: asyncio.Event, interval: float = 0.5) -> None:
    """Set *abort* once the client goes away so in-flight tool calls give up."""
    while not abort.is_set():
        if await request.is_disconnected():
            logger.info("Client disconnected; aborting turn")
            abort.set()
            return
        await asyncio.sleep(interval)


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def default_provider_factory(config: ParleyConfig) -> Callable[[str], Provider]:
    llm = config.llm

    def factory(api_key: str) -> Provider:
        return OpenRouterProvider(
            api_key,
            url=llm.api_base,
            timeout=llm.timeout_seconds,
            max_retries=llm.max_retries,
            app_name=llm.app_name,
            app_url=llm.app_url,
        )

    return factory


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: ParleyConfig | None = None,
    provider_factory: Callable[[str], Provider] | None = None,
    store: ChatStore | None = None,
    pricing: PricingCache | None = None,
    search_transport=None,
) -> FastAPI:
    """
    Build the app.  *store* is opened and closed with the app's lifespan;
    when omitted one is created from ``config.storage``.
    """
    config = config or ParleyConfig()

    if store is None:
        store = ChatStore(
            config.storage.db_path,
            config.storage.files_dir,
            server_keys=ResolvedKeys(
                openrouter=os.environ.get(config.llm.api_key_env) or None,
                parallel=os.environ.get(config.search.api_key_env) or None,
            ),
        )
    if pricing is None:
        pricing = PricingCache(
            config.pricing.models_url,
            ttl_seconds=config.pricing.ttl_seconds,
            timeout=config.pricing.timeout_seconds,
        )
    orchestrator = TurnOrchestrator(
        threads=store,
        settings=store,
        attachments=store,
        provider_factory=provider_factory or default_provider_factory(config),
        pricing=pricing,
        config=config,
        search_transport=search_transport,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.init()
        logger.info("parley %s serving, db=%s", __version__, store.db_path)
        try:
            yield
        finally:
            await store.close()

    app = FastAPI(title="Parley API", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.orchestrator = orchestrator

    if config.server.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.server.cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(TurnRejectedError)
    async def _turn_rejected(request: Request, exc: TurnRejectedError) -> JSONResponse:
        return _error(exc.status_code, exc.message)

    @app.exception_handler(UnauthenticatedError)
    async def _unauthenticated(request: Request, exc: UnauthenticatedError) -> JSONResponse:
        return _error(401, "Unauthorized")

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    @app.post("/api/chat")
    async def chat(
        request: Request,
        user_id: str = Depends(get_current_user),
        orchestrator: TurnOrchestrator = Depends(get_orchestrator),
    ):
        try:
            turn = TurnRequest.from_dict(await request.json())
        except (ValueError, KeyError) as exc:
            return _error(400, f"Invalid request: {exc}")

        abort = asyncio.Event()
        events = await orchestrator.handle_turn(user_id, turn, abort=abort)

        async def event_stream() -> AsyncIterator[str]:
            watcher = asyncio.create_task(watch_disconnect(request, abort))
            try:
                async for event in events:
                    yield encode_sse(event)
                yield encode_sse(DONE_SENTINEL)
            finally:
                abort.set()
                watcher.cancel()

        return StreamingResponse(
            event_stream(), media_type="text/event-stream", headers=SSE_HEADERS
        )

    @app.post("/api/chat/stop")
    async def stop(
        body: StopBody,
        user_id: str = Depends(get_current_user),
        store: ChatStore = Depends(get_store),
    ):
        if not body.thread_id or not body.message:
            return _error(400, "Missing threadId or message")
        try:
            message = Message.from_dict(body.message)
        except (ValueError, KeyError) as exc:
            return _error(400, f"Invalid message: {exc}")

        status = await store.ensure_thread_exists(body.thread_id, user_id)
        if not status.owned:
            return _error(403, "Thread not found or unauthorized")

        message.stopped_by_user = True
        await store.save_message(body.thread_id, user_id, message)
        logger.info("Saved stopped message %s in %s", message.id, body.thread_id)
        return {"success": True}

    # ------------------------------------------------------------------
    # Threads
    # ------------------------------------------------------------------

    @app.get("/api/threads")
    async def list_threads(
        user_id: str = Depends(get_current_user),
        store: ChatStore = Depends(get_store),
    ):
        return {"threads": await store.list_threads(user_id)}

    @app.get("/api/threads/{thread_id}/messages")
    async def thread_messages(
        thread_id: str,
        user_id: str = Depends(get_current_user),
        store: ChatStore = Depends(get_store),
    ):
        if await store.get_thread(thread_id, user_id) is None:
            return _error(404, "Thread not found")
        messages = await store.get_messages(thread_id, user_id)
        return {"messages": [m.to_dict() for m in messages]}

    @app.post("/api/threads/{thread_id}/truncate")
    async def truncate(
        thread_id: str,
        body: TruncateBody,
        user_id: str = Depends(get_current_user),
        store: ChatStore = Depends(get_store),
    ):
        if await store.get_thread(thread_id, user_id) is None:
            return _error(404, "Thread not found")
        deleted = await store.truncate_thread_messages(thread_id, user_id, body.keep_count)
        return {"deleted": deleted}

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    @app.post("/api/attachments/delete")
    async def delete_attachments(
        body: DeleteAttachmentsBody,
        user_id: str = Depends(get_current_user),
        store: ChatStore = Depends(get_store),
    ):
        return {"deleted": await store.delete_attachments(user_id, body.ids)}

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "version": __version__}

    return app
