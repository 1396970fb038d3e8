"""
HTTP transport for the chat client.

``TurnContext`` carries the toggles and capabilities the caller has in hand
when a turn is sent; ``build_turn_request`` turns it into the request body.
Nothing here reads process-wide state.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from parley.chat.wire import iter_sse
from parley.errors import ChatRequestError
from parley.llm.parts import Message
from parley.orchestrator.core import TurnRequest

logger = logging.getLogger(__name__)


@dataclass
class TurnContext:
    """
    Ambient toggles for the next turn.

    Parameters
    ----------
    search_enabled, reasoning_level, model_id :
        What the user has selected right now.
    openrouter_client_key, parallel_client_key :
        Keys held by the client, sent instead of the server's stored keys.
    supports_native_pdf, supports_tools, model_pricing :
        Capabilities of the selected model.
    """

    search_enabled: bool = False
    reasoning_level: str | None = None
    model_id: str | None = None
    openrouter_client_key: str | None = None
    parallel_client_key: str | None = None
    supports_native_pdf: bool = False
    supports_tools: bool = True
    model_pricing: dict | None = None


def build_turn_request(
    thread_id: str | None,
    messages: list[Message],
    context: TurnContext,
    is_regeneration: bool = False,
) -> TurnRequest:
    return TurnRequest(
        messages=list(messages),
        thread_id=thread_id,
        openrouter_client_key=context.openrouter_client_key,
        parallel_client_key=context.parallel_client_key,
        search_enabled=context.search_enabled,
        reasoning_level=context.reasoning_level,
        model_id=context.model_id,
        supports_native_pdf=context.supports_native_pdf,
        supports_tools=context.supports_tools,
        is_regeneration=is_regeneration,
        model_pricing=context.model_pricing,
    )


def _error_message(response: httpx.Response, body: bytes) -> str:
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return body.decode("utf-8", "replace") or response.reason_phrase
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return response.reason_phrase


class ChatTransport:
    """
    Parameters
    ----------
    base_url : str
        Chat server root, e.g. ``http://127.0.0.1:8000``.
    user_id : str
        Sent in *user_header* on every call.
    timeout : float
        Read timeout; streams may idle while the model thinks.
    transport : httpx.AsyncBaseTransport | None
        Optional transport, used by tests.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        user_header: str = "X-User-Id",
        timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {user_header: user_id}
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=httpx.Timeout(self._timeout, connect=10.0),
            transport=self._transport,
        )

    async def stream_turn(self, request: TurnRequest) -> AsyncIterator[dict]:
        """Post a turn and yield its wire events; raises ``ChatRequestError`` on rejection."""
        async with self._client() as client:
            async with client.stream("POST", "/api/chat", json=request.to_dict()) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise ChatRequestError(response.status_code, _error_message(response, body))
                async for event in iter_sse(response.aiter_lines()):
                    yield event

    async def _post(self, path: str, payload: dict) -> dict:
        async with self._client() as client:
            response = await client.post(path, json=payload)
        if response.status_code >= 300:
            raise ChatRequestError(response.status_code, _error_message(response, response.content))
        return response.json()

    async def _get(self, path: str) -> dict:
        async with self._client() as client:
            response = await client.get(path)
        if response.status_code >= 300:
            raise ChatRequestError(response.status_code, _error_message(response, response.content))
        return response.json()

    async def persist_stopped(self, thread_id: str, message: Message) -> None:
        await self._post("/api/chat/stop", {"threadId": thread_id, "message": message.to_dict()})

    async def truncate(self, thread_id: str, keep_count: int) -> int:
        data = await self._post(f"/api/threads/{thread_id}/truncate", {"keepCount": keep_count})
        return int(data.get("deleted", 0))

    async def delete_attachments(self, ids: list[str]) -> int:
        data = await self._post("/api/attachments/delete", {"ids": ids})
        return int(data.get("deleted", 0))

    async def list_threads(self) -> list[dict]:
        return (await self._get("/api/threads")).get("threads", [])

    async def get_messages(self, thread_id: str) -> list[Message]:
        data = await self._get(f"/api/threads/{thread_id}/messages")
        return [Message.from_dict(m) for m in data.get("messages", [])]
