"""
OpenRouter chat-completion provider.

Speaks the OpenAI ``/chat/completions`` wire protocol with OpenRouter's
extensions: streamed ``reasoning`` deltas, ``url_citation`` annotations,
``usage: {include: true}`` accounting, and request-level ``plugins``.

Dependencies: ``httpx`` (async HTTP client).
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator

import httpx

from parley.errors import ProviderAPIError, ProviderRetryError
from parley.llm.providers.base import Provider
from parley.llm.types import ModelMessage, RawToolDelta, SourceRef, StreamChunk, Usage

logger = logging.getLogger(__name__)

OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"


class OpenRouterProvider(Provider):
    """
    Stream-capable provider for OpenRouter.

    Parameters
    ----------
    api_key:
        The user's OpenRouter key (browser-supplied or stored server-side).
    url:
        Base URL of the API.
    timeout:
        HTTP request timeout in seconds.
    max_retries:
        Number of automatic retries on transient HTTP errors (5xx, 429).
        Retries only happen before the first chunk has been yielded.
    app_name, app_url:
        Sent as ``X-Title`` / ``HTTP-Referer`` for OpenRouter attribution.
    transport:
        Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        api_key: str,
        url: str = OPENROUTER_API_BASE,
        timeout: float = 120.0,
        max_retries: int = 2,
        app_name: str = "parley",
        app_url: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._app_name = app_name
        self._app_url = app_url
        self._transport = transport

    # ------------------------------------------------------------------
    # Provider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "openrouter"

    async def stream_step(
        self,
        model_id: str,
        messages: list[ModelMessage],
        tools: list[dict] | None = None,
        options: dict | None = None,
    ) -> AsyncIterator[StreamChunk]:
        body = self._build_body(model_id, messages, tools, stream=True, options=options)
        async for chunk in self._stream_request(body):
            yield chunk

    async def complete(
        self,
        model_id: str,
        system: str,
        messages: list[ModelMessage],
    ) -> str:
        wire = [ModelMessage(role="system", content=system)] + list(messages)
        body = self._build_body(model_id, wire, None, stream=False)
        data = await self._sync_request(body)
        choices = data.get("choices") or []
        if not choices:
            return ""
        return (choices[0].get("message") or {}).get("content") or ""

    # ------------------------------------------------------------------
    # Request building
    # ------------------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _build_headers(self, stream: bool) -> dict[str, str]:
        headers: dict[str, str] = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            "X-Title": self._app_name,
        }
        if stream:
            headers["Accept"] = "text/event-stream"
        if self._app_url:
            headers["HTTP-Referer"] = self._app_url
        return headers

    @staticmethod
    def _wire_message(msg: ModelMessage) -> dict:
        m: dict = {"role": msg.role, "content": msg.content}
        if msg.tool_calls:
            m["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": json.dumps(tc.arguments),
                    },
                }
                for tc in msg.tool_calls
            ]
        if msg.tool_call_id:
            m["tool_call_id"] = msg.tool_call_id
        return m

    def _build_body(
        self,
        model_id: str,
        messages: list[ModelMessage],
        tools: list[dict] | None,
        stream: bool,
        options: dict | None = None,
    ) -> dict:
        body: dict = {
            "model": model_id,
            "messages": [self._wire_message(m) for m in messages],
            "stream": stream,
            "usage": {"include": True},
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = "auto"
        if options:
            body.update(options)
        logger.info(
            "REQUEST: model=%s tools=%d messages=%d api_key=%s...",
            model_id,
            len(tools) if tools else 0,
            len(messages),
            self._api_key[:8] if self._api_key else "(none)",
        )
        return body

    # ------------------------------------------------------------------
    # Streaming request
    # ------------------------------------------------------------------

    async def _stream_request(self, body: dict) -> AsyncIterator[StreamChunk]:
        url = f"{self._url}/chat/completions"
        headers = self._build_headers(stream=True)

        last_error: Exception | None = None
        attempts = 0
        for attempt in range(1 + self._max_retries):
            attempts = attempt + 1
            started = False
            try:
                async with self._client() as client:
                    async with client.stream(
                        "POST", url, json=body, headers=headers
                    ) as response:
                        if response.status_code >= 400:
                            raw = (await response.aread()).decode("utf-8", errors="replace")
                            error = ProviderAPIError(response.status_code, raw)
                            if response.status_code == 429 or response.status_code >= 500:
                                last_error = error
                                logger.warning(
                                    "Retryable provider status %d (attempt %d)",
                                    response.status_code,
                                    attempts,
                                )
                                continue
                            raise error

                        async for chunk in self._parse_sse_stream(response):
                            started = True
                            yield chunk
                        return
            except httpx.TransportError as exc:
                if started:
                    raise
                last_error = exc
                logger.warning("Provider transport error (attempt %d): %s", attempts, exc)

        assert last_error is not None
        raise ProviderRetryError(last_error, attempts)

    async def _parse_sse_stream(
        self, response: httpx.Response
    ) -> AsyncIterator[StreamChunk]:
        """
        Parse Server-Sent Events from the response line stream.

        Each event is ``data: {json}``; ``data: [DONE]`` ends the stream.
        Lines starting with ``:`` are OpenRouter keep-alive comments.
        """
        async for line in response.aiter_lines():
            line = line.rstrip("\r")
            if not line or line.startswith(":") or not line.startswith("data:"):
                continue

            data_str = line[len("data:"):].strip()
            if data_str == "[DONE]":
                yield StreamChunk(done=True)
                return

            try:
                data = json.loads(data_str)
            except json.JSONDecodeError:
                logger.warning("Failed to parse SSE data: %s", data_str[:200])
                continue

            if isinstance(data.get("error"), dict):
                # Mid-stream failure reported in-band.
                raise ProviderAPIError(
                    int(data["error"].get("code") or 500), json.dumps(data)
                )

            chunk = self._sse_data_to_chunk(data)
            if chunk is not None:
                yield chunk

        yield StreamChunk(done=True)

    @staticmethod
    def _parse_usage(raw: dict | None) -> Usage | None:
        if not raw:
            return None
        return Usage(
            input_tokens=int(raw.get("prompt_tokens") or 0),
            output_tokens=int(raw.get("completion_tokens") or 0),
        )

    def _sse_data_to_chunk(self, data: dict) -> StreamChunk | None:
        """Convert a parsed SSE ``data`` payload into a ``StreamChunk``."""
        usage = self._parse_usage(data.get("usage"))
        choices = data.get("choices")
        if not choices:
            return StreamChunk(usage=usage) if usage else None

        choice = choices[0]
        delta = choice.get("delta") or {}

        tool_deltas: list[RawToolDelta] | None = None
        for raw_tc in delta.get("tool_calls") or []:
            func = raw_tc.get("function") or {}
            tool_deltas = tool_deltas or []
            tool_deltas.append(
                RawToolDelta(
                    call_index=raw_tc.get("index", 0),
                    id=raw_tc.get("id"),
                    name_delta=func.get("name") or "",
                    args_delta=func.get("arguments") or "",
                )
            )

        sources: list[SourceRef] | None = None
        for ann in delta.get("annotations") or []:
            if ann.get("type") != "url_citation":
                continue
            cite = ann.get("url_citation") or {}
            if cite.get("url"):
                sources = sources or []
                sources.append(SourceRef(url=cite["url"], title=cite.get("title")))

        return StreamChunk(
            delta=delta.get("content") or "",
            reasoning_delta=delta.get("reasoning") or "",
            tool_deltas=tool_deltas,
            sources=sources,
            usage=usage,
            finish_reason=choice.get("finish_reason"),
        )

    # ------------------------------------------------------------------
    # Non-streaming request
    # ------------------------------------------------------------------

    async def _sync_request(self, body: dict) -> dict:
        url = f"{self._url}/chat/completions"
        headers = self._build_headers(stream=False)

        last_error: Exception | None = None
        attempts = 0
        for attempt in range(1 + self._max_retries):
            attempts = attempt + 1
            try:
                async with self._client() as client:
                    resp = await client.post(url, json=body, headers=headers)
            except httpx.TransportError as exc:
                last_error = exc
                continue

            if resp.status_code >= 400:
                error = ProviderAPIError(resp.status_code, resp.text)
                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = error
                    continue
                raise error
            return resp.json()

        assert last_error is not None
        raise ProviderRetryError(last_error, attempts)
