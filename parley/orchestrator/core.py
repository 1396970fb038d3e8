"""
Turn orchestrator -- runs one chat turn from request to persisted answer.

The orchestrator:
1. Resolves the model, thread ownership, settings and API keys
2. Rejects the turn early (403/400) when it cannot run
3. Persists the trailing user message (best-effort)
4. Builds the tool set, system prompt and provider options
5. Streams the model's tool-calling loop as wire events
6. Persists the finished assistant message with its metadata
7. Names the thread in the background on its first message
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from parley.background import spawn_background
from parley.chat.attachments import inline_text_files
from parley.chat.options import (
    PDF_ENGINE_OCR,
    has_pdf_attachment,
    merge_options,
    pdf_plugin_config,
    pdf_storage_paths,
    reasoning_config,
)
from parley.chat.processor import StreamChunkProcessor
from parley.chat.session import StreamSession
from parley.chat.thread_meta import generate_thread_icon, generate_thread_title
from parley.chat.wire import (
    MessageBuilder,
    error_event,
    event_to_wire,
    finish_event,
    start_event,
)
from parley.config import ParleyConfig
from parley.errors import (
    MissingApiKeyError,
    MissingSearchKeyError,
    ThreadAccessError,
    format_provider_error,
)
from parley.llm.convert import to_model_messages
from parley.llm.parts import (
    FilePart,
    Message,
    has_renderable_content,
    is_text_file,
    message_text,
)
from parley.llm.providers.base import Provider
from parley.llm.stream import stream_text
from parley.llm.types import Finish
from parley.metrics.pricing import PricingCache
from parley.orchestrator.collaborators import (
    AttachmentStore,
    ResolvedKeys,
    SettingsStore,
    ThreadStatus,
    ThreadStore,
    UserSettings,
)
from parley.prompts.system import build_system_prompt
from parley.tools.handoff import HandoffTool
from parley.tools.registry import ToolRegistry
from parley.tools.search import ExtractTool, SearchTool

logger = logging.getLogger(__name__)


@dataclass
class TurnRequest:
    """Body of ``POST /api/chat``."""

    messages: list[Message]
    thread_id: str | None = None
    openrouter_client_key: str | None = None
    parallel_client_key: str | None = None
    search_enabled: bool = False
    reasoning_level: str | None = None
    model_id: str | None = None
    supports_native_pdf: bool = False
    supports_tools: bool = False
    is_regeneration: bool = False
    model_pricing: dict | None = field(default=None)

    @classmethod
    def from_dict(cls, data: dict) -> TurnRequest:
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object")
        raw_messages = data.get("messages")
        if not isinstance(raw_messages, list) or not raw_messages:
            raise ValueError("'messages' must be a non-empty list")
        return cls(
            messages=[Message.from_dict(m) for m in raw_messages],
            thread_id=data.get("threadId") or None,
            openrouter_client_key=data.get("openrouterClientKey") or None,
            parallel_client_key=data.get("parallelClientKey") or None,
            search_enabled=bool(data.get("searchEnabled", False)),
            reasoning_level=data.get("reasoningLevel"),
            model_id=data.get("modelId") or None,
            supports_native_pdf=bool(data.get("supportsNativePdf", False)),
            supports_tools=bool(data.get("supportsTools", False)),
            is_regeneration=bool(data.get("isRegeneration", False)),
            model_pricing=data.get("modelPricing"),
        )

    def to_dict(self) -> dict:
        d: dict = {
            "messages": [m.to_dict() for m in self.messages],
            "searchEnabled": self.search_enabled,
            "supportsNativePdf": self.supports_native_pdf,
            "supportsTools": self.supports_tools,
            "isRegeneration": self.is_regeneration,
        }
        optional = {
            "threadId": self.thread_id,
            "openrouterClientKey": self.openrouter_client_key,
            "parallelClientKey": self.parallel_client_key,
            "reasoningLevel": self.reasoning_level,
            "modelId": self.model_id,
            "modelPricing": self.model_pricing,
        }
        d.update({k: v for k, v in optional.items() if v is not None})
        return d


@dataclass
class _Turn:
    """Everything resolved before the first byte is streamed."""

    user_id: str
    request: TurnRequest
    model_id: str
    settings: UserSettings
    keys: ResolvedKeys
    provider: Provider
    abort: asyncio.Event | None = None


class TurnOrchestrator:
    """
    Parameters
    ----------
    threads : ThreadStore
        Thread ownership, message persistence and thread metadata.
    settings : SettingsStore
        User preferences and stored API keys.
    attachments : AttachmentStore
        Uploaded file lookup and PDF page counts.
    provider_factory : callable
        Builds a provider from the resolved API key.
    pricing : PricingCache
        Token price lookup.
    config : ParleyConfig
        Model defaults, step limit and search endpoint.
    search_transport : httpx transport, optional
        Passed to the search tools; tests stub the search API with it.
    clock : callable
        Monotonic time source for latency metrics.
    """

    def __init__(
        self,
        threads: ThreadStore,
        settings: SettingsStore,
        attachments: AttachmentStore,
        provider_factory: Callable[[str], Provider],
        pricing: PricingCache,
        config: ParleyConfig | None = None,
        search_transport=None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threads = threads
        self.settings = settings
        self.attachments = attachments
        self.provider_factory = provider_factory
        self.pricing = pricing
        self.config = config or ParleyConfig()
        self._search_transport = search_transport
        self._clock = clock

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_turn(
        self,
        user_id: str,
        request: TurnRequest,
        abort: asyncio.Event | None = None,
    ) -> AsyncIterator[dict]:
        """
        Validate a turn and return its wire-event stream.

        Raises ``TurnRejectedError`` subclasses before anything streams;
        once the iterator is returned, failures arrive as ``error`` events.
        """
        model_id = request.model_id or self.config.llm.default_model

        status, user_settings, keys = await asyncio.gather(
            self._check_thread(request.thread_id, user_id),
            self.settings.get_settings(user_id),
            self.settings.resolve_keys(
                user_id, request.openrouter_client_key, request.parallel_client_key
            ),
        )

        if status is not None and status.exists and not status.owned:
            logger.warning("User %s denied access to thread %s", user_id, request.thread_id)
            raise ThreadAccessError()
        if not keys.openrouter:
            raise MissingApiKeyError()
        if request.search_enabled and not keys.parallel:
            raise MissingSearchKeyError()

        last = request.messages[-1]
        if request.thread_id and not request.is_regeneration and last.role == "user":
            await self._save_user_message(request.thread_id, user_id, last, request, model_id)

        provider = self.provider_factory(keys.openrouter)
        turn = _Turn(
            user_id=user_id,
            request=request,
            model_id=model_id,
            settings=user_settings,
            keys=keys,
            provider=provider,
            abort=abort,
        )
        self._spawn_thread_naming(turn)
        return self._stream(turn)

    async def _check_thread(self, thread_id: str | None, user_id: str) -> ThreadStatus | None:
        if not thread_id:
            return None
        return await self.threads.ensure_thread_exists(thread_id, user_id)

    async def _save_user_message(
        self,
        thread_id: str,
        user_id: str,
        message: Message,
        request: TurnRequest,
        model_id: str,
    ) -> None:
        if message.search_enabled is None:
            message.search_enabled = request.search_enabled
        if message.reasoning_level is None:
            message.reasoning_level = request.reasoning_level
        if message.model_id is None:
            message.model_id = model_id
        try:
            await self.threads.save_message(thread_id, user_id, message)
        except Exception:
            logger.exception("Failed to save user message %s", message.id)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def _stream(self, turn: _Turn) -> AsyncIterator[dict]:
        request = turn.request
        session = StreamSession(thread_id=request.thread_id, start_time=self._clock())
        rates = await self.pricing.get_token_rates(turn.model_id, request.model_pricing)
        processor = StreamChunkProcessor(session, turn.model_id, rates, clock=self._clock)

        messages = request.messages
        if any(isinstance(p, FilePart) and is_text_file(p) for m in messages for p in m.parts):
            messages = await inline_text_files(messages, turn.user_id, self.attachments)

        pdf_options = pdf_plugin_config(
            has_pdf_attachment(messages),
            request.supports_native_pdf,
            turn.settings.use_ocr_for_pdfs,
        )
        if pdf_options and pdf_options["plugins"][0]["pdf"]["engine"] == PDF_ENGINE_OCR:
            session.ocr_page_count = await self._ocr_page_count(messages)
        options = merge_options(pdf_options, reasoning_config(request.reasoning_level))

        registry = self._build_tools(turn)
        offered = registry if request.supports_tools and len(registry) else None
        system = build_system_prompt(
            turn.settings.custom_instructions,
            registry.names if offered else None,
        )

        assistant = Message(id=uuid.uuid4().hex, role="assistant")
        builder = MessageBuilder(assistant)

        wire = start_event(assistant.id)
        builder.apply(wire)
        yield wire

        logger.info(
            "Turn start: thread=%s model=%s tools=%s options=%s",
            request.thread_id,
            turn.model_id,
            registry.names if offered else [],
            sorted(options) if options else [],
        )
        try:
            async for event in stream_text(
                turn.provider,
                turn.model_id,
                to_model_messages(messages),
                system=system,
                tools=offered,
                options=options,
                max_steps=self.config.llm.max_steps,
                abort=turn.abort,
            ):
                metadata = processor.process(event)
                if isinstance(event, Finish):
                    wire = finish_event(metadata.to_dict() if metadata else None)
                    builder.apply(wire)
                    await self._save_assistant_message(turn, assistant)
                else:
                    wire = event_to_wire(event)
                    builder.apply(wire)
                yield wire
        except asyncio.CancelledError:
            logger.info("Turn cancelled: thread=%s", request.thread_id)
            raise
        except Exception as exc:
            logger.exception("Turn failed: thread=%s model=%s", request.thread_id, turn.model_id)
            wire = error_event(format_provider_error(exc))
            builder.apply(wire)
            if has_renderable_content(assistant):
                # The client keeps a partial answer; store it so both sides hold the same prefix.
                builder.close_open_parts()
                await self._save_assistant_message(turn, assistant)
            yield wire

    async def _ocr_page_count(self, messages: list[Message]) -> int | None:
        paths = pdf_storage_paths(messages)
        if not paths:
            return None
        try:
            counts = await self.attachments.get_pdf_page_counts(paths)
        except Exception:
            logger.exception("PDF page count lookup failed")
            return None
        return sum(counts.values())

    async def _save_assistant_message(self, turn: _Turn, message: Message) -> None:
        thread_id = turn.request.thread_id
        if not thread_id:
            return
        try:
            await self.threads.save_message(thread_id, turn.user_id, message)
        except Exception:
            logger.exception("Failed to save assistant message %s", message.id)

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def _build_tools(self, turn: _Turn) -> ToolRegistry:
        request = turn.request
        registry = ToolRegistry()
        if request.search_enabled and turn.keys.parallel:
            search_cfg = self.config.search
            for tool_cls in (SearchTool, ExtractTool):
                registry.register(
                    tool_cls(
                        turn.keys.parallel,
                        base_url=search_cfg.api_base,
                        timeout=search_cfg.timeout_seconds,
                        transport=self._search_transport,
                    )
                )
        if request.thread_id:
            registry.register(
                HandoffTool(
                    turn.provider,
                    self.threads,
                    turn.user_id,
                    request.thread_id,
                    request.messages,
                    model_id=self.config.llm.handoff_model,
                )
            )
        return registry

    # ------------------------------------------------------------------
    # Thread naming
    # ------------------------------------------------------------------

    def _spawn_thread_naming(self, turn: _Turn) -> None:
        request = turn.request
        if not request.thread_id or request.is_regeneration:
            return
        if len(request.messages) != 1 or request.messages[0].role != "user":
            return
        text = message_text(request.messages[0])
        if not text.strip():
            return
        if turn.settings.auto_thread_naming:
            spawn_background(
                self._name_thread(turn, text), name=f"title:{request.thread_id}"
            )
        if turn.settings.auto_thread_icon:
            spawn_background(
                self._icon_thread(turn, text), name=f"icon:{request.thread_id}"
            )

    async def _name_thread(self, turn: _Turn, text: str) -> None:
        title = await generate_thread_title(turn.provider, text, self.config.llm.title_model)
        await self.threads.rename_thread(turn.request.thread_id, turn.user_id, title)
        logger.info("Named thread %s: %s", turn.request.thread_id, title)

    async def _icon_thread(self, turn: _Turn, text: str) -> None:
        icon = await generate_thread_icon(turn.provider, text, self.config.llm.title_model)
        await self.threads.update_thread_icon(turn.request.thread_id, turn.user_id, icon)
