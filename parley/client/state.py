"""
Client-side conversation state and the stop / regenerate / edit protocols.

Every protocol finishes with the local message list and the server's stored
list describing the same prefix of the conversation.  Server truncation runs
first; if it fails, local state is left untouched and ``ReconcileError`` is
raised.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from parley.background import spawn_background
from parley.chat.wire import MessageBuilder
from parley.errors import ChatRequestError, ReconcileError
from parley.client.transport import ChatTransport, TurnContext, build_turn_request
from parley.llm.parts import FilePart, Message, TextPart, has_renderable_content

logger = logging.getLogger(__name__)


class MessageStatus:
    ACTIVE = "active"
    STOPPED = "stopped"
    FINALIZED = "finalized"


@dataclass
class StoppedMessageInfo:
    message_id: str
    model_id: str | None


@dataclass
class EditPayload:
    """
    Parameters
    ----------
    text : str
        Replacement text for the edited message.
    kept_files : list[FilePart]
        Attachments of the original message that stay.
    new_files : list[FilePart]
        Attachments added while editing.
    removed_attachment_ids : list[str]
        Stored attachments dropped while editing; deleted server-side.
    """

    text: str
    kept_files: list[FilePart] = field(default_factory=list)
    new_files: list[FilePart] = field(default_factory=list)
    removed_attachment_ids: list[str] = field(default_factory=list)


def _new_id() -> str:
    return uuid.uuid4().hex


class ConversationState:
    """
    Parameters
    ----------
    thread_id : str | None
        Server thread; ``None`` for an unsaved conversation.
    transport : ChatTransport
        Server calls.
    context : TurnContext
        Ambient toggles, read when each request is built.
    messages : list[Message]
        Initial history, e.g. loaded from the server.
    on_event : callable, optional
        Called with each wire event after it is applied, e.g. to render it.
    """

    def __init__(
        self,
        thread_id: str | None,
        transport: ChatTransport,
        context: TurnContext | None = None,
        messages: list[Message] | None = None,
        on_event: Callable[[dict], None] | None = None,
    ) -> None:
        self.thread_id = thread_id
        self.transport = transport
        self.context = context or TurnContext()
        self.messages: list[Message] = list(messages or [])
        self.stopped: dict[str, StoppedMessageInfo] = {
            m.id: StoppedMessageInfo(m.id, m.stopped_model_id)
            for m in self.messages
            if m.stopped_by_user
        }
        self.on_event = on_event
        self.last_error: str | None = None
        self._stream_task: asyncio.Task | None = None
        self._builder: MessageBuilder | None = None

    @classmethod
    async def load(
        cls,
        transport: ChatTransport,
        thread_id: str,
        context: TurnContext | None = None,
        on_event: Callable[[dict], None] | None = None,
    ) -> ConversationState:
        messages = await transport.get_messages(thread_id)
        return cls(thread_id, transport, context, messages, on_event=on_event)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def is_streaming(self) -> bool:
        return self._stream_task is not None and not self._stream_task.done()

    def status_of(self, message_id: str) -> str | None:
        message = self._find(message_id)
        if message is None:
            return None
        if message_id in self.stopped:
            return MessageStatus.STOPPED
        if message.metadata is not None:
            return MessageStatus.FINALIZED
        return MessageStatus.ACTIVE

    def _find(self, message_id: str) -> Message | None:
        index = self._index_of(message_id)
        return self.messages[index] if index is not None else None

    def _index_of(self, message_id: str) -> int | None:
        for i, message in enumerate(self.messages):
            if message.id == message_id:
                return i
        return None

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send(self, text: str, files: list[FilePart] | None = None) -> Message | None:
        """Append a user message carrying the current toggles and stream the reply."""
        if self.is_streaming:
            raise ReconcileError("A turn is already streaming")
        parts: list = list(files or [])
        if text:
            parts.append(TextPart(text=text))
        user = Message(
            id=_new_id(),
            role="user",
            parts=parts,
            search_enabled=self.context.search_enabled,
            reasoning_level=self.context.reasoning_level,
            model_id=self.context.model_id,
        )
        self.messages.append(user)
        try:
            return await self._run_turn(is_regeneration=False)
        except ChatRequestError:
            # Rejected before the server stored anything.
            self._discard(user)
            raise

    async def _run_turn(self, is_regeneration: bool) -> Message | None:
        if self.is_streaming:
            raise ReconcileError("A turn is already streaming")
        request = build_turn_request(
            self.thread_id, self.messages, self.context, is_regeneration=is_regeneration
        )
        assistant = Message(id=_new_id(), role="assistant")
        self.messages.append(assistant)
        self._builder = MessageBuilder(assistant)
        self.last_error = None

        task = asyncio.get_running_loop().create_task(self._consume(request, self._builder))
        self._stream_task = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._stream_task = None

        if task.cancelled():
            # Stopped by the user; the partial message stays.
            return assistant

        exc = task.exception()
        if exc is not None:
            self._discard(assistant)
            if isinstance(exc, ChatRequestError):
                self.last_error = exc.message
            raise exc

        if self._builder.error is not None:
            self.last_error = self._builder.error
            if not has_renderable_content(assistant):
                self._discard(assistant)
                return None
        return assistant

    async def _consume(self, request, builder: MessageBuilder) -> None:
        async for event in self.transport.stream_turn(request):
            builder.apply(event)
            if self.on_event is not None:
                self.on_event(event)

    def _discard(self, message: Message) -> None:
        self.messages = [m for m in self.messages if m is not message]

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def _stop_target(self) -> Message | None:
        last_user = None
        for i in range(len(self.messages) - 1, -1, -1):
            if self.messages[i].role == "user":
                last_user = i
                break
        start = 0 if last_user is None else last_user + 1
        for message in self.messages[start:]:
            if message.role == "assistant" and message.id not in self.stopped:
                return message
        return None

    def stop(self) -> StoppedMessageInfo | None:
        """
        Mark the in-flight assistant message stopped and abort its stream.

        Persisting the partial message is fired in the background and its
        failure is only logged.  Calling ``stop`` again is a no-op.
        """
        target = self._stop_target()
        info = None
        if target is not None:
            info = StoppedMessageInfo(target.id, self.context.model_id)
            self.stopped[target.id] = info
            target.stopped_by_user = True
            target.stopped_model_id = self.context.model_id
            if self._builder is not None and self._builder.message is target:
                self._builder.close_open_parts()
            if self.thread_id:
                snapshot = Message.from_dict(target.to_dict())
                spawn_background(
                    self._persist_stopped(self.thread_id, snapshot),
                    name=f"stop:{target.id}",
                )
            logger.info("Stopped message %s", target.id)

        if self.is_streaming:
            self._stream_task.cancel()
        return info

    async def _persist_stopped(self, thread_id: str, message: Message) -> None:
        try:
            await self.transport.persist_stopped(thread_id, message)
        except Exception as exc:
            logger.warning("Could not persist stopped message %s: %s", message.id, exc)

    # ------------------------------------------------------------------
    # Regenerate / edit
    # ------------------------------------------------------------------

    async def _truncate_server(self, index: int) -> None:
        if not self.thread_id:
            return
        try:
            await self.transport.truncate(self.thread_id, index)
        except Exception as exc:
            raise ReconcileError(f"Failed to truncate thread at {index}: {exc}") from exc

    def _truncate_local(self, index: int) -> Message:
        target = self.messages[index]
        for message in self.messages[index:]:
            self.stopped.pop(message.id, None)
        del self.messages[index:]
        return target

    async def regenerate(self, message_id: str) -> Message | None:
        """Replace an assistant message and everything after it with a new answer."""
        index = self._index_of(message_id)
        if index is None or self.messages[index].role != "assistant":
            return None
        if self.is_streaming:
            raise ReconcileError("Stop the current turn before regenerating")

        await self._truncate_server(index)
        self._truncate_local(index)
        logger.info("Regenerating from position %d", index)
        return await self._run_turn(is_regeneration=True)

    async def edit(self, message_id: str, payload: EditPayload) -> Message | None:
        """Rewrite a user message and resend it; a no-op for anything but a user message."""
        index = self._index_of(message_id)
        if index is None or self.messages[index].role != "user":
            return None
        if self.is_streaming:
            raise ReconcileError("Stop the current turn before editing")

        await self._truncate_server(index)
        if payload.removed_attachment_ids:
            try:
                await self.transport.delete_attachments(payload.removed_attachment_ids)
            except Exception as exc:
                logger.warning("Could not delete removed attachments: %s", exc)

        original = self._truncate_local(index)
        if original.search_enabled is not None:
            self.context.search_enabled = original.search_enabled
        if original.reasoning_level is not None:
            self.context.reasoning_level = original.reasoning_level
        if original.model_id is not None:
            self.context.model_id = original.model_id

        return await self.send(payload.text, payload.kept_files + payload.new_files)
