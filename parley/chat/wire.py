"""
Wire protocol between the chat server and its clients.

Each turn event is one server-sent event ``data: {json}``; the stream ends
with ``data: [DONE]``.  ``MessageBuilder`` applies events to an assistant
``Message`` one at a time; the server uses it to build what it persists and
the client uses it to build what it shows, so both sides see the same parts.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterator, Iterable

from parley.llm.parts import (
    PART_STATE_DONE,
    PART_STATE_STREAMING,
    Message,
    ReasoningPart,
    SourcePart,
    TextPart,
    ToolCallPart,
)
from parley.llm.types import (
    Finish,
    FinishStep,
    ReasoningDelta,
    ReasoningEnd,
    ReasoningStart,
    SourceEvent,
    StartStep,
    StreamEvent,
    TextDelta,
    TextEnd,
    TextStart,
    ToolCallEvent,
    ToolResultEvent,
)

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"


def event_to_wire(event: StreamEvent) -> dict:
    """Encode a turn event; ``Finish`` carries no metadata here, the caller adds it."""
    if isinstance(event, StartStep):
        return {"type": "start-step"}
    if isinstance(event, FinishStep):
        return {"type": "finish-step"}
    if isinstance(event, (TextStart, TextEnd, ReasoningStart, ReasoningEnd)):
        return {"type": event.type, "id": event.id}
    if isinstance(event, (TextDelta, ReasoningDelta)):
        return {"type": event.type, "id": event.id, "delta": event.delta}
    if isinstance(event, SourceEvent):
        return {
            "type": "source-url",
            "sourceId": event.source_id,
            "url": event.url,
            "title": event.title,
        }
    if isinstance(event, ToolCallEvent):
        return {
            "type": "tool-input-available",
            "toolCallId": event.tool_call_id,
            "toolName": event.tool_name,
            "input": event.input,
        }
    if isinstance(event, ToolResultEvent):
        return {
            "type": "tool-output-available",
            "toolCallId": event.tool_call_id,
            "output": event.output,
        }
    if isinstance(event, Finish):
        return {"type": "finish"}
    raise TypeError(f"Unsupported stream event: {type(event).__name__}")


def start_event(message_id: str) -> dict:
    return {"type": "start", "messageId": message_id}


def finish_event(metadata: dict | None) -> dict:
    event: dict = {"type": "finish"}
    if metadata is not None:
        event["messageMetadata"] = metadata
    return event


def error_event(text: str) -> dict:
    return {"type": "error", "errorText": text}


def encode_sse(event: dict | str) -> str:
    payload = event if isinstance(event, str) else json.dumps(event, separators=(",", ":"))
    return f"data: {payload}\n\n"


def parse_sse_line(line: str) -> dict | str | None:
    """Return the decoded payload of a ``data:`` line, ``DONE_SENTINEL``, or ``None``."""
    line = line.rstrip("\r")
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if data == DONE_SENTINEL:
        return DONE_SENTINEL
    try:
        decoded = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("Failed to parse SSE data: %s", data[:200])
        return None
    return decoded if isinstance(decoded, dict) else None


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[dict]:
    async for line in lines:
        payload = parse_sse_line(line)
        if payload == DONE_SENTINEL:
            return
        if isinstance(payload, dict):
            yield payload


def iter_sse_sync(lines: Iterable[str]) -> Iterable[dict]:
    for line in lines:
        payload = parse_sse_line(line)
        if payload == DONE_SENTINEL:
            return
        if isinstance(payload, dict):
            yield payload


class MessageBuilder:
    """
    Applies wire events to an assistant message.

    Text and reasoning parts are appended once, at their start event, and
    grow by deltas.  Tool-call parts are appended pending and move to
    ``result`` when their output arrives.
    """

    def __init__(self, message: Message) -> None:
        self.message = message
        self.error: str | None = None
        self.finished = False
        self._text: dict[str, TextPart] = {}
        self._reasoning: dict[str, ReasoningPart] = {}
        self._tools: dict[str, ToolCallPart] = {}

    def apply(self, event: dict) -> None:
        etype = event.get("type")
        msg = self.message

        if etype == "start":
            if event.get("messageId"):
                msg.id = event["messageId"]
        elif etype == "text-start":
            part = TextPart()
            self._text[event["id"]] = part
            msg.parts.append(part)
        elif etype == "text-delta":
            part = self._text.get(event["id"])
            if part is None:
                part = TextPart()
                self._text[event["id"]] = part
                msg.parts.append(part)
            part.text += event.get("delta", "")
        elif etype == "reasoning-start":
            rpart = ReasoningPart(state=PART_STATE_STREAMING)
            self._reasoning[event["id"]] = rpart
            msg.parts.append(rpart)
        elif etype == "reasoning-delta":
            rpart = self._reasoning.get(event["id"])
            if rpart is not None:
                rpart.text += event.get("delta", "")
        elif etype == "reasoning-end":
            rpart = self._reasoning.get(event["id"])
            if rpart is not None:
                rpart.state = PART_STATE_DONE
        elif etype == "source-url":
            source_id = event.get("sourceId") or event.get("url")
            if not any(isinstance(p, SourcePart) and p.id == source_id for p in msg.parts):
                msg.parts.append(
                    SourcePart(id=source_id, url=event.get("url"), title=event.get("title"))
                )
        elif etype == "tool-input-available":
            tpart = ToolCallPart(
                tool_call_id=event["toolCallId"],
                tool_name=event["toolName"],
                input=event.get("input") or {},
            )
            self._tools[tpart.tool_call_id] = tpart
            msg.parts.append(tpart)
        elif etype == "tool-output-available":
            tpart = self._tools.get(event["toolCallId"])
            if tpart is None:
                logger.warning("Tool output for unknown call %s", event["toolCallId"])
            else:
                tpart.set_result(event.get("output") or {})
        elif etype == "finish":
            self.finished = True
            if event.get("messageMetadata") is not None:
                msg.metadata = event["messageMetadata"]
        elif etype == "error":
            self.error = event.get("errorText") or "Unknown error"
        # start-step, finish-step and text-end carry no part mutation.

    def close_open_parts(self) -> None:
        """Mark reasoning still streaming as done, e.g. after a stop."""
        for part in self._reasoning.values():
            part.state = PART_STATE_DONE
