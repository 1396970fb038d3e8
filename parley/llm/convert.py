"""Conversion from part-based conversation messages to provider messages."""

from __future__ import annotations

import json

from parley.llm.parts import FilePart, Message, TextPart, ToolCallPart, TOOL_STATE_RESULT
from parley.llm.types import ModelMessage, ToolCall


def _file_content(part: FilePart) -> dict:
    if part.media_type.startswith("image/"):
        return {"type": "image_url", "image_url": {"url": part.url}}
    return {
        "type": "file",
        "file": {"filename": part.filename or "file", "file_data": part.url},
    }


def _user_message(message: Message) -> ModelMessage | None:
    content: list[dict] = []
    for part in message.parts:
        if isinstance(part, TextPart) and part.text:
            content.append({"type": "text", "text": part.text})
        elif isinstance(part, FilePart):
            content.append(_file_content(part))
    if not content:
        return None
    if all(c["type"] == "text" for c in content):
        return ModelMessage(role="user", content="".join(c["text"] for c in content))
    return ModelMessage(role="user", content=content)


def _assistant_messages(message: Message) -> list[ModelMessage]:
    out: list[ModelMessage] = []
    text = ""
    calls: list[ToolCallPart] = []

    def flush() -> None:
        nonlocal text, calls
        if calls:
            out.append(
                ModelMessage(
                    role="assistant",
                    content=text or None,
                    tool_calls=[
                        ToolCall(id=c.tool_call_id, name=c.tool_name, arguments=c.input)
                        for c in calls
                    ],
                )
            )
            for c in calls:
                out.append(
                    ModelMessage(
                        role="tool",
                        content=json.dumps(c.output),
                        tool_call_id=c.tool_call_id,
                    )
                )
        elif text:
            out.append(ModelMessage(role="assistant", content=text))
        text = ""
        calls = []

    for part in message.parts:
        if isinstance(part, TextPart):
            if calls:
                flush()
            text += part.text
        elif isinstance(part, ToolCallPart) and part.state == TOOL_STATE_RESULT:
            # Calls cut off before their result cannot be replayed.
            calls.append(part)
    flush()
    return out


def to_model_messages(messages: list[Message]) -> list[ModelMessage]:
    """Reasoning and source parts are display-only and never sent back."""
    result: list[ModelMessage] = []
    for message in messages:
        if message.role == "user":
            converted = _user_message(message)
            if converted is not None:
                result.append(converted)
        elif message.role == "assistant":
            result.extend(_assistant_messages(message))
        elif message.role == "system":
            text = "".join(p.text for p in message.parts if isinstance(p, TextPart))
            if text:
                result.append(ModelMessage(role="system", content=text))
    return result
