"""
Message and part types shared by the server, the wire protocol and the client.

A message is an ordered list of parts.  ``Part`` is a closed union: code that
needs to branch on the kind of part uses the ``is_*`` predicates (or
``isinstance``) rather than inspecting loose dictionaries.  JSON conversion
uses the wire field names (camelCase).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Union

PART_STATE_STREAMING = "streaming"
PART_STATE_DONE = "done"
TOOL_STATE_PENDING = "pending"
TOOL_STATE_RESULT = "result"


@dataclass
class TextPart:
    text: str = ""

    def to_dict(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass
class ReasoningPart:
    text: str = ""
    state: str = PART_STATE_STREAMING

    def to_dict(self) -> dict:
        return {"type": "reasoning", "text": self.text, "state": self.state}


@dataclass
class FilePart:
    url: str
    media_type: str
    filename: str | None = None
    id: str | None = None
    storage_path: str | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "type": "file",
            "url": self.url,
            "mediaType": self.media_type,
        }
        if self.filename is not None:
            d["filename"] = self.filename
        if self.id is not None:
            d["id"] = self.id
        if self.storage_path is not None:
            d["storagePath"] = self.storage_path
        return d


@dataclass
class ToolCallPart:
    tool_call_id: str
    tool_name: str
    input: dict = field(default_factory=dict)
    state: str = TOOL_STATE_PENDING
    output: dict | None = None

    def set_result(self, output: dict) -> None:
        """The only state transition a part may make: ``pending -> result``."""
        if self.state == TOOL_STATE_RESULT:
            raise ValueError(f"Tool call {self.tool_call_id} already has a result")
        self.output = output
        self.state = TOOL_STATE_RESULT

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "type": "tool-call",
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "input": self.input,
            "state": self.state,
        }
        if self.output is not None:
            d["output"] = self.output
        return d


@dataclass
class SourcePart:
    id: str
    url: str | None = None
    title: str | None = None
    source_type: str = "url"

    def to_dict(self) -> dict:
        return {
            "type": "source",
            "id": self.id,
            "sourceType": self.source_type,
            "url": self.url,
            "title": self.title,
        }


Part = Union[TextPart, ReasoningPart, FilePart, ToolCallPart, SourcePart]


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def is_text(part: Part) -> bool:
    return isinstance(part, TextPart)


def is_reasoning(part: Part) -> bool:
    return isinstance(part, ReasoningPart)


def is_file(part: Part) -> bool:
    return isinstance(part, FilePart)


def is_tool_call(part: Part) -> bool:
    return isinstance(part, ToolCallPart)


def is_source(part: Part) -> bool:
    return isinstance(part, SourcePart)


def is_pdf_file(part: Part) -> bool:
    return isinstance(part, FilePart) and part.media_type == "application/pdf"


def is_text_file(part: Part) -> bool:
    """Files whose content is inlined into the prompt instead of uploaded."""
    if not isinstance(part, FilePart):
        return False
    mt = part.media_type
    return mt.startswith("text/") or mt == "application/json" or "csv" in mt


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """
    One conversation message.

    Parameters
    ----------
    id : str
        Stable id, assigned by whoever creates the message.
    role : str
        ``"user"``, ``"assistant"`` or ``"system"``.
    parts : list[Part]
        Ordered content.
    metadata : dict | None
        Response metadata; present on finished assistant messages only.
    stopped_by_user, stopped_model_id :
        Set when the user cancelled the turn before it finished.
    search_enabled, reasoning_level, model_id :
        Toggle state the user sent this message with (user messages only).
    """

    id: str
    role: str
    parts: list[Part] = field(default_factory=list)
    metadata: dict | None = None
    stopped_by_user: bool = False
    stopped_model_id: str | None = None
    search_enabled: bool | None = None
    reasoning_level: str | None = None
    model_id: str | None = None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "parts": [p.to_dict() for p in self.parts],
        }
        if self.metadata is not None:
            d["metadata"] = self.metadata
        if self.stopped_by_user:
            d["stoppedByUser"] = True
            d["stoppedModelId"] = self.stopped_model_id
        if self.search_enabled is not None:
            d["searchEnabled"] = self.search_enabled
        if self.reasoning_level is not None:
            d["reasoningLevel"] = self.reasoning_level
        if self.model_id is not None:
            d["modelId"] = self.model_id
        return d

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        if not isinstance(data, dict):
            raise ValueError("Message must be a JSON object")
        if "id" not in data or "role" not in data:
            raise ValueError("Message requires 'id' and 'role'")
        return cls(
            id=str(data["id"]),
            role=str(data["role"]),
            parts=[part_from_dict(p) for p in data.get("parts") or []],
            metadata=data.get("metadata"),
            stopped_by_user=bool(data.get("stoppedByUser", False)),
            stopped_model_id=data.get("stoppedModelId"),
            search_enabled=data.get("searchEnabled"),
            reasoning_level=data.get("reasoningLevel"),
            model_id=data.get("modelId"),
        )


def part_from_dict(data: dict) -> Part:
    ptype = data.get("type") if isinstance(data, dict) else None
    if ptype == "text":
        return TextPart(text=data.get("text", ""))
    if ptype == "reasoning":
        return ReasoningPart(text=data.get("text", ""), state=data.get("state", PART_STATE_DONE))
    if ptype == "file":
        return FilePart(
            url=data.get("url", ""),
            media_type=data.get("mediaType", "application/octet-stream"),
            filename=data.get("filename"),
            id=data.get("id"),
            storage_path=data.get("storagePath"),
        )
    if ptype == "tool-call":
        return ToolCallPart(
            tool_call_id=data["toolCallId"],
            tool_name=data["toolName"],
            input=data.get("input") or {},
            state=data.get("state", TOOL_STATE_PENDING),
            output=data.get("output"),
        )
    if ptype == "source":
        return SourcePart(
            id=data["id"],
            url=data.get("url"),
            title=data.get("title"),
            source_type=data.get("sourceType", "url"),
        )
    raise ValueError(f"Unknown message part type: {ptype!r}")


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

_REDACTED_AFTER_NEWLINE = re.compile(r"\n\s*\[REDACTED\]")
_REDACTED = re.compile(r"\[REDACTED\]")
_BLANK_RUN = re.compile(r"\n\s*\n")


def normalize_reasoning_text(text: str | None) -> str | None:
    """
    Strip ``[REDACTED]`` markers and tidy newlines in provider reasoning.

    Returns ``None`` when nothing displayable is left.
    """
    if not text:
        return None
    cleaned = _REDACTED_AFTER_NEWLINE.sub("", text)
    cleaned = _REDACTED.sub("", cleaned)
    cleaned = cleaned.replace("\\n", "\n")
    cleaned = _BLANK_RUN.sub("\n", cleaned)
    cleaned = cleaned.strip()
    return cleaned or None


def is_renderable(part: Part) -> bool:
    if isinstance(part, ReasoningPart):
        return normalize_reasoning_text(part.text) is not None
    if isinstance(part, TextPart):
        return bool(part.text)
    return True


def has_renderable_content(message: Message) -> bool:
    return any(is_renderable(p) for p in message.parts)


def message_text(message: Message) -> str:
    return "".join(p.text for p in message.parts if isinstance(p, TextPart))


def normalize_tool_sources(tool_name: str, output: dict | None) -> list[SourcePart]:
    """
    Sources listed by a finished ``search`` or ``extract`` call, keyed by URL.

    Error outputs and other tools yield nothing.
    """
    if tool_name not in ("search", "extract") or not isinstance(output, dict):
        return []
    if output.get("error") is True:
        return []
    sources: list[SourcePart] = []
    for s in output.get("sources") or []:
        url = s.get("url")
        if not url:
            continue
        sources.append(SourcePart(id=url, url=url, title=s.get("title") or url))
    return sources
