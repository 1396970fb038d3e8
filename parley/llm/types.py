"""Core types for the LLM subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Union


@dataclass(frozen=True)
class Usage:
    """Token totals reported by the provider."""

    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass
class ModelMessage:
    """
    A single message in the provider's chat-completions format.

    *content* is either plain text or a list of OpenAI-style content parts
    (``{"type": "text"}``, ``{"type": "image_url"}``, ``{"type": "file"}``).
    """

    role: str  # "system", "user", "assistant", "tool"
    content: str | list[dict] | None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None


@dataclass
class ToolCall:
    """A resolved tool call with parsed arguments."""

    id: str
    name: str
    arguments: dict


@dataclass
class RawToolDelta:
    """
    An incremental delta for a streaming tool call.

    Providers emit these as tool-call fragments arrive.  The ToolCallAssembler
    accumulates them and produces finished ToolCall objects.
    """

    call_index: int
    id: str | None = None
    name_delta: str = ""
    args_delta: str = ""
    done: bool = False


@dataclass
class SourceRef:
    """A citation the provider attached to its answer."""

    url: str
    title: str | None = None


@dataclass
class StreamChunk:
    """
    A single chunk yielded by a provider for one model round-trip.

    *delta* carries new answer text, *reasoning_delta* new thinking text.
    *tool_deltas* carries incremental tool-call fragments.
    *usage* is set on the chunk that reports token totals.
    *done* is ``True`` on the final chunk.
    """

    delta: str = ""
    reasoning_delta: str = ""
    tool_deltas: list[RawToolDelta] | None = None
    sources: list[SourceRef] | None = None
    usage: Usage | None = None
    finish_reason: str | None = None
    done: bool = False


# ---------------------------------------------------------------------------
# Turn events
#
# ``stream_text`` turns provider chunks into this closed set of events.  The
# chunk processor, the wire encoder and the persisted-message builder all
# dispatch on the concrete class.
# ---------------------------------------------------------------------------


@dataclass
class StartStep:
    type: ClassVar[str] = "start-step"


@dataclass
class TextStart:
    id: str
    type: ClassVar[str] = "text-start"


@dataclass
class TextDelta:
    id: str
    delta: str
    type: ClassVar[str] = "text-delta"


@dataclass
class TextEnd:
    id: str
    type: ClassVar[str] = "text-end"


@dataclass
class ReasoningStart:
    id: str
    type: ClassVar[str] = "reasoning-start"


@dataclass
class ReasoningDelta:
    id: str
    delta: str
    type: ClassVar[str] = "reasoning-delta"


@dataclass
class ReasoningEnd:
    id: str
    type: ClassVar[str] = "reasoning-end"


@dataclass
class SourceEvent:
    source_id: str
    url: str
    title: str | None = None
    type: ClassVar[str] = "source"


@dataclass
class ToolCallEvent:
    tool_call_id: str
    tool_name: str
    input: dict
    type: ClassVar[str] = "tool-call"


@dataclass
class ToolResultEvent:
    tool_call_id: str
    tool_name: str
    input: dict
    output: dict
    type: ClassVar[str] = "tool-result"


@dataclass
class FinishStep:
    usage: Usage = field(default_factory=Usage)
    finish_reason: str | None = None
    type: ClassVar[str] = "finish-step"


@dataclass
class Finish:
    total_usage: Usage = field(default_factory=Usage)
    finish_reason: str | None = None
    type: ClassVar[str] = "finish"


StreamEvent = Union[
    StartStep,
    TextStart,
    TextDelta,
    TextEnd,
    ReasoningStart,
    ReasoningDelta,
    ReasoningEnd,
    SourceEvent,
    ToolCallEvent,
    ToolResultEvent,
    FinishStep,
    Finish,
]
