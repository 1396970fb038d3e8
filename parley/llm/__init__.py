"""LLM subsystem -- message parts, provider access and the tool-calling step loop."""

from parley.llm.parts import (
    FilePart,
    Message,
    Part,
    ReasoningPart,
    SourcePart,
    TextPart,
    ToolCallPart,
)
from parley.llm.tool_call_assembler import ToolCallAssembler
from parley.llm.types import ModelMessage, RawToolDelta, StreamChunk, ToolCall, Usage

__all__ = [
    "FilePart",
    "Message",
    "ModelMessage",
    "Part",
    "RawToolDelta",
    "ReasoningPart",
    "SourcePart",
    "StreamChunk",
    "TextPart",
    "ToolCall",
    "ToolCallAssembler",
    "ToolCallPart",
    "Usage",
]
