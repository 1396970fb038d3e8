from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class ErrorCode:
    INVALID_KEY = "invalid_key"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    REQUEST_FAILED = "request_failed"
    GENERATION_FAILED = "generation_failed"
    THREAD_CREATION_FAILED = "thread_creation_failed"
    INVALID_INPUT = "invalid_input"
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_EXCEPTION = "tool_exception"


class ToolOutput(Protocol):
    def to_dict(self) -> dict: ...


@dataclass
class ToolErrorOutput:
    """Structured tool failure handed back to the model instead of raising."""

    code: str
    message: str

    def to_dict(self) -> dict:
        return {"error": True, "code": self.code, "message": self.message}


def is_tool_error(output: object) -> bool:
    if isinstance(output, ToolErrorOutput):
        return True
    return isinstance(output, dict) and output.get("error") is True


class ReasoningLevel:
    XHIGH = "xhigh"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    MINIMAL = "minimal"
    NONE = "none"

    ALL = ("xhigh", "high", "medium", "low", "minimal", "none")
