"""
Exception types and user-facing provider error formatting.

Turn rejections carry the HTTP status the server answers with.  Provider
failures are flattened into one readable sentence by ``format_provider_error``,
which tries a fixed list of unwrap steps in order and keeps the first hit.
"""

from __future__ import annotations

import json
from typing import Callable


class ParleyError(Exception):
    """Base class for parley errors."""


class TurnRejectedError(ParleyError):
    """A chat turn refused before streaming started."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ThreadAccessError(TurnRejectedError):
    status_code = 403

    def __init__(self, message: str = "Thread not found or unauthorized") -> None:
        super().__init__(message)


class MissingApiKeyError(TurnRejectedError):
    def __init__(
        self,
        message: str = (
            "No API key configured. Provide a browser key or store one on the server."
        ),
    ) -> None:
        super().__init__(message)


class MissingSearchKeyError(TurnRejectedError):
    def __init__(
        self,
        message: str = (
            "Web search is enabled but no Parallel API key configured. "
            "Provide a browser key or store one on the server."
        ),
    ) -> None:
        super().__init__(message)


class ProviderAPIError(ParleyError):
    """Non-2xx answer from the model provider."""

    def __init__(self, status_code: int, body: str | None = None, message: str = "") -> None:
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code
        self.body = body


class ProviderRetryError(ParleyError):
    """Raised once the provider's retry budget is spent."""

    def __init__(self, last_error: Exception, attempts: int) -> None:
        super().__init__(f"Failed after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class ReconcileError(ParleyError):
    """Client-side stop/regenerate/edit could not be applied."""


class ChatRequestError(ParleyError):
    """The chat server answered a client call with an error status."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"{status_code}: {message}")
        self.status_code = status_code
        self.message = message


# ---------------------------------------------------------------------------
# Provider error formatting
# ---------------------------------------------------------------------------

ERROR_HINTS: dict[str, str] = {
    "User not found.": (
        "Your OpenRouter API key may be invalid. Please check your API key in settings."
    ),
}

STATUS_MESSAGES: dict[int, str] = {
    400: "The model rejected the request. Try a different model or shorten the conversation.",
    401: "Your OpenRouter API key is invalid. Please check your API key in settings.",
    402: "Your OpenRouter account has insufficient credits.",
    403: "This request was blocked by the model provider.",
    404: "The selected model is not available.",
    408: "The model provider timed out. Please try again.",
    413: "The request is too large for the selected model.",
    429: "Rate limit exceeded. Please wait a moment and try again.",
    500: "The model provider encountered an internal error. Please try again.",
    502: "The model provider is unavailable. Please try again.",
    503: "The model provider is overloaded. Please try again later.",
}

UNEXPECTED_ERROR = "An unexpected error occurred"


def _parse_body(exc: ProviderAPIError) -> dict | None:
    if not exc.body:
        return None
    try:
        parsed = json.loads(exc.body)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _body_error(exc: ProviderAPIError) -> dict:
    parsed = _parse_body(exc) or {}
    error = parsed.get("error")
    return error if isinstance(error, dict) else {}


def _from_nested_raw(exc: ProviderAPIError) -> str | None:
    metadata = _body_error(exc).get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("raw"):
        return None
    try:
        nested = json.loads(metadata["raw"])
    except (TypeError, ValueError):
        return None
    if not isinstance(nested, dict):
        return None
    nested_error = nested.get("error")
    message = nested_error.get("message") if isinstance(nested_error, dict) else None
    if not message:
        return None
    provider = metadata.get("provider_name")
    return f"{provider}: {message}" if provider else message


def _from_body_message(exc: ProviderAPIError) -> str | None:
    message = _body_error(exc).get("message")
    if not isinstance(message, str) or not message:
        return None
    return ERROR_HINTS.get(message, message)


def _from_status_table(exc: ProviderAPIError) -> str | None:
    return STATUS_MESSAGES.get(exc.status_code)


def _from_exception(exc: ProviderAPIError) -> str | None:
    return str(exc) or None


_UNWRAP_STEPS: list[Callable[[ProviderAPIError], str | None]] = [
    _from_nested_raw,
    _from_body_message,
    _from_status_table,
    _from_exception,
]


def format_provider_error(error: BaseException) -> str:
    """Turn a provider failure into the message shown to the user."""
    if isinstance(error, ProviderRetryError):
        error = error.last_error

    if not isinstance(error, ProviderAPIError):
        return str(error) or UNEXPECTED_ERROR

    for step in _UNWRAP_STEPS:
        message = step(error)
        if message:
            return message
    return "API request failed"
