"""Abstract base class for LLM providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

from parley.llm.types import ModelMessage, StreamChunk


class Provider(ABC):
    """
    A provider turns a model id and a message list into a chunk stream.

    Implementations must support:
      - One streamed model round-trip (``stream_step``).
      - A plain, non-streamed completion (``complete``) used for titles,
        icons and hand-off prompts.
    """

    @abstractmethod
    async def stream_step(
        self,
        model_id: str,
        messages: list[ModelMessage],
        tools: list[dict] | None = None,
        options: dict | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Run one chat-completion round-trip.

        *options* is merged into the request body (plugins, reasoning).
        Yields ``StreamChunk`` objects; the last chunk has ``done=True``.
        """
        ...
        if False:  # pragma: no cover
            yield StreamChunk()  # type: ignore[misc]

    @abstractmethod
    async def complete(
        self,
        model_id: str,
        system: str,
        messages: list[ModelMessage],
    ) -> str:
        """Return the full text of a non-streamed completion."""
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider name (e.g. ``"openrouter"``)."""
        ...
