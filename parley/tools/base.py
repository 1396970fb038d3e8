from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from parley.types import ToolOutput


def normalize_schema(schema: dict) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    s.setdefault("additionalProperties", False)
    return s


class Tool(ABC):
    """
    A model-callable tool.

    ``execute`` receives arguments already validated against ``parameters``
    and returns an output object; expected failures are returned as
    ``ToolErrorOutput`` rather than raised.  *abort* is set when the turn is
    cancelled.
    """

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict: ...

    @abstractmethod
    async def execute(
        self, args: dict, *, abort: asyncio.Event | None = None
    ) -> ToolOutput: ...

    def to_openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": normalize_schema(self.parameters),
            },
        }
