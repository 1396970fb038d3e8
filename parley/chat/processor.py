"""
Stream chunk processor.

Consumes turn events strictly in arrival order and keeps the session's
accumulators current.  Metadata is computed on the first ``Finish`` only;
later ``Finish`` events return the same object.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from parley.chat.session import StreamSession
from parley.llm.parts import SourcePart, normalize_tool_sources
from parley.llm.types import (
    Finish,
    ReasoningStart,
    SourceEvent,
    StreamEvent,
    TextStart,
    ToolResultEvent,
)
from parley.metrics.cost import ExtractCall, SearchCall, TokenRates
from parley.metrics.response import ResponseMetadata, calculate_response_metadata
from parley.types import is_tool_error

logger = logging.getLogger(__name__)


class StreamChunkProcessor:
    """
    Parameters
    ----------
    session : StreamSession
        Accumulators for this turn.
    model_id : str
        Model reported in the metadata.
    rates : TokenRates
        Resolved token prices.
    clock : callable
        Monotonic time source; must match the one ``session.start_time`` used.
    """

    def __init__(
        self,
        session: StreamSession,
        model_id: str,
        rates: TokenRates,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session = session
        self.model_id = model_id
        self.rates = rates
        self._clock = clock
        self._metadata: ResponseMetadata | None = None

    @property
    def metadata(self) -> ResponseMetadata | None:
        return self._metadata

    def process(self, event: StreamEvent) -> ResponseMetadata | None:
        """Apply one event; returns the metadata when *event* is a ``Finish``."""
        if isinstance(event, (TextStart, ReasoningStart)):
            self.session.mark_first_token(self._clock())
        elif isinstance(event, SourceEvent):
            self.session.add_source(
                SourcePart(id=event.source_id, url=event.url, title=event.title)
            )
        elif isinstance(event, ToolResultEvent):
            self._record_tool_result(event)
        elif isinstance(event, Finish):
            return self._finish(event)
        return None

    def _record_tool_result(self, event: ToolResultEvent) -> None:
        if event.tool_name not in ("search", "extract"):
            return
        if is_tool_error(event.output):
            # Failed calls are not billed.
            return
        sources = normalize_tool_sources(event.tool_name, event.output)
        for source in sources:
            self.session.add_source(source)
        if event.tool_name == "search":
            self.session.search_calls.append(SearchCall(result_count=len(sources)))
        else:
            self.session.extract_calls.append(ExtractCall(url_count=len(sources)))

    def _finish(self, event: Finish) -> ResponseMetadata:
        if self._metadata is not None:
            return self._metadata
        s = self.session
        self._metadata = calculate_response_metadata(
            usage=event.total_usage,
            model=self.model_id,
            rates=self.rates,
            start_time=s.start_time,
            end_time=self._clock(),
            first_token_time=s.first_token_time,
            search_calls=s.search_calls,
            extract_calls=s.extract_calls,
            ocr_page_count=s.ocr_page_count,
            sources=s.sources,
        )
        logger.debug(
            "Turn metadata: model=%s in=%d out=%d total=$%.6f",
            self.model_id,
            self._metadata.input_tokens,
            self._metadata.output_tokens,
            self._metadata.cost_usd.total,
        )
        return self._metadata
