"""Per-turn stream accumulators."""

from __future__ import annotations

from dataclasses import dataclass, field

from parley.llm.parts import SourcePart
from parley.metrics.cost import ExtractCall, SearchCall


@dataclass
class StreamSession:
    """
    State for one in-flight turn, owned by the request that streams it.

    Parameters
    ----------
    thread_id : str | None
        Thread the turn belongs to, if any.
    start_time : float
        Monotonic clock reading when the turn started.
    first_token_time : float | None
        Set once, by the first text or reasoning start.
    search_calls, extract_calls :
        Successful tool calls folded into the cost.
    ocr_page_count : int | None
        PDF pages sent through OCR this turn.
    sources :
        Citations collected from the provider and from tool results.
    """

    thread_id: str | None
    start_time: float
    first_token_time: float | None = None
    search_calls: list[SearchCall] = field(default_factory=list)
    extract_calls: list[ExtractCall] = field(default_factory=list)
    ocr_page_count: int | None = None
    sources: list[SourcePart] = field(default_factory=list)

    def mark_first_token(self, now: float) -> bool:
        """Record the first-token time; later calls are no-ops returning False."""
        if self.first_token_time is not None:
            return False
        self.first_token_time = now
        return True

    def add_source(self, source: SourcePart) -> None:
        if any(s.id == source.id for s in self.sources):
            return
        self.sources.append(source)
