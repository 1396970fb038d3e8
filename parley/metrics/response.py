"""Per-turn response metadata: throughput, latency and cost breakdown."""

from __future__ import annotations

from dataclasses import dataclass, field

from parley.llm.parts import SourcePart
from parley.llm.types import Usage
from parley.metrics.cost import (
    ExtractCall,
    SearchCall,
    TokenRates,
    extract_cost,
    ocr_cost,
    search_cost,
    token_cost_breakdown,
)


@dataclass(frozen=True)
class CostBreakdown:
    prompt_cost: float = 0.0
    completion_cost: float = 0.0
    search: float = 0.0
    extract: float = 0.0
    ocr: float = 0.0

    @property
    def total(self) -> float:
        return self.prompt_cost + self.completion_cost + self.search + self.extract + self.ocr

    def to_dict(self) -> dict:
        return {
            "promptCost": self.prompt_cost,
            "completionCost": self.completion_cost,
            "search": self.search,
            "extract": self.extract,
            "ocr": self.ocr,
            "total": self.total,
        }


@dataclass(frozen=True)
class ResponseMetadata:
    input_tokens: int
    output_tokens: int
    tokens_per_second: float
    time_to_first_token_ms: float
    cost_usd: CostBreakdown
    model: str
    sources: tuple[SourcePart, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        d = {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "tokensPerSecond": self.tokens_per_second,
            "timeToFirstTokenMs": self.time_to_first_token_ms,
            "costUSD": self.cost_usd.to_dict(),
            "model": self.model,
        }
        if self.sources:
            d["sources"] = [
                {"id": s.id, "sourceType": s.source_type, "url": s.url, "title": s.title}
                for s in self.sources
            ]
        return d


def calculate_response_metadata(
    *,
    usage: Usage,
    model: str,
    rates: TokenRates,
    start_time: float,
    end_time: float,
    first_token_time: float | None = None,
    search_calls: list[SearchCall] | None = None,
    extract_calls: list[ExtractCall] | None = None,
    ocr_page_count: int | None = None,
    sources: list[SourcePart] | None = None,
) -> ResponseMetadata:
    """Times are in seconds; the reported TTFT is in milliseconds."""
    elapsed = end_time - start_time
    tokens_per_second = 0.0
    if usage.output_tokens > 0 and elapsed > 0:
        tokens_per_second = usage.output_tokens / elapsed

    ttft_ms = 0.0
    if first_token_time is not None:
        ttft_ms = max(0.0, (first_token_time - start_time) * 1000)

    tokens = token_cost_breakdown(usage, rates.input_per_million, rates.output_per_million)
    cost = CostBreakdown(
        prompt_cost=tokens.prompt_cost,
        completion_cost=tokens.completion_cost,
        search=search_cost(search_calls or []),
        extract=extract_cost(extract_calls or []),
        ocr=ocr_cost(ocr_page_count),
    )
    return ResponseMetadata(
        input_tokens=usage.input_tokens,
        output_tokens=usage.output_tokens,
        tokens_per_second=tokens_per_second,
        time_to_first_token_ms=ttft_ms,
        cost_usd=cost,
        model=model,
        sources=tuple(sources or ()),
    )
