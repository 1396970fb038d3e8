"""
USD cost model for a single chat turn.

All functions are pure.  Token rates are expressed per million tokens; the
search, extract and OCR fees mirror the upstream price sheets.
"""

from __future__ import annotations

from dataclasses import dataclass

from parley.llm.types import Usage

SEARCH_BASE_FEE = 0.005
SEARCH_INCLUDED_RESULTS = 10
SEARCH_EXTRA_RESULT_FEE = 0.001
EXTRACT_URL_FEE = 0.001
OCR_FEE_PER_THOUSAND_PAGES = 2.0


@dataclass(frozen=True)
class TokenRates:
    """Per-million-token prices for one model."""

    input_per_million: float = 0.0
    output_per_million: float = 0.0


@dataclass(frozen=True)
class SearchCall:
    result_count: int


@dataclass(frozen=True)
class ExtractCall:
    url_count: int


@dataclass(frozen=True)
class TokenCost:
    prompt_cost: float
    completion_cost: float

    @property
    def total(self) -> float:
        return self.prompt_cost + self.completion_cost


def token_cost_breakdown(
    usage: Usage,
    input_rate_per_million: float,
    output_rate_per_million: float,
) -> TokenCost:
    return TokenCost(
        prompt_cost=usage.input_tokens * input_rate_per_million / 1e6,
        completion_cost=usage.output_tokens * output_rate_per_million / 1e6,
    )


def token_cost(
    usage: Usage,
    input_rate_per_million: float,
    output_rate_per_million: float,
) -> float:
    """Return ``(in*rate_in + out*rate_out) / 1e6``."""
    return (
        usage.input_tokens * input_rate_per_million
        + usage.output_tokens * output_rate_per_million
    ) / 1e6


def search_cost(calls: list[SearchCall]) -> float:
    """Base fee per call covers the first ten results; each extra result adds a fee."""
    total = 0.0
    for call in calls:
        extra = max(0, call.result_count - SEARCH_INCLUDED_RESULTS)
        total += SEARCH_BASE_FEE + extra * SEARCH_EXTRA_RESULT_FEE
    return total


def extract_cost(calls: list[ExtractCall]) -> float:
    return sum(call.url_count for call in calls) * EXTRACT_URL_FEE


def ocr_cost(page_count: int | None) -> float:
    if not page_count or page_count <= 0:
        return 0.0
    return page_count / 1000 * OCR_FEE_PER_THOUSAND_PAGES
