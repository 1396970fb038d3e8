"""Cost model, token pricing and per-turn response metadata."""

from parley.metrics.cost import (
    ExtractCall,
    SearchCall,
    TokenRates,
    extract_cost,
    ocr_cost,
    search_cost,
    token_cost,
)
from parley.metrics.pricing import PricingCache
from parley.metrics.response import CostBreakdown, ResponseMetadata, calculate_response_metadata

__all__ = [
    "CostBreakdown",
    "ExtractCall",
    "PricingCache",
    "ResponseMetadata",
    "SearchCall",
    "TokenRates",
    "calculate_response_metadata",
    "extract_cost",
    "ocr_cost",
    "search_cost",
    "token_cost",
]
