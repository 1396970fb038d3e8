"""
Token price resolution with an in-process TTL cache.

Lookup order:
  1. ``:free`` model variants cost nothing
  2. Per-token prices sent by the client with the turn
  3. The OpenRouter model catalogue, cached for ``ttl_seconds``

Any failure resolves to zero rates; pricing never fails a turn.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

import httpx

from parley.metrics.cost import TokenRates

logger = logging.getLogger(__name__)

OPENROUTER_MODELS_URL = "https://openrouter.ai/api/v1/models"
ZERO_RATES = TokenRates(0.0, 0.0)


def is_free_model(model_id: str) -> bool:
    return model_id.endswith(":free")


def _per_million(per_token: object) -> float:
    """Convert an upstream per-token USD price (string or number) to per-million."""
    value = float(per_token)  # type: ignore[arg-type]
    if value < 0:
        # OpenRouter uses -1 for "variable" router pricing.
        return 0.0
    return value * 1e6


def rates_from_pricing(pricing: dict | None) -> TokenRates | None:
    if not isinstance(pricing, dict):
        return None
    try:
        return TokenRates(
            input_per_million=_per_million(pricing.get("prompt", 0) or 0),
            output_per_million=_per_million(pricing.get("completion", 0) or 0),
        )
    except (TypeError, ValueError):
        return None


class PricingCache:
    """
    Parameters
    ----------
    models_url : str
        Catalogue endpoint returning ``{"data": [{"id", "pricing"}]}``.
    ttl_seconds : float
        How long a fetched catalogue stays valid.
    timeout : float
        HTTP timeout for the catalogue fetch.
    transport : httpx.AsyncBaseTransport | None
        Optional transport, used by tests.
    clock : callable
        Monotonic time source.
    """

    def __init__(
        self,
        models_url: str = OPENROUTER_MODELS_URL,
        ttl_seconds: float = 3600.0,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._models_url = models_url
        self._ttl = ttl_seconds
        self._timeout = timeout
        self._transport = transport
        self._clock = clock
        self._rates: dict[str, TokenRates] = {}
        self._fetched_at: float | None = None
        self._lock = asyncio.Lock()

    def _fresh(self) -> bool:
        return self._fetched_at is not None and self._clock() - self._fetched_at < self._ttl

    async def _refresh(self) -> None:
        async with self._lock:
            if self._fresh():
                return
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(self._models_url)
                resp.raise_for_status()
                payload = resp.json()
            rates: dict[str, TokenRates] = {}
            for model in payload.get("data") or []:
                parsed = rates_from_pricing(model.get("pricing"))
                if model.get("id") and parsed is not None:
                    rates[model["id"]] = parsed
            self._rates = rates
            self._fetched_at = self._clock()
            logger.info("Loaded pricing for %d models", len(rates))

    def invalidate(self) -> None:
        self._fetched_at = None

    async def get_token_rates(
        self, model_id: str, client_pricing: dict | None = None
    ) -> TokenRates:
        if is_free_model(model_id):
            return ZERO_RATES

        override = rates_from_pricing(client_pricing)
        if override is not None:
            return override

        if not self._fresh():
            try:
                await self._refresh()
            except (httpx.HTTPError, ValueError, AttributeError) as exc:
                logger.warning("Pricing lookup failed for %s: %s", model_id, exc)
                return ZERO_RATES

        rates = self._rates.get(model_id)
        if rates is None:
            logger.warning("No pricing data for model %s", model_id)
            return ZERO_RATES
        return rates
