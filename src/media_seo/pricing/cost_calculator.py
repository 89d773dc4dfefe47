"""USD cost calculation from token usage and per-model pricing."""

import logging
import threading
from typing import Dict, Iterable, Optional

from ..errors import PricingMissingError
from ..models import CostBreakdown, Pricing, ProcessingJob

logger = logging.getLogger(__name__)

PER_MILLION = 1_000_000
PRECISION = 8


class CostCalculator:
    """Computes call cost, caching pricing lookups per model.

    ``pricing_store`` is anything with ``get_pricing(model) -> Optional[Pricing]``.
    """

    def __init__(self, pricing_store):
        self.pricing_store = pricing_store
        self._cache: Dict[str, Pricing] = {}
        self._lock = threading.Lock()

    def get_pricing(self, model: str) -> Pricing:
        with self._lock:
            cached = self._cache.get(model)
        if cached is not None:
            return cached

        pricing = self.pricing_store.get_pricing(model)
        if pricing is None:
            raise PricingMissingError(model)

        with self._lock:
            self._cache[model] = pricing
        return pricing

    def calculate(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cache_read_tokens: int = 0,
        cache_write_tokens: int = 0,
    ) -> CostBreakdown:
        pricing = self.get_pricing(model)

        input_cost = round(input_tokens * pricing.input_price_per_million / PER_MILLION, PRECISION)
        output_cost = round(
            output_tokens * pricing.output_price_per_million / PER_MILLION, PRECISION
        )

        cache_read_cost = 0.0
        if cache_read_tokens > 0 and pricing.cache_read_price_per_million:
            cache_read_cost = round(
                cache_read_tokens * pricing.cache_read_price_per_million / PER_MILLION, PRECISION
            )

        cache_write_cost = 0.0
        if cache_write_tokens > 0 and pricing.cache_write_price_per_million:
            cache_write_cost = round(
                cache_write_tokens * pricing.cache_write_price_per_million / PER_MILLION, PRECISION
            )

        total = round(input_cost + output_cost + cache_read_cost + cache_write_cost, PRECISION)
        return CostBreakdown(
            input_cost=input_cost,
            output_cost=output_cost,
            cache_read_cost=cache_read_cost,
            cache_write_cost=cache_write_cost,
            total_cost=total,
        )

    def total_cost(self, jobs: Iterable[ProcessingJob]) -> float:
        return round(sum(job.total_cost or 0.0 for job in jobs), PRECISION)

    def clear_cache(self, model: Optional[str] = None):
        with self._lock:
            if model is None:
                self._cache.clear()
            else:
                self._cache.pop(model, None)
