"""Pricing sync from the models.dev public catalogue."""

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from .. import __version__
from ..models import Pricing

logger = logging.getLogger(__name__)

MODELS_DEV_URL = "https://models.dev/api.json"
SUPPORTED_PROVIDERS = ("anthropic", "openai", "google")


class ModelsDevParser:
    """Fetches vision-capable model pricing from models.dev."""

    def __init__(
        self,
        api_url: str = MODELS_DEV_URL,
        max_retries: int = 3,
        retry_delay: float = 2,
        timeout: int = 15,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
    ):
        self.api_url = api_url
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.timeout = timeout
        self.session = session or requests.Session()
        self.sleep = sleep

    def fetch_pricing_data(self) -> Dict[str, Pricing]:
        """Fetch and parse the catalogue, retrying with linear backoff.

        Returns an empty dict when every attempt fails.
        """
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.session.get(
                    self.api_url,
                    timeout=self.timeout,
                    headers={"User-Agent": f"media-seo/{__version__}"},
                )
                response.raise_for_status()
                pricing = self.parse(response.json())
                if pricing:
                    return pricing
                last_error = "No pricing data found in API response"
            except (requests.RequestException, ValueError) as e:
                last_error = str(e)

            logger.warning(f"models.dev fetch attempt {attempt} failed: {last_error}")
            if attempt < self.max_retries:
                self.sleep(self.retry_delay * attempt)

        logger.error(
            f"Failed to fetch pricing after {self.max_retries} attempts. Last error: {last_error}"
        )
        return {}

    def parse(self, data: Dict[str, Any]) -> Dict[str, Pricing]:
        if not isinstance(data, dict):
            return {}

        pricing: Dict[str, Pricing] = {}
        for provider in SUPPORTED_PROVIDERS:
            models = (data.get(provider) or {}).get("models")
            if not isinstance(models, dict):
                logger.warning(f"Provider {provider} not found in models.dev response")
                continue

            for model_id, model in models.items():
                cost = model.get("cost") or {}
                if "input" not in cost or "output" not in cost:
                    continue

                modalities = (model.get("modalities") or {}).get("input") or []
                if "image" not in modalities:
                    continue

                pricing[model_id] = Pricing(
                    model_name=model_id,
                    provider=provider,
                    input_price_per_million=float(cost["input"]),
                    output_price_per_million=float(cost["output"]),
                    cache_read_price_per_million=_maybe_float(cost.get("cache_read")),
                    cache_write_price_per_million=_maybe_float(cost.get("cache_write")),
                    source="models.dev",
                )

        logger.info(f"Loaded {len(pricing)} vision models from models.dev")
        return pricing

    @property
    def supported_providers(self) -> List[str]:
        return list(SUPPORTED_PROVIDERS)


def _maybe_float(value) -> Optional[float]:
    return None if value is None else float(value)
