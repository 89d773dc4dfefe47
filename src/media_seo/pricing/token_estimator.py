"""Input token estimation for vision requests.

Vendors usually report usage, but when a response omits input tokens the
cost still has to be computed. Each vendor bills images differently:

* OpenAI (high detail): fit within 2048x2048, scale the short side down to
  768, then bill 170 tokens per 512px tile plus a base of 85.
* Anthropic: fit within 1568px, then roughly width*height/750, capped.
* Google: 258 tokens per 768px tile.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OpenAIImageConstants:
    max_side: int = 2048
    short_side: int = 768
    tile_size: int = 512
    base_tokens: int = 85
    tokens_per_tile: int = 170


@dataclass(frozen=True)
class AnthropicImageConstants:
    max_side: int = 1568
    pixels_per_token: int = 750
    max_tokens: int = 1600


@dataclass(frozen=True)
class GoogleImageConstants:
    tile_size: int = 768
    tokens_per_tile: int = 258


@dataclass(frozen=True)
class EstimatorConstants:
    openai: OpenAIImageConstants = field(default_factory=OpenAIImageConstants)
    anthropic: AnthropicImageConstants = field(default_factory=AnthropicImageConstants)
    google: GoogleImageConstants = field(default_factory=GoogleImageConstants)
    chars_per_token: int = 4


class TokenEstimator:
    def __init__(self, constants: Optional[EstimatorConstants] = None):
        self.constants = constants or EstimatorConstants()

    def estimate_input_tokens(self, width: int, height: int, provider: str, prompt_text: str = "") -> int:
        return self.estimate_image_tokens(width, height, provider) + self.estimate_text_tokens(
            prompt_text
        )

    def estimate_image_tokens(self, width: int, height: int, provider: str) -> int:
        if width <= 0 or height <= 0:
            return 0

        if provider == "openai":
            return self._openai_image_tokens(width, height)
        if provider == "anthropic":
            return self._anthropic_image_tokens(width, height)
        if provider == "google":
            return self._google_image_tokens(width, height)

        logger.warning(f"No image token formula for provider {provider}")
        return 0

    def estimate_text_tokens(self, text: str) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.constants.chars_per_token)

    def breakdown(self, width: int, height: int, provider: str, prompt_text: str = "") -> Dict[str, Any]:
        image_tokens = self.estimate_image_tokens(width, height, provider)
        text_tokens = self.estimate_text_tokens(prompt_text)
        return {
            "total_tokens": image_tokens + text_tokens,
            "image_tokens": image_tokens,
            "text_tokens": text_tokens,
            "dimensions": {"width": width, "height": height},
            "provider": provider,
        }

    def openai_scaled_size(self, width: int, height: int) -> Tuple[int, int]:
        c = self.constants.openai
        if width > c.max_side or height > c.max_side:
            ratio = min(c.max_side / width, c.max_side / height)
            width = int(width * ratio)
            height = int(height * ratio)

        if min(width, height) > c.short_side:
            ratio = c.short_side / min(width, height)
            width = int(width * ratio)
            height = int(height * ratio)

        return width, height

    def _openai_image_tokens(self, width: int, height: int) -> int:
        c = self.constants.openai
        width, height = self.openai_scaled_size(width, height)
        tiles = math.ceil(width / c.tile_size) * math.ceil(height / c.tile_size)
        return c.base_tokens + c.tokens_per_tile * tiles

    def _anthropic_image_tokens(self, width: int, height: int) -> int:
        c = self.constants.anthropic
        if width > c.max_side or height > c.max_side:
            ratio = min(c.max_side / width, c.max_side / height)
            width = int(width * ratio)
            height = int(height * ratio)

        return min(int(width * height / c.pixels_per_token), c.max_tokens)

    def _google_image_tokens(self, width: int, height: int) -> int:
        c = self.constants.google
        tiles = math.ceil(width / c.tile_size) * math.ceil(height / c.tile_size)
        return c.tokens_per_tile * tiles
