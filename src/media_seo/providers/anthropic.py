"""Anthropic messages API provider."""

import logging
from typing import Any, Dict, Optional

from ..errors import ResponseParseError, VendorHTTPError
from ..utils.image_processor import ImagePayload
from .base import Provider

logger = logging.getLogger(__name__)

API_ENDPOINT = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"


class AnthropicProvider(Provider):
    name = "anthropic"
    display_name = "Anthropic"
    default_model = "claude-sonnet-4-5-20250929"
    capabilities_info = {
        "supports_vision": True,
        "supports_json": True,
        "max_tokens": 4096,
        "max_image_size": 1600,
        "supported_formats": ["image/jpeg", "image/png", "image/webp", "image/gif"],
    }
    rate_limit_headers = ("anthropic-ratelimit-requests-limit",)

    def endpoint(self) -> str:
        return self.config.api_url or API_ENDPOINT

    def headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": API_VERSION,
            "content-type": "application/json",
        }

    def build_payload(self, prompt: str, image: ImagePayload) -> Dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": self.config.max_tokens or 1024,
            "temperature": 0.7 if self.config.temperature is None else self.config.temperature,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": image.mime_type,
                                "data": image.to_base64(),
                            },
                        },
                        {"type": "text", "text": prompt},
                    ],
                }
            ],
        }

    def extract_text(self, data: Dict[str, Any]) -> str:
        try:
            text = data["content"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise ResponseParseError("Invalid response format from Anthropic API") from None
        if not isinstance(text, str):
            raise ResponseParseError("Anthropic returned no text")
        return text

    def extract_usage(self, data: Dict[str, Any]) -> Dict[str, Optional[int]]:
        usage = data.get("usage") or {}
        return {
            "input": usage.get("input_tokens"),
            "output": usage.get("output_tokens"),
            "cache_read": usage.get("cache_read_input_tokens"),
            "cache_write": usage.get("cache_creation_input_tokens"),
        }

    def error_message(self, status_code: int, data: Dict[str, Any]) -> str:
        error = data.get("error") or {}
        message = f"Anthropic API error ({status_code})"
        if error.get("type"):
            message += f" [{error['type']}]"
        return f"{message}: {error.get('message', 'Unknown error')}"

    def minimal_payload(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": 10,
            "messages": [{"role": "user", "content": "Hello"}],
        }

    def test_connection(self) -> bool:
        try:
            self._post(self.endpoint(), self.minimal_payload(), timeout=15)
        except (VendorHTTPError, ResponseParseError) as e:
            logger.error(f"Anthropic connection test failed: {e}")
            return False
        return True
