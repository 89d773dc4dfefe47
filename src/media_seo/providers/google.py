"""Google Gemini generateContent provider."""

import logging
from typing import Any, Dict, Optional

from ..errors import ResponseParseError, VendorHTTPError
from ..utils.image_processor import ImagePayload
from .base import Provider

logger = logging.getLogger(__name__)

API_BASE = "https://generativelanguage.googleapis.com/v1beta/models/"


class GoogleProvider(Provider):
    name = "google"
    display_name = "Google"
    default_model = "gemini-1.5-flash"
    capabilities_info = {
        "supports_vision": True,
        "supports_json": True,
        "max_tokens": 8192,
        "max_image_size": 2048,
        "supported_formats": ["image/jpeg", "image/png", "image/webp"],
    }
    rate_limit_headers = ("x-ratelimit-limit-requests", "x-ratelimit-limit", "ratelimit-limit")

    def endpoint(self) -> str:
        base = self.config.api_url or API_BASE
        return f"{base}{self.model}:generateContent"

    def headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }

    def build_payload(self, prompt: str, image: ImagePayload) -> Dict[str, Any]:
        return {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {"inline_data": {"mime_type": image.mime_type, "data": image.to_base64()}},
                    ]
                }
            ],
            "generationConfig": {
                "temperature": 0.7 if self.config.temperature is None else self.config.temperature,
                "maxOutputTokens": self.config.max_tokens or 4096,
            },
        }

    def extract_text(self, data: Dict[str, Any]) -> str:
        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise ResponseParseError("Invalid response structure from Google API") from None
        if not isinstance(text, str):
            raise ResponseParseError("Google returned no text")
        return text

    def extract_usage(self, data: Dict[str, Any]) -> Dict[str, Optional[int]]:
        usage = data.get("usageMetadata") or {}
        return {
            "input": usage.get("promptTokenCount"),
            "output": usage.get("candidatesTokenCount"),
            "cache_read": usage.get("cachedContentTokenCount"),
            "cache_write": None,
        }

    def error_message(self, status_code: int, data: Dict[str, Any]) -> str:
        message = (data.get("error") or {}).get("message", "Unknown error")
        return f"Google API error ({status_code}): {message}"

    def minimal_payload(self) -> Dict[str, Any]:
        return {"contents": [{"parts": [{"text": "Hello"}]}]}

    def test_connection(self) -> bool:
        try:
            self._post(self.endpoint(), self.minimal_payload(), timeout=15)
        except (VendorHTTPError, ResponseParseError) as e:
            logger.error(f"Google connection test failed: {e}")
            return False
        return True
