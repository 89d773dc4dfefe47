"""OpenAI chat completions provider."""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..errors import ResponseParseError
from ..utils.image_processor import ImagePayload
from .base import LIMIT_CHECK_TIMEOUT, Provider

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.openai.com/v1"


class OpenAIProvider(Provider):
    name = "openai"
    display_name = "OpenAI"
    default_model = "gpt-4o"
    capabilities_info = {
        "supports_vision": True,
        "supports_json": True,
        "max_tokens": 4096,
        "max_image_size": 2048,
        "supported_formats": ["jpg", "jpeg", "png", "gif", "webp"],
    }
    rate_limit_headers = ("x-ratelimit-limit-requests",)

    @property
    def api_url(self) -> str:
        return (self.config.api_url or DEFAULT_API_URL).rstrip("/")

    def endpoint(self) -> str:
        return f"{self.api_url}/chat/completions"

    def headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def build_payload(self, prompt: str, image: ImagePayload) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": f"data:{image.mime_type};base64,{image.to_base64()}"
                            },
                        },
                    ],
                }
            ],
            "max_tokens": self.config.max_tokens or 500,
            "temperature": 0.3 if self.config.temperature is None else self.config.temperature,
        }

    def extract_text(self, data: Dict[str, Any]) -> str:
        try:
            message = data["choices"][0]["message"]
            content = message["content"]
        except (KeyError, IndexError, TypeError):
            raise ResponseParseError("Invalid response structure from OpenAI API.") from None

        if not isinstance(content, str):
            # Refusals come back with null content and a refusal message.
            reason = message.get("refusal") or "no content"
            raise ResponseParseError(f"OpenAI returned no text: {reason}")
        return content

    def extract_usage(self, data: Dict[str, Any]) -> Dict[str, Optional[int]]:
        usage = data.get("usage") or {}
        details = usage.get("prompt_tokens_details") or {}
        return {
            "input": usage.get("prompt_tokens"),
            "output": usage.get("completion_tokens"),
            "cache_read": details.get("cached_tokens"),
            "cache_write": None,
        }

    def error_message(self, status_code: int, data: Dict[str, Any]) -> str:
        message = (data.get("error") or {}).get("message", "Unknown error")
        return f"OpenAI API error {status_code}: {message}"

    def validate_config(self) -> List[str]:
        problems = super().validate_config()
        if self.api_key and len(self.api_key) < 20:
            problems.append("API key appears to be invalid.")
        return problems

    def test_connection(self) -> bool:
        try:
            response = self._list_models(timeout=10)
        except requests.RequestException as e:
            logger.error(f"OpenAI connection test failed: {e}")
            return False
        return response.status_code == 200

    def _limit_response(self) -> requests.Response:
        # Limits come back on every response, so the free models listing will do.
        return self._list_models(timeout=LIMIT_CHECK_TIMEOUT)

    def _list_models(self, timeout: int) -> requests.Response:
        return self.session.get(
            f"{self.api_url}/models",
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=timeout,
        )
