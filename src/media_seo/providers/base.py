"""Base provider abstraction for vision metadata APIs."""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import requests

from ..context import describe_image
from ..errors import ConfigError, ResponseParseError, VendorHTTPError
from ..models import GeneratedMetadata, ProviderConfig, TokenUsage
from ..pricing.cost_calculator import CostCalculator
from ..pricing.token_estimator import TokenEstimator
from ..prompts import PromptBuilder
from ..utils.image_processor import ImagePayload

logger = logging.getLogger(__name__)

DEFAULT_SCORE = 0.85
LIMIT_CHECK_TIMEOUT = 10

_FENCED_JSON = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL)
_DECODER = json.JSONDecoder()


def _first_object(text: str) -> Dict[str, Any]:
    """Decode the first complete JSON object found at an opening brace."""
    start = text.find("{")
    while start != -1:
        try:
            data, _ = _DECODER.raw_decode(text, start)
            return data
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
    raise ResponseParseError("Invalid JSON in model response: no object found")


def extract_json(text: str) -> Dict[str, Any]:
    """Pull the metadata object out of model output.

    Tries a ```json fenced block first, then the first decodable object in
    the text; anything after that object is ignored.

    Raises:
        ResponseParseError: if no valid JSON object is found.
    """
    if not isinstance(text, str):
        raise ResponseParseError("Model response contained no text")

    fenced = _FENCED_JSON.search(text)
    if not fenced:
        return _first_object(text)

    try:
        data = json.loads(fenced.group(1))
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Invalid JSON in model response: {e}") from e

    if not isinstance(data, dict):
        raise ResponseParseError("Model response JSON is not an object")
    return data


def normalize_metadata(data: Dict[str, Any]) -> GeneratedMetadata:
    """Validate and coerce parsed JSON into GeneratedMetadata."""
    alt = data.get("alt")
    if not alt or not isinstance(alt, str):
        raise ResponseParseError("Missing required field: alt")

    keywords = data.get("keywords") or []
    if isinstance(keywords, str):
        keywords = keywords.split(",")
    if not isinstance(keywords, list):
        raise ResponseParseError(f"Field keywords must be a list or string, got {type(keywords).__name__}")
    keywords = [str(k).strip() for k in keywords if str(k).strip()]

    try:
        score = float(data.get("score", DEFAULT_SCORE))
    except (TypeError, ValueError):
        score = DEFAULT_SCORE
    score = max(0.0, min(1.0, score))

    return GeneratedMetadata(
        alt=alt.strip(),
        caption=str(data.get("caption") or "").strip(),
        title=str(data.get("title") or "").strip(),
        keywords=keywords,
        score=score,
    )


def redact_payload(payload: Any) -> Any:
    """Copy of a request payload with inline image data replaced by its size."""
    if isinstance(payload, dict):
        redacted = {}
        for key, value in payload.items():
            if key in ("data", "url") and isinstance(value, str) and len(value) > 256:
                redacted[key] = f"<{len(value)} chars>"
            else:
                redacted[key] = redact_payload(value)
        return redacted
    if isinstance(payload, list):
        return [redact_payload(item) for item in payload]
    return payload


class Provider(ABC):
    """A vision LLM that turns an image plus context into metadata."""

    name: str = ""
    display_name: str = ""
    default_model: str = ""
    capabilities_info: Dict[str, Any] = {}
    # Response headers that carry the account's requests-per-minute limit.
    rate_limit_headers: Tuple[str, ...] = ()

    def __init__(
        self,
        config: ProviderConfig,
        subject_store,
        prompt_builder: PromptBuilder,
        cost_calculator: CostCalculator,
        token_estimator: Optional[TokenEstimator] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config
        self.api_key = config.api_key
        self.model = config.model or self.default_model
        self.timeout = config.timeout
        self.subject_store = subject_store
        self.prompt_builder = prompt_builder
        self.cost_calculator = cost_calculator
        self.token_estimator = token_estimator or TokenEstimator()
        self.session = session or requests.Session()

    @abstractmethod
    def build_payload(self, prompt: str, image: ImagePayload) -> Dict[str, Any]:
        pass

    @abstractmethod
    def endpoint(self) -> str:
        pass

    @abstractmethod
    def headers(self) -> Dict[str, str]:
        pass

    @abstractmethod
    def extract_text(self, data: Dict[str, Any]) -> str:
        """Model output text from a successful response body."""
        pass

    @abstractmethod
    def extract_usage(self, data: Dict[str, Any]) -> Dict[str, Optional[int]]:
        """Token counts keyed input/output/cache_read/cache_write; None when absent."""
        pass

    @abstractmethod
    def error_message(self, status_code: int, data: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        pass

    def validate_config(self) -> List[str]:
        """Problems with this provider's configuration; empty when usable."""
        problems = []
        if not self.api_key:
            problems.append(f"{self.display_name} API key is required.")
        if not self.model:
            problems.append("Model is required.")
        return problems

    def capabilities(self) -> Dict[str, Any]:
        return dict(self.capabilities_info)

    def minimal_payload(self) -> Dict[str, Any]:
        """Smallest valid request body, used for connection and limit checks."""
        raise NotImplementedError(f"{self.display_name} has no minimal request")

    def request_limit(self) -> Optional[int]:
        """Requests per minute the vendor reports for this key, None if it reports none."""
        try:
            response = self._limit_response()
        except requests.RequestException as e:
            logger.warning(f"{self.display_name} rate limit check failed: {e}")
            return None

        for header in self.rate_limit_headers:
            value = response.headers.get(header)
            if value is None:
                continue
            try:
                return int(value)
            except (TypeError, ValueError):
                logger.debug(f"Ignoring non-numeric {header} header: {value!r}")
        return None

    def _limit_response(self) -> requests.Response:
        return self.session.post(
            self.endpoint(),
            headers=self.headers(),
            json=self.minimal_payload(),
            timeout=LIMIT_CHECK_TIMEOUT,
        )

    def analyze(self, subject_id: str, language: str, context: Dict[str, Any]) -> GeneratedMetadata:
        """Generate metadata for one image.

        Raises:
            ConfigError, VendorHTTPError, ResponseParseError, PricingMissingError
        """
        if not self.api_key:
            raise ConfigError(f"{self.display_name} API key is not configured")

        image = self.subject_store.get_image(subject_id)
        prompt = self.prompt_builder.build(
            language, {**describe_image(image.width, image.height), **context}
        )
        payload = self.build_payload(prompt, image)

        logger.debug(f"Calling {self.name}/{self.model} for subject {subject_id} ({language})")
        data = self._post(self.endpoint(), payload)

        metadata = normalize_metadata(extract_json(self.extract_text(data)))
        metadata.provider = self.name
        metadata.model = self.model
        metadata.usage = self._usage(data, image, prompt)
        metadata.cost = self.cost_calculator.calculate(
            self.model,
            metadata.usage.input_tokens,
            metadata.usage.output_tokens,
            metadata.usage.cache_read_tokens,
            metadata.usage.cache_write_tokens,
        )
        metadata.request_payload = redact_payload(payload)
        metadata.response_payload = data
        return metadata

    def _usage(self, data: Dict[str, Any], image: ImagePayload, prompt: str) -> TokenUsage:
        raw = self.extract_usage(data)
        usage = TokenUsage(
            output_tokens=raw.get("output") or 0,
            cache_read_tokens=raw.get("cache_read") or 0,
            cache_write_tokens=raw.get("cache_write") or 0,
        )
        if raw.get("input") is None:
            usage.input_tokens = self.token_estimator.estimate_input_tokens(
                image.width, image.height, self.name, prompt
            )
            usage.estimated_input = True
            logger.info(f"{self.name} response had no input token count, estimated {usage.input_tokens}")
        else:
            usage.input_tokens = raw["input"]
        return usage

    def _post(self, url: str, payload: Dict[str, Any], timeout: Optional[int] = None) -> Dict[str, Any]:
        try:
            response = self.session.post(
                url, headers=self.headers(), json=payload, timeout=timeout or self.timeout
            )
        except requests.RequestException as e:
            raise VendorHTTPError(f"{self.display_name} request failed: {e}", self.name) from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code != 200:
            message = self.error_message(response.status_code, data or {})
            raise VendorHTTPError(message, self.name, response.status_code)

        if not isinstance(data, dict):
            raise ResponseParseError(f"{self.display_name} returned a non-JSON response")
        return data
