"""Vision LLM providers."""

from .anthropic import AnthropicProvider
from .base import Provider, extract_json, normalize_metadata
from .factory import PROVIDER_CLASSES, ProviderFactory, ProviderKind
from .google import GoogleProvider
from .openai import OpenAIProvider
from .tiers import classify_tier, detect_tier, recommended_concurrency

__all__ = [
    "AnthropicProvider",
    "GoogleProvider",
    "OpenAIProvider",
    "PROVIDER_CLASSES",
    "Provider",
    "ProviderFactory",
    "ProviderKind",
    "classify_tier",
    "detect_tier",
    "extract_json",
    "normalize_metadata",
    "recommended_concurrency",
]
