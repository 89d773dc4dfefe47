"""Provider construction, primary selection and the fallback chain."""

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from ..config import DEFAULT_FALLBACK_ORDER, Settings
from ..errors import ConfigError, MediaSeoError
from ..models import AnalysisResult, ProcessingError, TierInfo
from ..pricing.cost_calculator import CostCalculator
from ..pricing.token_estimator import TokenEstimator
from ..prompts import PromptBuilder
from .anthropic import AnthropicProvider
from .base import Provider
from .google import GoogleProvider
from .openai import OpenAIProvider
from .tiers import detect_tier

logger = logging.getLogger(__name__)


class ProviderKind(Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


PROVIDER_CLASSES = {
    ProviderKind.OPENAI: OpenAIProvider,
    ProviderKind.ANTHROPIC: AnthropicProvider,
    ProviderKind.GOOGLE: GoogleProvider,
}

AVAILABLE_MODELS = {
    ProviderKind.OPENAI: {
        "gpt-4o": "GPT-4o (Recommended)",
        "gpt-4o-mini": "GPT-4o Mini (Cheaper)",
        "gpt-4-turbo": "GPT-4 Turbo",
    },
    ProviderKind.ANTHROPIC: {
        "claude-sonnet-4-5-20250929": "Claude Sonnet 4.5 (Recommended)",
        "claude-haiku-4-5-20251001": "Claude Haiku 4.5 (Cheaper)",
        "claude-opus-4-1-20250805": "Claude Opus 4.1",
    },
    ProviderKind.GOOGLE: {
        "gemini-1.5-flash": "Gemini 1.5 Flash (Recommended)",
        "gemini-2.0-flash": "Gemini 2.0 Flash",
        "gemini-2.5-flash": "Gemini 2.5 Flash",
        "gemini-2.5-pro": "Gemini 2.5 Pro",
    },
}


def parse_kind(name: str) -> ProviderKind:
    try:
        return ProviderKind(name)
    except ValueError:
        raise ConfigError(f"Unknown provider: {name}") from None


class ProviderFactory:
    """Builds configured providers and picks which one to call."""

    def __init__(
        self,
        settings: Settings,
        subject_store,
        prompt_builder: PromptBuilder,
        cost_calculator: CostCalculator,
        token_estimator: Optional[TokenEstimator] = None,
        session: Optional[requests.Session] = None,
    ):
        self.settings = settings
        self.subject_store = subject_store
        self.prompt_builder = prompt_builder
        self.cost_calculator = cost_calculator
        self.token_estimator = token_estimator or TokenEstimator()
        self.session = session
        self.fallback_order = [parse_kind(n) for n in settings.fallback_order]
        self._instances: Dict[ProviderKind, Provider] = {}

    def create(self, kind: ProviderKind) -> Optional[Provider]:
        """Instantiate a provider, or None when it is unconfigured, disabled or keyless."""
        if kind in self._instances:
            return self._instances[kind]

        config = self.settings.providers.get(kind.value)
        if config is None or not config.enabled or not config.has_key:
            return None

        provider = PROVIDER_CLASSES[kind](
            config,
            self.subject_store,
            self.prompt_builder,
            self.cost_calculator,
            token_estimator=self.token_estimator,
            session=self.session,
        )
        self._instances[kind] = provider
        return provider

    def primary(self) -> Optional[Provider]:
        for kind in ProviderKind:
            config = self.settings.providers.get(kind.value)
            if config is not None and config.is_primary:
                provider = self.create(kind)
                if provider is not None:
                    return provider
                logger.warning(f"Primary provider {kind.value} is not usable, falling back")
                break

        for kind in self.fallback_order or [parse_kind(n) for n in DEFAULT_FALLBACK_ORDER]:
            provider = self.create(kind)
            if provider is not None:
                return provider
        return None

    def fallback_chain(self) -> List[Provider]:
        """All usable providers, primary first, then in fallback order."""
        chain = []
        primary = self.primary()
        if primary is not None:
            chain.append(primary)
        for kind in self.fallback_order:
            provider = self.create(kind)
            if provider is not None and provider not in chain:
                chain.append(provider)
        return chain

    def set_fallback_order(self, names: List[str]):
        self.fallback_order = [parse_kind(n) for n in names]

    def analyze_with_fallback(self, subject_id: str, language: str, context: Dict[str, Any]) -> AnalysisResult:
        """Try each provider in the chain until one succeeds."""
        errors = []
        last_kind = ConfigError.kind
        for provider in self.fallback_chain():
            try:
                return AnalysisResult.ok(provider.analyze(subject_id, language, context))
            except MediaSeoError as e:
                logger.warning(f"{provider.name} failed for {subject_id}: {e}")
                errors.append(f"{provider.name}: {e}")
                last_kind = e.kind

        if not errors:
            return AnalysisResult.failed(ProcessingError(ConfigError.kind, "No provider configured."))
        return AnalysisResult.failed(ProcessingError(last_kind, "; ".join(errors)))

    def configured_providers(self) -> List[Dict[str, Any]]:
        rows = []
        for kind in ProviderKind:
            config = self.settings.providers.get(kind.value)
            rows.append(
                {
                    "name": kind.value,
                    "display_name": PROVIDER_CLASSES[kind].display_name,
                    "model": (config.model if config else "") or PROVIDER_CLASSES[kind].default_model,
                    "enabled": bool(config and config.enabled),
                    "primary": bool(config and config.is_primary),
                    "has_key": bool(config and config.has_key),
                }
            )
        return rows

    def test_provider(self, name: str) -> bool:
        provider = self.create(parse_kind(name))
        if provider is None:
            raise ConfigError(f"Provider {name} is not configured")

        problems = provider.validate_config()
        if problems:
            raise ConfigError(" ".join(problems))
        return provider.test_connection()

    def detect_tier(self, name: str) -> TierInfo:
        """Account tier and request limit reported by the provider's API."""
        provider = self.create(parse_kind(name))
        if provider is None:
            raise ConfigError(f"Provider {name} is not configured")
        return detect_tier(provider)
