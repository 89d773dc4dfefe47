"""Configuration discovery and typed settings."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .errors import ConfigError
from .models import ProviderConfig

logger = logging.getLogger(__name__)

DEFAULT_FALLBACK_ORDER = ["openai", "anthropic", "google"]
DEFAULT_REQUEST_TIMEOUT = 60

DEFAULT_MODELS = {
    "openai": "gpt-4o",
    "anthropic": "claude-sonnet-4-5-20250929",
    "google": "gemini-1.5-flash",
}

API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}


class ConfigManager:
    """Locates YAML config files following the XDG base directory layout."""

    APP_DIR = "media-seo"

    @staticmethod
    def get_xdg_config_home() -> Path:
        xdg = os.environ.get("XDG_CONFIG_HOME")
        if xdg:
            return Path(xdg)
        return Path.home() / ".config"

    @staticmethod
    def get_xdg_config_dirs() -> List[Path]:
        dirs = os.environ.get("XDG_CONFIG_DIRS", "/etc/xdg")
        return [Path(d) for d in dirs.split(":") if d]

    @classmethod
    def find_config(cls, name: str = "config", explicit_path: Optional[str] = None) -> Optional[Dict]:
        """Find and load a config file.

        Search order: explicit path, $MEDIA_SEO_CONFIG, ./media-seo.yaml,
        ./<name>.yaml, $XDG_CONFIG_HOME/media-seo/<name>.yaml, then each
        $XDG_CONFIG_DIRS entry.
        """
        if explicit_path:
            path = Path(explicit_path)
            if path.exists():
                return cls.load_yaml(path)
            logger.error(f"Config file not found: {explicit_path}")
            return None

        candidates = []
        env_path = os.environ.get("MEDIA_SEO_CONFIG")
        if env_path:
            candidates.append(Path(env_path))
        candidates.append(Path.cwd() / "media-seo.yaml")
        candidates.append(Path.cwd() / f"{name}.yaml")
        candidates.append(cls.get_xdg_config_home() / cls.APP_DIR / f"{name}.yaml")
        for config_dir in cls.get_xdg_config_dirs():
            candidates.append(config_dir / cls.APP_DIR / f"{name}.yaml")

        for path in candidates:
            if path.exists():
                logger.info(f"Using config file: {path}")
                return cls.load_yaml(path)

        return None

    @staticmethod
    def load_yaml(path: Path) -> Optional[Dict]:
        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Failed to load config {path}: {e}")
            return None
        return data or {}

    @classmethod
    def merge_configs(cls, base: Dict, override: Dict) -> Dict:
        """Recursively merge override into a copy of base."""
        result = dict(base)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = cls.merge_configs(result[key], value)
            else:
                result[key] = value
        return result


def apply_cli_overrides(config: Dict, **overrides) -> Dict:
    """Merge non-None CLI options into the top level of config."""
    return ConfigManager.merge_configs(
        config, {k: v for k, v in overrides.items() if v is not None}
    )


@dataclass
class ProcessingSettings:
    max_retries: int = 3
    backoff_base: int = 5
    backoff_max: int = 300
    max_workers: int = 3
    batch_size: int = 50
    time_budget: int = 300
    request_timeout: int = DEFAULT_REQUEST_TIMEOUT
    auto_apply: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessingSettings":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class PromptSettings:
    variant: str = "standard"
    ai_role: str = "SEO expert"
    site_context: str = ""
    templates: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PromptSettings":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class StorageSettings:
    data_dir: str = "./media_seo_data"
    manifest: Optional[str] = None
    pricing_file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StorageSettings":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class Settings:
    """Typed view over the YAML config."""

    providers: Dict[str, ProviderConfig] = field(default_factory=dict)
    fallback_order: List[str] = field(default_factory=lambda: list(DEFAULT_FALLBACK_ORDER))
    rate_limits: Dict[str, Any] = field(default_factory=dict)
    quality: Dict[str, Any] = field(default_factory=dict)
    processing: ProcessingSettings = field(default_factory=ProcessingSettings)
    prompts: PromptSettings = field(default_factory=PromptSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Settings":
        data = data or {}
        processing = ProcessingSettings.from_dict(data.get("processing") or {})
        timeout = processing.request_timeout
        providers = {}
        for name, raw in (data.get("providers") or {}).items():
            providers[name] = provider_config_from_dict(name, raw or {}, timeout)
        for name, env_name in API_KEY_ENV.items():
            if name not in providers and os.environ.get(env_name):
                providers[name] = provider_config_from_dict(name, {}, timeout)

        fallback_order = data.get("fallback_order") or list(DEFAULT_FALLBACK_ORDER)
        unknown = [name for name in fallback_order if name not in DEFAULT_FALLBACK_ORDER]
        if unknown:
            raise ConfigError(f"Unknown providers in fallback_order: {', '.join(unknown)}")

        return cls(
            providers=providers,
            fallback_order=list(fallback_order),
            rate_limits=data.get("rate_limits") or {},
            quality=data.get("quality") or {},
            processing=processing,
            prompts=PromptSettings.from_dict(data.get("prompts") or {}),
            storage=StorageSettings.from_dict(data.get("storage") or {}),
        )


def provider_config_from_dict(
    name: str, raw: Dict[str, Any], default_timeout: int = DEFAULT_REQUEST_TIMEOUT
) -> ProviderConfig:
    """Build a ProviderConfig, resolving the API key from the environment if needed.

    Without its own ``timeout`` a provider uses ``processing.request_timeout``.
    """
    api_key = raw.get("api_key") or ""
    if not api_key:
        env_name = raw.get("api_key_env") or API_KEY_ENV.get(name)
        if env_name:
            api_key = os.environ.get(env_name, "")

    return ProviderConfig(
        name=name,
        api_key=api_key,
        model=raw.get("model") or DEFAULT_MODELS.get(name, ""),
        enabled=raw.get("enabled", True),
        is_primary=raw.get("primary", False),
        api_url=raw.get("api_url"),
        max_tokens=raw.get("max_tokens"),
        temperature=raw.get("temperature"),
        timeout=int(raw.get("timeout") or default_timeout),
    )


def load_settings(explicit_path: Optional[str] = None) -> Settings:
    data = ConfigManager.find_config("config", explicit_path)
    if data is None:
        logger.warning("No configuration file found, using defaults")
    return Settings.from_dict(data)
