"""Application configuration loader.

Loads centralized configuration from data/config/grader_config_v1.yaml,
falling back to built-in defaults when the file is missing.

Usage:
    from grading.config.app_config import load_app_config, get_provider_config

    config = load_app_config()
    provider = get_provider_config("openai")
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

logger = structlog.get_logger(__name__)

# Config file path (relative to project root)
CONFIG_FILE = Path("data/config/grader_config_v1.yaml")

DATA_DIR_ENV = "GRADER_DATA_DIR"


@dataclass
class ProviderConfig:
    """Configuration for a single LLM provider."""

    base_url: str | None
    default_model: str
    api_key_env: str | None = None

    def get_api_key(self) -> str | None:
        """Get API key from environment variable."""
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None


@dataclass
class GradingConfig:
    """Thresholds and model choices for the hybrid pipeline."""

    high_confidence: float = 0.85
    medium_confidence: float = 0.6
    simple_confidence: float = 0.4
    semantic_threshold: float = 0.75
    semantic_accept_confidence: float = 0.75
    max_local_answer_length: int = 100
    cloud_provider: str = "openai"
    cloud_model_simple: str = "gpt-4o-mini"
    cloud_model_complex: str = "gpt-4.1"
    complexity_simple_threshold: float = 25.0
    escalation_confidence: float = 0.7
    escalation_complexity: float = 30.0
    batch_size: int = 8
    enable_semantic_grading: bool = True
    semantic_model: str = "all-MiniLM-L6-v2"


@dataclass
class CacheConfig:
    """Cache lifetimes."""

    question_ttl_days: int = 7
    skill_ttl_days: int = 14
    version: str = "v1.0"


@dataclass
class CostConfig:
    """Per-1K-token rates and savings estimates (USD)."""

    rates_per_1k: dict[str, float] = field(
        default_factory=lambda: {"gpt-4o-mini": 0.00015, "gpt-4.1": 0.003}
    )
    cost_per_cloud_question: float = 0.01
    history_limit: int = 1000


@dataclass
class AppConfig:
    """Application-wide configuration."""

    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    grading: GradingConfig = field(default_factory=GradingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    costs: CostConfig = field(default_factory=CostConfig)
    paths: dict[str, str] = field(default_factory=dict)


# Module-level cache
_cached_config: AppConfig | None = None


def _get_defaults() -> dict[str, Any]:
    """Get default configuration values."""
    return {
        "providers": {
            "lmstudio": {
                "base_url": "http://localhost:1234/v1",
                "default_model": "llama-3.2-3b-instruct",
                "api_key_env": None,
            },
            "openai": {
                "base_url": "https://api.openai.com/v1",
                "default_model": "gpt-4o-mini",
                "api_key_env": "OPENAI_API_KEY",
            },
            "anthropic": {
                "base_url": "https://api.anthropic.com/v1",
                "default_model": "claude-sonnet-4-20250514",
                "api_key_env": "ANTHROPIC_API_KEY",
            },
        },
        "grading": {},
        "cache": {},
        "costs": {},
        "paths": {
            "db_file": "grader.db",
            "exams_dir": "exams",
            "reports_dir": "reports",
        },
    }


def _parse_config(data: dict[str, Any]) -> AppConfig:
    """Parse configuration dictionary into AppConfig object."""
    defaults = _get_defaults()

    providers = {}
    for name, pconfig in (data.get("providers") or defaults["providers"]).items():
        providers[name] = ProviderConfig(
            base_url=pconfig.get("base_url"),
            default_model=pconfig.get("default_model", "default"),
            api_key_env=pconfig.get("api_key_env"),
        )

    # Unknown keys are ignored so older files keep loading
    grading_data = data.get("grading") or {}
    grading = GradingConfig(
        **{k: v for k, v in grading_data.items() if k in GradingConfig.__dataclass_fields__}
    )

    cache_data = data.get("cache") or {}
    cache = CacheConfig(
        **{k: v for k, v in cache_data.items() if k in CacheConfig.__dataclass_fields__}
    )

    costs_data = data.get("costs") or {}
    costs = CostConfig()
    if "rates_per_1k" in costs_data:
        costs.rates_per_1k.update(costs_data["rates_per_1k"])
    costs.cost_per_cloud_question = costs_data.get(
        "cost_per_cloud_question", costs.cost_per_cloud_question
    )
    costs.history_limit = costs_data.get("history_limit", costs.history_limit)

    paths = dict(defaults["paths"])
    paths.update(data.get("paths") or {})

    return AppConfig(
        providers=providers,
        grading=grading,
        cache=cache,
        costs=costs,
        paths=paths,
    )


def load_app_config(force_reload: bool = False) -> AppConfig:
    """Load application config.

    Args:
        force_reload: If True, ignore cached config and reload from file.

    Returns:
        AppConfig object with all settings.
    """
    global _cached_config

    if _cached_config is not None and not force_reload:
        return _cached_config

    data: dict[str, Any]

    if CONFIG_FILE.exists():
        logger.debug("loading_app_config", source=str(CONFIG_FILE))
        data = yaml.safe_load(CONFIG_FILE.read_text(encoding="utf-8")) or {}
    else:
        logger.info("using_default_config")
        data = _get_defaults()

    _cached_config = _parse_config(data)
    return _cached_config


def get_provider_config(provider: str) -> ProviderConfig | None:
    """Get configuration for a specific provider.

    Args:
        provider: Provider name (e.g., "lmstudio", "openai")

    Returns:
        ProviderConfig or None if provider not found.
    """
    config = load_app_config()
    return config.providers.get(provider)


def get_data_dir() -> Path:
    """Resolve the data directory, honouring GRADER_DATA_DIR."""
    return Path(os.environ.get(DATA_DIR_ENV, "data"))


def get_db_path(data_dir: Path | None = None) -> Path:
    """Resolve the SQLite file inside the data directory."""
    config = load_app_config()
    return (data_dir or get_data_dir()) / config.paths.get("db_file", "grader.db")


def clear_config_cache() -> None:
    """Clear the configuration cache.

    Useful for testing or when config is modified at runtime.
    """
    global _cached_config
    _cached_config = None
