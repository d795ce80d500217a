"""Configuration package for the hybrid grader."""

from grading.config.app_config import (
    AppConfig,
    CacheConfig,
    CostConfig,
    GradingConfig,
    ProviderConfig,
    clear_config_cache,
    get_data_dir,
    get_db_path,
    get_provider_config,
    load_app_config,
)

__all__ = [
    "AppConfig",
    "CacheConfig",
    "CostConfig",
    "GradingConfig",
    "ProviderConfig",
    "clear_config_cache",
    "get_data_dir",
    "get_db_path",
    "get_provider_config",
    "load_app_config",
]
