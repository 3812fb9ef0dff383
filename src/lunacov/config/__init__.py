"""Config module exports."""

from lunacov.config.loader import get_cache_path, load_config
from lunacov.config.models import (
    CacheConfig,
    ClassifierConfig,
    CoverageConfig,
    LoggingConfig,
    LunacovConfig,
    ReportConfig,
)

__all__ = [
    "load_config",
    "get_cache_path",
    "LunacovConfig",
    "CacheConfig",
    "ClassifierConfig",
    "CoverageConfig",
    "LoggingConfig",
    "ReportConfig",
]
