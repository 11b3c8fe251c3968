"""Configuration loading and validation."""

from .models import (
    # Enums
    BrowserType,
    JobKind,
    JobStatus,
    # Config models
    AppConfig,
    BrowserConfig,
    LoggingConfig,
    OrchestratorConfig,
    StoreConfig,
)
from .loader import ConfigError, load_app_config, validate_app_config_file

__all__ = [
    # Enums
    "BrowserType",
    "JobKind",
    "JobStatus",
    # Config models
    "AppConfig",
    "BrowserConfig",
    "LoggingConfig",
    "OrchestratorConfig",
    "StoreConfig",
    # Loaders
    "ConfigError",
    "load_app_config",
    "validate_app_config_file",
]
