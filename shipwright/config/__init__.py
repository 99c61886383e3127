"""Configuration models and loading."""

from .loader import get_config_paths, load_config, save_config
from .models import (
    AssistantConfig,
    ExecutionConfig,
    GitConfig,
    LoggingConfig,
    MemoryConfig,
    ServerConfig,
    ShipwrightConfig,
    parse_duration,
)

__all__ = [
    "AssistantConfig",
    "ExecutionConfig",
    "GitConfig",
    "LoggingConfig",
    "MemoryConfig",
    "ServerConfig",
    "ShipwrightConfig",
    "get_config_paths",
    "load_config",
    "parse_duration",
    "save_config",
]
