"""Activity journaling and logging setup."""

from .activity_logger import ActivityEvent, ActivityKind, ActivityLogger
from .logging_setup import JsonFormatter, setup_logging

__all__ = [
    "ActivityEvent",
    "ActivityKind",
    "ActivityLogger",
    "JsonFormatter",
    "setup_logging",
]
