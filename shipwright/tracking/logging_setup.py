"""Process-wide logging configuration."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config.models import LoggingConfig

TEXT_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Render log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(config: Optional[LoggingConfig] = None, to_file: bool = False) -> None:
    """
    Configure the ``shipwright`` logger hierarchy.

    Args:
        config: Logging configuration (default: INFO, text)
        to_file: Also write ``shipwright.log`` under the configured output dir
    """
    config = config or LoggingConfig()
    formatter: logging.Formatter
    if config.format == "json":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(TEXT_FORMAT)

    root = logging.getLogger("shipwright")
    root.setLevel(config.level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if to_file:
        log_dir = Path(config.output_dir).expanduser()
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / "shipwright.log", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
