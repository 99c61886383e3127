"""Layered configuration: built-in defaults, the user's file, the project's file.

Each file is read as a YAML mapping, has its ``${VAR}`` and
``${VAR:default}`` references expanded, and is laid over the layers below
it. The merged tree is validated once, so a numeric or boolean field may
come from the environment.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError

from shipwright.config.models import ShipwrightConfig
from shipwright.core.exceptions import ConfigurationError

PROJECT_DIR = ".shipwright"
CONFIG_FILE = "config.yaml"

ENV_REFERENCE = re.compile(r"\$\{([^}:]+)(?::([^}]*))?\}")


def expand_env(value: Any) -> Any:
    """Replace ``${VAR}`` and ``${VAR:default}`` in every string of a YAML tree."""
    if isinstance(value, dict):
        return {key: expand_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [expand_env(item) for item in value]
    if isinstance(value, str):
        return ENV_REFERENCE.sub(lambda m: os.environ.get(m.group(1), m.group(2) or ""), value)
    return value


def user_config_path() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "shipwright" / CONFIG_FILE


def find_project_config(start: Optional[Path] = None) -> Optional[Path]:
    """Config file of the nearest ``.shipwright`` directory at or above ``start``."""
    here = (start or Path.cwd()).resolve()
    for directory in (here, *here.parents):
        if (directory / PROJECT_DIR).is_dir():
            return directory / PROJECT_DIR / CONFIG_FILE
    return None


def get_config_paths() -> Dict[str, Optional[Path]]:
    return {"global": user_config_path(), "project": find_project_config()}


def read_layer(path: Path) -> Dict[str, Any]:
    """
    Read one configuration file.

    A missing or empty file is an empty layer.

    Raises:
        ConfigurationError: If the file is unreadable or not a YAML mapping
    """
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Failed to read {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"{path}: configuration file must contain a YAML object, got {type(data).__name__}"
        )
    return expand_env(data)


def overlay(base: Dict[str, Any], layer: Dict[str, Any]) -> Dict[str, Any]:
    """Lay ``layer`` over ``base``; sections present in both merge key by key."""
    merged = dict(base)
    for key, value in layer.items():
        below = merged.get(key)
        if isinstance(below, dict) and isinstance(value, dict):
            merged[key] = overlay(below, value)
        else:
            merged[key] = value
    return merged


def load_config(
    project_config_path: Optional[Path] = None,
    global_config_path: Optional[Path] = None,
) -> ShipwrightConfig:
    """Load the user's and the project's configuration over the defaults.

    Args:
        project_config_path: Project file (default: nearest ``.shipwright/config.yaml``)
        global_config_path: User file (default: ``$XDG_CONFIG_HOME/shipwright/config.yaml``)

    Raises:
        ConfigurationError: If a file is unreadable or the result is invalid
    """
    data: Dict[str, Any] = {}
    for path in (
        global_config_path or user_config_path(),
        project_config_path or find_project_config(),
    ):
        if path is not None:
            data = overlay(data, read_layer(path))

    try:
        return ShipwrightConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e


def save_config(config: ShipwrightConfig, config_path: Path) -> None:
    """Write ``config`` as YAML, creating parent directories.

    Raises:
        ConfigurationError: If the file cannot be written
    """
    text = yaml.safe_dump(
        config.model_dump(exclude_none=True, mode="json"), sort_keys=False, allow_unicode=True
    )
    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(text, encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to save configuration to {config_path}: {e}") from e
