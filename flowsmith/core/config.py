"""Engine configuration loading.

Configuration is read from YAML with the following precedence (first existing
file wins):

1. An explicit path passed to ``load_engine_config``
2. ``~/.flowsmith/config.yaml``
3. The packaged ``flowsmith/config/engine.yaml``

Selected values can then be overridden from the environment
(``FLOWSMITH_POLICY_ENV``, ``FLOWSMITH_HISTORY_LIMIT``).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

PACKAGE_DIR = Path(__file__).parent.parent

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Invalid engine configuration."""

    pass


class EngineConfig(BaseModel):
    """Tunables for the graph manager and its collaborators."""

    history_limit: int = Field(default=50, ge=1)  # Undo/redo depth per workflow
    max_nodes: int = Field(default=50, ge=1)  # Complexity warning thresholds
    max_connections: int = Field(default=100, ge=1)
    policy_environment: str = "development"
    policy_file: Path | None = None
    catalog_file: Path | None = None
    external_call_timeout: float = Field(default=5.0, gt=0)  # Policy/introspection calls
    lock_timeout: float = Field(default=30.0, gt=0)
    simulation_yield_every: int = Field(default=50, ge=1)  # Nodes between event-loop yields


STATIC_SEARCH_PATHS = [
    Path.home() / ".flowsmith/config.yaml",
    PACKAGE_DIR / "config/engine.yaml",
]

ENV_OVERRIDES = {
    "FLOWSMITH_POLICY_ENV": "policy_environment",
    "FLOWSMITH_HISTORY_LIMIT": "history_limit",
}


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping, got {type(data).__name__}")
    return data


def load_engine_config(
    path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> EngineConfig:
    """Load engine configuration from YAML and environment overrides.

    Args:
        path: Explicit config file. Must exist when given.
        environ: Environment mapping (defaults to os.environ)

    Raises:
        ConfigError: If the file is unreadable or values fail validation
    """
    environ = os.environ if environ is None else environ

    if path is not None and not path.exists():
        raise ConfigError(f"Config file not found: {path}")

    search_paths = [path] if path is not None else STATIC_SEARCH_PATHS
    data: dict = {}
    for candidate in search_paths:
        if candidate.exists():
            data = _read_yaml(candidate)
            logger.debug(f"Loaded engine config from {candidate}")
            break

    # Relative file references are resolved against the package directory
    for key in ("policy_file", "catalog_file"):
        value = data.get(key)
        if value and not Path(value).is_absolute():
            data[key] = PACKAGE_DIR / value

    for env_name, field_name in ENV_OVERRIDES.items():
        if env_name in environ:
            data[field_name] = environ[env_name]

    try:
        return EngineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid engine configuration: {e}") from e
