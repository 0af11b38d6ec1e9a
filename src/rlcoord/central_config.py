"""Centralized configuration loading from config.defaults.toml and config.toml.

Configuration Priority (highest to lowest):
    1. Environment variables (RLCOORD_<SECTION>_<KEY>)
    2. User configuration (config.toml, or the file named by $RLCOORD_CONFIG)
    3. Default configuration (config.defaults.toml)

Environment Variable Override Pattern:
    RLCOORD_<SECTION>_<KEY>=value

    Examples:
        RLCOORD_RL_MEMORY_SIZE=10000
        RLCOORD_ENGINE_TICK_INTERVAL=0.5
        RLCOORD_LOGGING_FORMAT=json

Usage:
    from rlcoord.central_config import get_config

    config = get_config()
    print(config.rl.memory_size)
    print(config.engine.tick_interval)
"""

import dataclasses
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Use tomllib for Python 3.11+, tomli for 3.10
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .config import EngineConfig, RLConfig
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "RLCOORD_"

# Project root (where config.defaults.toml lives)
_PROJECT_ROOT = Path(__file__).parent.parent.parent

# Default config file locations (searched in order)
CONFIG_SEARCH_PATHS = [
    Path("config.toml"),  # Current directory
    Path("/app/config.toml"),  # Docker container
    _PROJECT_ROOT / "config.toml",  # Project root
]

# Defaults file locations (searched in order)
DEFAULTS_SEARCH_PATHS = [
    Path("config.defaults.toml"),  # Current directory
    Path("/app/config.defaults.toml"),  # Docker container
    _PROJECT_ROOT / "config.defaults.toml",  # Project root
]

# Override names split on the first underscore after the prefix, so section
# names contain none.
SECTIONS = ("rl", "engine", "logging", "metrics")


@dataclass
class LoggingConfig:
    """Logging settings."""

    format: str = "text"
    level: str = "info"
    include_timestamps: bool = True


@dataclass
class MetricsConfig:
    """Prometheus exporter settings."""

    port: int = 0  # 0 = exporter disabled


@dataclass
class Config:
    """Root configuration container."""

    rl: RLConfig = field(default_factory=RLConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    def to_dict(self) -> dict[str, Any]:
        engine = self.engine.to_dict()
        engine["scoring_weights"] = list(engine["scoring_weights"])
        return {
            "rl": self.rl.to_dict(),
            "engine": engine,
            "logging": dataclasses.asdict(self.logging),
            "metrics": {"port": self.metrics.port},
        }


def _find_defaults_file() -> Path | None:
    """Find the config.defaults.toml file in standard locations."""
    for path in DEFAULTS_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _find_config_file() -> Path | None:
    """Find the config.toml file in standard locations."""
    env_path = os.environ.get("RLCOORD_CONFIG")
    if env_path:
        path = Path(env_path)
        if path.exists():
            return path
        logger.warning(f"RLCOORD_CONFIG={env_path} not found, searching defaults")

    for path in CONFIG_SEARCH_PATHS:
        if path.exists():
            return path

    return None


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep merge overlay dict into base dict."""
    result = base.copy()
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply RLCOORD_<SECTION>_<KEY> environment variable overrides."""
    for env_var, value in os.environ.items():
        if not env_var.startswith(ENV_PREFIX):
            continue

        if value == "":
            continue

        parts = env_var[len(ENV_PREFIX) :].lower().split("_", 1)
        if len(parts) != 2 or parts[0] not in SECTIONS:
            continue

        section, key = parts
        if section not in data:
            data[section] = {}

        data[section][key] = _convert_value(value, section, key, data)
        logger.debug(f"Applied override {env_var}={value}")

    return data


def _convert_value(value: str, section: str, key: str, data: dict) -> Any:
    """Convert string value to appropriate type based on existing config."""
    existing = data.get(section, {}).get(key)

    if existing is not None:
        if isinstance(existing, bool):
            return value.lower() in ("true", "1", "yes")
        elif isinstance(existing, int):
            return int(value)
        elif isinstance(existing, float):
            return float(value)
        elif isinstance(existing, (list, tuple)):
            return [float(v) for v in value.split(",")]

    # Default type inference
    if value.lower() in ("true", "false"):
        return value.lower() == "true"
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    return value


def _dict_to_config(data: dict[str, Any]) -> Config:
    """Convert a dictionary to a Config object.

    Raises:
        ConfigurationError: If a section holds invalid values.
    """
    engine = dict(data.get("engine", {}))
    # TOML has no null; an empty string or absent key means "no seed"
    if engine.get("seed") == "":
        engine["seed"] = None
    try:
        return Config(
            rl=RLConfig.from_dict(data.get("rl", {})),
            engine=EngineConfig.from_dict(engine),
            logging=LoggingConfig(**data.get("logging", {})),
            metrics=MetricsConfig(**data.get("metrics", {})),
        )
    except TypeError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e


# Cached config instance
_cached_config: Config | None = None


def load_config_data() -> dict[str, Any]:
    """Layer defaults, user config and environment into one dictionary."""
    defaults_path = _find_defaults_file()
    if defaults_path is not None:
        logger.debug(f"Loading defaults from {defaults_path}")
        with open(defaults_path, "rb") as f:
            data = tomllib.load(f)
    else:
        logger.warning("No config.defaults.toml found, using hardcoded defaults")
        data = {}

    config_path = _find_config_file()
    if config_path is not None:
        logger.info(f"Loading user configuration from {config_path}")
        with open(config_path, "rb") as f:
            user_data = tomllib.load(f)
        data = _deep_merge(data, user_data)

    return _apply_env_overrides(data)


def get_config(reload: bool = False) -> Config:
    """Get the configuration, loading from file if needed.

    Args:
        reload: Force reload from file even if cached.

    Returns:
        The Config object with all settings.

    Raises:
        ConfigurationError: If any configured value is out of range.
    """
    global _cached_config

    if _cached_config is not None and not reload:
        return _cached_config

    _cached_config = _dict_to_config(load_config_data())
    return _cached_config


def reset_config() -> None:
    """Reset the cached config (mainly for testing)."""
    global _cached_config
    _cached_config = None
