"""
Configuration loading for the task orders service.

Settings are resolved from built-in defaults, then an optional YAML file,
then ``TASK_ORDERS_*`` environment variables (highest precedence).
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .exceptions import ConfigError

ENV_PREFIX = "TASK_ORDERS_"

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseModel):
    """Runtime configuration for the store, rating engine and HTTP server."""

    database_path: str = Field("task_orders.db", description="Path to SQLite database file")
    busy_timeout_ms: int = Field(5000, ge=0, description="SQLite busy timeout")
    host: str = Field("127.0.0.1", description="API bind address")
    port: int = Field(8080, ge=1, le=65535, description="API port")
    log_level: str = Field("INFO", description="Root log level")
    leaderboard_size: int = Field(10, ge=1, le=100, description="Default top users limit")
    difficulty_weights: Dict[str, float] = Field(
        default_factory=dict,
        description="Difficulty group weight overrides",
    )
    default_weight: float = Field(1.0, ge=0.0, description="Weight for unknown difficulty groups")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level names against the logging module."""
        level = str(v).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("difficulty_weights", mode="before")
    @classmethod
    def normalize_weight_keys(cls, v):
        """YAML reads numeric group labels (``3: 7``) as integers; store them as text."""
        if isinstance(v, dict):
            return {str(group).strip(): weight for group, weight in v.items()}
        return v

    @field_validator("difficulty_weights")
    @classmethod
    def validate_weights(cls, v):
        """Weights must be non-negative."""
        for group, weight in v.items():
            if weight < 0:
                raise ValueError(f"Weight for difficulty group '{group}' must be >= 0")
        return v


# Environment variable suffix -> settings field
ENV_FIELDS = {
    "DATABASE_PATH": "database_path",
    "BUSY_TIMEOUT_MS": "busy_timeout_ms",
    "HOST": "host",
    "PORT": "port",
    "LOG_LEVEL": "log_level",
    "LEADERBOARD_SIZE": "leaderboard_size",
    "DEFAULT_WEIGHT": "default_weight",
}


def _read_yaml(config_path: str) -> Dict[str, Any]:
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file {config_path}: {e}")

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a YAML dictionary")
    return data


def load_settings(config_path: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from defaults, an optional YAML file and the environment.

    Args:
        config_path: YAML config file; ``TASK_ORDERS_CONFIG`` is used when omitted
        environ: Environment mapping, defaults to ``os.environ``

    Raises:
        ConfigError: For unreadable files or invalid values
    """
    if environ is None:
        environ = os.environ

    values: Dict[str, Any] = {}

    config_path = config_path or environ.get(f"{ENV_PREFIX}CONFIG")
    if config_path:
        values.update(_read_yaml(config_path))

    for suffix, field_name in ENV_FIELDS.items():
        raw = environ.get(f"{ENV_PREFIX}{suffix}")
        if raw is not None and raw != "":
            values[field_name] = raw

    try:
        return Settings(**values)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once for CLI and server processes."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
