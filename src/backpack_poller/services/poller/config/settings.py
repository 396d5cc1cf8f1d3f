"""Configuration settings using Pydantic for validation."""

from typing import List, Optional, Any
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os
import re

import yaml


class BackpackConfig(BaseModel):
    """Backpack WebSocket stream configuration."""
    ws_url: str = Field(default="wss://ws.backpack.exchange/", description="Backpack WebSocket URL")
    channels: List[str] = Field(default=["bookTicker.SOL_USDC"], description="Stream channels to subscribe to")
    ping_interval_seconds: Optional[float] = Field(default=20.0, description="Keepalive ping interval")
    ping_timeout_seconds: Optional[float] = Field(default=20.0, description="Keepalive pong timeout")
    max_message_size: int = Field(default=2**20, description="Maximum inbound frame size in bytes")

    @field_validator('channels')
    @classmethod
    def validate_channels(cls, v):
        if not v:
            raise ValueError("At least one channel is required")
        return v


class ReconnectConfig(BaseModel):
    """Reconnect backoff configuration."""
    base_delay_ms: int = Field(default=1_000, description="Base reconnect delay")
    max_delay_ms: int = Field(default=30_000, description="Cap for the exponential term")
    max_exponent: int = Field(default=5, description="Largest doubling exponent")
    jitter_ms: int = Field(default=300, description="Exclusive upper bound of added jitter")
    max_attempts: Optional[int] = Field(default=None, description="Give up after this many attempts (None retries forever)")

    @field_validator('base_delay_ms', 'max_delay_ms', 'max_exponent', 'jitter_ms')
    @classmethod
    def validate_non_negative(cls, v):
        if v < 0:
            raise ValueError("Reconnect delays must be non-negative")
        return v


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        if v.upper() not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            raise ValueError(f"Unknown log level: {v}")
        return v.upper()

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v.lower() not in ['json', 'text']:
            raise ValueError("Log format must be 'json' or 'text'")
        return v.lower()


class PollerSettings(BaseSettings):
    """Main poller service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Service configuration
    service_name: str = Field(default="backpack-poller", description="Service name")
    environment: str = Field(default="local", description="Environment: local, dev, prod")

    # Component configurations
    backpack: BackpackConfig = Field(default_factory=BackpackConfig)
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in ['local', 'dev', 'prod']:
            raise ValueError("Environment must be 'local', 'dev', or 'prod'")
        return v


_ENV_VAR = re.compile(r'\$\{([^}]+)\}')


def _expand(match) -> str:
    name, sep, default = match.group(1).partition(':-')
    value = os.getenv(name.strip())
    if value is not None:
        return value
    if sep:
        return default
    raise ValueError(f"Required environment variable '{name.strip()}' is not set")


def substitute_env_vars(obj: Any) -> Any:
    """Expand ``${VAR}`` and ``${VAR:-default}`` in every string of a loaded config tree."""
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    if isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    if isinstance(obj, str):
        return _ENV_VAR.sub(_expand, obj)
    return obj


def load_settings(config_file: Optional[str] = None) -> PollerSettings:
    """
    Build settings from an optional YAML file plus the environment.

    Values in the file win over plain environment variables; with no file,
    only the environment (and ``.env``) is read.

    Raises:
        FileNotFoundError: If ``config_file`` is given but missing
        ValueError: If a required ``${VAR}`` is unset or a value is invalid
    """
    if not config_file:
        return PollerSettings()

    if not os.path.exists(config_file):
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    with open(config_file, 'r') as f:
        raw_config = yaml.safe_load(f) or {}

    return PollerSettings(**substitute_env_vars(raw_config))
