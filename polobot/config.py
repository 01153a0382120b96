"""
Configuration management for the Poloniex client.
Handles loading and validation of configuration from YAML files and environment variables.
"""

import os
import yaml
from typing import Optional
from pydantic import BaseModel, Field, ValidationInfo, field_validator
from pathlib import Path


API_BASE = "https://poloniex.com"
API_WS = "wss://api.poloniex.com"


class PoloniexConfig(BaseModel):
    """Poloniex API configuration."""
    base_url: str = API_BASE
    ws_url: str = API_WS
    realm: str = "realm1"
    api_key: Optional[str] = Field(default=None, validate_default=True)
    api_secret: Optional[str] = Field(default=None, validate_default=True)
    request_timeout: float = 30.0
    debug: bool = False

    @field_validator('api_key', 'api_secret', mode='before')
    @classmethod
    def load_from_env(cls, v, info: ValidationInfo):
        """Load API credentials from environment variables if not provided."""
        if v is None:
            return os.getenv(f"POLONIEX_{info.field_name.upper()}")
        return v


class StreamConfig(BaseModel):
    """Push channel configuration."""
    handshake_timeout: float = 10.0
    open_timeout: float = 10.0
    subscribe_timeout: float = 10.0
    ping_interval: Optional[float] = 20.0
    ping_timeout: Optional[float] = 10.0
    reconnect_delay: float = 0.5
    max_reconnect_delay: float = 30.0


class RateLimitConfig(BaseModel):
    """Request rate configuration."""
    requests_per_second: int = 6
    requests_per_minute: int = 360


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = "logs/polobot.log"


class Config(BaseModel):
    """Main configuration class."""
    poloniex: PoloniexConfig = Field(default_factory=PoloniexConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def load_from_file(cls, config_path: str) -> "Config":
        """Load configuration from YAML file."""
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(config_file, 'r') as f:
            config_data = yaml.safe_load(f) or {}

        return cls(**config_data)

    @classmethod
    def load_from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls(
            poloniex=PoloniexConfig(
                base_url=os.getenv("POLONIEX_BASE_URL", API_BASE),
                ws_url=os.getenv("POLONIEX_WS_URL", API_WS),
                request_timeout=float(os.getenv("POLONIEX_REQUEST_TIMEOUT", "30")),
                debug=os.getenv("POLONIEX_DEBUG", "false").lower() in ("1", "true", "yes"),
            ),
            stream=StreamConfig(
                handshake_timeout=float(os.getenv("STREAM_HANDSHAKE_TIMEOUT", "10")),
                reconnect_delay=float(os.getenv("STREAM_RECONNECT_DELAY", "0.5")),
                max_reconnect_delay=float(os.getenv("STREAM_MAX_RECONNECT_DELAY", "30")),
            ),
            rate_limits=RateLimitConfig(
                requests_per_second=int(os.getenv("RATE_LIMIT_PER_SECOND", "6")),
            ),
            logging=LoggingConfig(
                level=os.getenv("LOG_LEVEL", "INFO"),
                file=os.getenv("LOG_FILE", "logs/polobot.log"),
            ),
        )


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file. If None, loads from environment.

    Returns:
        Loaded configuration object.
    """
    if config_path:
        return Config.load_from_file(config_path)
    else:
        return Config.load_from_env()
