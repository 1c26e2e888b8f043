"""
Application configuration with Pydantic validation.

All settings are loaded from environment variables with sensible defaults.
A YAML file can be used instead through :func:`load_settings`.
"""

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

from .constants import (
    DEFAULT_BACKOFF_BASE_MS,
    DEFAULT_BACKOFF_MAX_MS,
    DEFAULT_CLEANUP_INTERVAL_SECONDS,
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
    DEFAULT_CONNECTION_LOST_THRESHOLD_MINUTES,
    DEFAULT_LOG_LEVEL,
    DEFAULT_NIGHTSCOUT_TIMEOUT,
    DEFAULT_RECONNECT_MAX_ATTEMPTS,
    DEFAULT_RETENTION_MINUTES,
    DEFAULT_SCAN_TIMEOUT_SECONDS,
)
from .exceptions import ConfigurationError
from .models import SensorGeneration


@dataclass
class SessionConfig:
    """
    Knobs consumed by the session orchestrator.

    Kept separate from :class:`Settings` so the orchestrator can be built
    in tests without touching the environment.
    """
    generation: SensorGeneration = SensorGeneration.GEN3
    retention_minutes: int = DEFAULT_RETENTION_MINUTES
    reconnect_max_attempts: int = DEFAULT_RECONNECT_MAX_ATTEMPTS
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    backoff_max_ms: int = DEFAULT_BACKOFF_MAX_MS
    scan_timeout_seconds: float = DEFAULT_SCAN_TIMEOUT_SECONDS
    connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS
    cleanup_interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS
    create_sensor_change_events: bool = True
    auto_reconnect: bool = True

    def __post_init__(self):
        """Validate configuration after initialization."""
        self._validate()

    def _validate(self) -> None:
        """Validate configuration values."""
        if self.retention_minutes < 1:
            raise ConfigurationError("retention_minutes must be at least 1")
        if self.reconnect_max_attempts < 1:
            raise ConfigurationError("reconnect_max_attempts must be at least 1")
        if not (0 < self.backoff_base_ms <= self.backoff_max_ms):
            raise ConfigurationError("backoff_base_ms must be positive and not exceed backoff_max_ms")
        if self.scan_timeout_seconds <= 0 or self.connect_timeout_seconds <= 0:
            raise ConfigurationError("timeouts must be positive")
        if self.cleanup_interval_seconds <= 0:
            raise ConfigurationError("cleanup_interval_seconds must be positive")

    @property
    def retention_ms(self) -> int:
        return self.retention_minutes * 60 * 1000


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Durations are validated to be positive and the back-off bounds
    to be in logical order.
    """

    # =========================================================================
    # Sensor Selection
    # =========================================================================
    sensor_generation: SensorGeneration = SensorGeneration.GEN3
    device_address: Optional[str] = None

    # =========================================================================
    # Session Settings
    # =========================================================================
    retention_minutes: int = DEFAULT_RETENTION_MINUTES
    reconnect_max_attempts: int = DEFAULT_RECONNECT_MAX_ATTEMPTS
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    backoff_max_ms: int = DEFAULT_BACKOFF_MAX_MS
    scan_timeout_seconds: int = DEFAULT_SCAN_TIMEOUT_SECONDS
    connect_timeout_seconds: int = DEFAULT_CONNECT_TIMEOUT_SECONDS
    cleanup_interval_seconds: int = DEFAULT_CLEANUP_INTERVAL_SECONDS
    auto_reconnect: bool = True
    create_sensor_change_events: bool = True

    # =========================================================================
    # Alert Settings
    # =========================================================================
    expiry_warning_24h: bool = True
    expiry_warning_12h: bool = True
    expiry_warning_1h: bool = True
    connection_lost_alert: bool = True
    connection_lost_threshold_minutes: int = DEFAULT_CONNECTION_LOST_THRESHOLD_MINUTES

    # =========================================================================
    # Nightscout Upload
    # =========================================================================
    nightscout_url: Optional[str] = None
    nightscout_api_secret: Optional[str] = None
    nightscout_timeout_seconds: int = DEFAULT_NIGHTSCOUT_TIMEOUT

    # =========================================================================
    # Server Settings
    # =========================================================================
    debug: bool = False
    log_level: str = DEFAULT_LOG_LEVEL

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator('sensor_generation', mode='before')
    @classmethod
    def validate_generation(cls, v):
        """Accept generation names case-insensitively."""
        if isinstance(v, str):
            v_lower = v.lower()
            valid = {g.value for g in SensorGeneration}
            if v_lower not in valid:
                raise ValueError(f"Invalid sensor generation '{v}'. Must be one of: {', '.join(sorted(valid))}")
            return v_lower
        return v

    @field_validator(
        'retention_minutes', 'reconnect_max_attempts', 'backoff_base_ms', 'backoff_max_ms',
        'scan_timeout_seconds', 'connect_timeout_seconds', 'cleanup_interval_seconds',
        'nightscout_timeout_seconds',
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate counts and durations are positive."""
        if v < 1:
            raise ValueError(f"Value must be at least 1, got {v}")
        return v

    @field_validator('connection_lost_threshold_minutes')
    @classmethod
    def validate_connection_lost_threshold(cls, v: int) -> int:
        """Validate connection-lost threshold is within the supported range."""
        if not 5 <= v <= 120:
            raise ValueError(f"connection_lost_threshold_minutes must be 5-120, got {v}")
        return v

    @field_validator('nightscout_url')
    @classmethod
    def validate_nightscout_url(cls, v: Optional[str]) -> Optional[str]:
        """Normalize the Nightscout URL."""
        if v is None or not v.strip():
            return None
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid Nightscout URL '{v}'. Must start with http:// or https://")
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid Python logging level."""
        valid_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level '{v}'. Must be one of: {', '.join(valid_levels)}")
        return v_upper

    @model_validator(mode='after')
    def validate_backoff(self) -> 'Settings':
        """Validate that back-off bounds are in logical order."""
        if self.backoff_base_ms > self.backoff_max_ms:
            raise ValueError(
                f"backoff_base_ms ({self.backoff_base_ms}) must not exceed "
                f"backoff_max_ms ({self.backoff_max_ms})"
            )
        return self

    @model_validator(mode='after')
    def validate_nightscout(self) -> 'Settings':
        """Validate that an API secret accompanies a Nightscout URL."""
        if self.nightscout_url and not self.nightscout_api_secret:
            raise ValueError(
                "nightscout_api_secret must be provided when nightscout_url is set"
            )
        return self

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def session_config(self) -> SessionConfig:
        """Build the orchestrator configuration from these settings."""
        return SessionConfig(
            generation=self.sensor_generation,
            retention_minutes=self.retention_minutes,
            reconnect_max_attempts=self.reconnect_max_attempts,
            backoff_base_ms=self.backoff_base_ms,
            backoff_max_ms=self.backoff_max_ms,
            scan_timeout_seconds=self.scan_timeout_seconds,
            connect_timeout_seconds=self.connect_timeout_seconds,
            cleanup_interval_seconds=self.cleanup_interval_seconds,
            create_sensor_change_events=self.create_sensor_change_events,
            auto_reconnect=self.auto_reconnect,
        )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


def load_settings(config_path: str) -> Settings:
    """
    Load settings from a YAML file.

    Args:
        config_path: Path to the YAML configuration file

    Returns:
        Settings instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        pydantic.ValidationError: If a value fails validation
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    return Settings(**data)


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
