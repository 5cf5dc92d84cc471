"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from typing import Optional

from pydantic import ValidationError as PydanticValidationError
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import ConfigurationError


class EMIEngineConfig(BaseSettings):
    """EMI engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="EMI_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    use_sqlite: bool = True
    database_path: str = "emi_engine.db"  # ":memory:" for a throwaway database

    # Loan product rules
    interest_rate: float = 0.20  # Flat, on the whole principal
    min_loan_amount: int = 1000
    max_loan_amount: int = 100000
    min_total_days: int = 1
    max_total_days: int = 365

    # Clock configuration
    timezone: Optional[str] = None  # IANA name, None means host local time

    # Overdue sweep configuration
    sweep_interval_seconds: float = 3600.0
    sweep_on_read: bool = True  # Sweep before admin read models

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    @field_validator("interest_rate")
    @classmethod
    def _check_interest_rate(cls, value: float) -> float:
        if value < 0 or value > 1:
            raise ValueError("interest_rate must be between 0 and 1")
        return value

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.lower()
        if value not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return value

    @field_validator("sweep_interval_seconds")
    @classmethod
    def _check_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("sweep_interval_seconds must be positive")
        return value


# Global configuration instance, created on first use
_config: Optional[EMIEngineConfig] = None


def _load() -> EMIEngineConfig:
    try:
        return EMIEngineConfig()
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid EMI engine configuration: {e}") from e


def get_config() -> EMIEngineConfig:
    """Get global configuration instance"""
    global _config
    if _config is None:
        _config = _load()
    return _config


def reload_config() -> EMIEngineConfig:
    """Reload configuration from environment"""
    global _config
    _config = _load()
    return _config
