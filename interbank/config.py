"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BankConfig(BaseSettings):
    """Interbank ledger service configuration"""

    model_config = SettingsConfigDict(
        env_prefix="BANK_",
        env_file=".env",
        case_sensitive=False,
    )

    # Identity of this bank in the settlement network
    bank_prefix: str = "ABC"
    bank_name: str = "Interbank Demo Bank"
    default_currency: str = "EUR"

    # Database configuration
    database_url: str = "sqlite:///interbank.db"  # memory:// for tests

    # Central bank registry
    central_bank_url: str = "https://henno.cfd/central-bank"
    central_bank_api_key: str = ""
    registry_cache_ttl_seconds: int = 300

    # Offline mode: no network calls to the registry or counterpart banks
    test_mode: bool = False

    # Outbound HTTP
    http_timeout_seconds: float = 5.0
    delivery_max_attempts: int = 3
    delivery_backoff_seconds: float = 0.5

    # Signing keys
    rotate_keys_on_startup: bool = False  # default policy: keep the persisted key
    key_size: int = 2048
    retired_key_retention: int = 2
    key_encryption_secret: str = ""
    token_ttl_seconds: int = 300  # 0 = no exp claim

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None

    @field_validator("bank_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        value = value.strip().upper()
        if len(value) != 3:
            raise ValueError("bank_prefix must be exactly 3 characters")
        return value

    @field_validator("default_currency")
    @classmethod
    def _validate_currency(cls, value: str) -> str:
        value = value.strip().upper()
        if len(value) != 3:
            raise ValueError("default_currency must be an ISO-4217 code")
        return value


# Global configuration instance
config = BankConfig()


def get_config() -> BankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> BankConfig:
    """Reload configuration from environment"""
    global config
    config = BankConfig()
    return config
