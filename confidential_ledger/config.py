"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Components never read configuration themselves; LedgerSystem passes values in.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .keys import identity_from_hex

# Default deployment identity; override with VEIL_PROGRAM_ID
DEFAULT_PROGRAM_ID = "45c1e3a1f0b7d2c98e6a5b4f3d2c1b0a99887766554433221100ffeeddccbbaa"


class LedgerConfig(BaseSettings):
    """Confidential ledger configuration"""

    # Deployment identity used in every address derivation
    program_id: str = DEFAULT_PROGRAM_ID

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "confidential_ledger.db"

    # Codec and arithmetic policy
    balance_codec: str = "noise"
    strict_overflow: bool = False  # True: credits past u64 max fail instead of saturating

    # Custody configuration
    minimum_vault_reserve: int = 890880  # rent-exempt minimum of an empty account

    # Direct transfers
    direct_transfer_settles: bool = False  # False: event-only notification

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Feature flags
    enable_audit_logging: bool = True

    model_config = SettingsConfigDict(
        env_prefix="VEIL_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("program_id")
    @classmethod
    def _check_program_id(cls, value: str) -> str:
        identity_from_hex(value)
        return value.lower()

    @field_validator("storage_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        if value not in ("sqlite", "memory"):
            raise ValueError("storage_backend must be 'sqlite' or 'memory'")
        return value

    @field_validator("minimum_vault_reserve")
    @classmethod
    def _check_reserve(cls, value: int) -> int:
        if value < 0:
            raise ValueError("minimum_vault_reserve cannot be negative")
        return value

    @property
    def program_id_bytes(self) -> bytes:
        return identity_from_hex(self.program_id)


config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get configuration instance loaded at import time"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
