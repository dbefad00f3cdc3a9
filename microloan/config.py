"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class MicroloanConfig(BaseSettings):
    """Loan engine configuration"""

    model_config = SettingsConfigDict(
        env_prefix="MICROLOAN_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage configuration
    database_url: str = "sqlite:///microloan.db"  # or memory://

    # Logging configuration
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None  # If None, logs to stderr

    # Business rules
    currency: str = "INR"
    max_batch_quantity: int = 50
    overpayment_policy: Literal["clamp", "reject", "allow"] = "clamp"
    default_grace_days: int = 0
    token_prefix: str = "TKN"
    batch_prefix: str = "BATCH"

    # Feature flags
    enable_audit_logging: bool = True


# Global configuration instance
config = MicroloanConfig()


def get_config() -> MicroloanConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicroloanConfig:
    """Reload configuration from environment"""
    global config
    config = MicroloanConfig()
    return config
