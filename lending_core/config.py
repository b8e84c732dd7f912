"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Lending back-office configuration"""

    # Database configuration
    database_url: str = "sqlite:///lending.db"  # or memory:// for tests and demos

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "Pesos"
    default_ledger_channel: str = "cash"  # cash or bank
    unidentified_client_label: str = "unidentified client"
    record_disbursement_on_create: bool = True

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
