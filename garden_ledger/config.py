"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LedgerConfig(BaseSettings):
    """Garden ledger configuration"""

    # Storage configuration
    storage_type: str = "memory"  # memory, sqlite or postgresql
    database_url: Optional[str] = None  # SQLite path or PostgreSQL DSN
    database_pool_size: int = 10

    # Account lease configuration
    lock_backend: str = "memory"  # memory (single instance) or storage (shared)
    lock_timeout_seconds: float = 5.0
    lock_poll_interval_seconds: float = 0.05
    lock_lease_seconds: float = 30.0  # Expiry of a lease whose holder died

    # Conditional write retries when a concurrent writer wins
    max_write_retries: int = 3

    # Query page sizes
    account_history_limit: int = 50
    admin_list_limit: int = 100

    # Notification configuration
    admin_email: str = "admin@example.com"
    notification_webhook_url: str = ""  # Empty = log only
    notification_timeout: float = 5.0

    # Reconciliation sweep
    reconciliation_grace_seconds: float = 60.0

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "GARDEN_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config
