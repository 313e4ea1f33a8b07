"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Dict


DEFAULT_SEED_ACCOUNTS: Dict[int, int] = {
    1: 100000,
    2: 80000,
    3: 1000000,
    4: 10000000,
    5: 500000,
}


class LedgerConfig(BaseSettings):
    """Account ledger configuration"""

    # Storage configuration
    storage_backend: str = "memory"  # memory, sqlite or postgresql
    database_url: str = "ledger.db"  # SQLite path or PostgreSQL DSN
    database_pool_min: int = 1
    database_pool_size: int = 20

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 9999

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    statement_size: int = Field(10, gt=0)
    enforce_credit_limit: bool = False  # Debits may reach -limit instead of 0
    seed_accounts: Dict[int, int] = Field(default_factory=lambda: dict(DEFAULT_SEED_ACCOUNTS))

    class Config:
        env_prefix = "LEDGER_"
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
