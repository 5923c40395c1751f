"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class EngineConfig(BaseSettings):
    """Lending engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    sqlite_path: str = "lending_engine.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 5000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # stderr when unset

    # Worker configuration
    worker_enabled: bool = True
    worker_concurrency: int = 5
    worker_poll_interval_seconds: float = 1.0
    worker_batch_size: int = 20
    job_max_attempts: int = 3
    job_retry_backoff_seconds: int = 30
    stuck_job_minutes: int = 5
    recovery_sweep_interval_seconds: int = 60

    # Regional defaults
    default_country_code: str = "254"
    default_currency: str = "KES"

    # Ledger accounts used when posting allocations (per-tenant override via tenant.settings)
    clearing_account_code: str = "1010"
    loan_receivable_account_code: str = "1200"
    overpayment_account_code: str = "2100"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = EngineConfig()


def get_config() -> EngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EngineConfig:
    """Reload configuration from environment"""
    global config
    config = EngineConfig()
    return config
