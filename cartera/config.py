"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class CarteraConfig(BaseSettings):
    """Cartera engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # sqlite or memory
    database_path: str = "cartera.db"

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    default_currency: str = "COP"
    payment_tolerance: str = "0.01"  # Max gap between payment and its distribution
    min_installments: int = 2
    max_installments: int = 60
    max_monthly_rate_percent: str = "10"
    overdue_report_days: int = 30  # Portfolio "seriously overdue" threshold

    # Concurrency configuration
    allocation_max_retries: int = 3

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "CARTERA_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = CarteraConfig()


def get_config() -> CarteraConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> CarteraConfig:
    """Reload configuration from environment"""
    global config
    config = CarteraConfig()
    return config
