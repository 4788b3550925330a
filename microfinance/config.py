"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class MicrofinanceConfig(BaseSettings):
    """Microfinance back-office configuration"""

    # Database configuration
    database_url: str = "sqlite:///microfinance.db"  # or memory:// for tests

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    api_workers: int = 1

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24 * 7  # mobile tokens last a week
    jwt_algorithm: str = "HS256"
    password_min_length: int = 6
    session_timeout_hours: int = 8
    session_cookie_name: str = "mf_session"
    session_cookie_secure: bool = False

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Business rules configuration
    currency: str = "INR"
    report_timezone: str = "UTC"  # IANA zone for today/week/month windows
    dashboard_top_collectors: int = 5
    dashboard_recent_payments: int = 10

    # Spreadsheet backup service
    backup_webhook_url: str = ""  # Empty = development mode, summaries are logged
    backup_api_key: str = ""
    backup_timeout: float = 10.0

    # Image / asset store
    asset_store_url: str = ""  # Empty = uploads kept in memory
    asset_store_api_key: str = ""
    asset_store_timeout: float = 15.0
    asset_store_folder: str = "borrowers"

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "MICROFINANCE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = MicrofinanceConfig()


def get_config() -> MicrofinanceConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> MicrofinanceConfig:
    """Reload configuration from environment"""
    global config
    config = MicrofinanceConfig()
    return config
