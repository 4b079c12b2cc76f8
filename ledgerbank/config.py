"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class LedgerBankConfig(BaseSettings):
    """LedgerBank configuration"""

    # Database configuration
    database_url: str = "sqlite:///ledgerbank.db"  # or memory://
    database_busy_timeout: float = 5.0  # seconds SQLite waits for the write lock

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: List[str] = ["http://localhost:5173"]

    # Security configuration
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 24
    jwt_algorithm: str = "HS256"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Transaction engine
    max_conflict_retries: int = 3
    default_currency: str = "USD"
    max_description_length: int = 500

    # Query facade
    default_page_size: int = 10
    max_page_size: int = 100
    statement_default_days: int = 30

    # Loan rules
    min_loan_principal: str = "1000"
    max_loan_interest_rate: str = "30"
    max_loan_tenure_months: int = 360
    loan_payment_interval_days: int = 30

    # Collaborators
    enable_audit_logging: bool = True
    enable_notifications: bool = True
    notification_webhook_url: Optional[str] = None

    class Config:
        env_prefix = "LEDGERBANK_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LedgerBankConfig()


def get_config() -> LedgerBankConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerBankConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerBankConfig()
    return config
