"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class MicrofinanceConfig(BaseSettings):
    """Microfinance repayment engine configuration"""

    # Database configuration
    database_url: str = "sqlite:///microfinance.db"

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Penalty defaults, used when no penalty settings are stored
    default_penalty_rate: str = "2.0"  # percent
    default_penalty_type: str = "per_day"  # per_day, per_week, fixed_total

    # Collection calendar
    exclude_saturdays: bool = False

    # Identifiers
    loan_id_prefix: str = "L"
    receipt_prefix: str = "RCP"

    # Settlement rules
    enforce_amount_ceiling: bool = True
    batch_max_workers: int = 4

    # Notification configuration
    notify_on_payment_received: bool = True
    sms_enabled: bool = False
    notification_webhook_url: Optional[str] = None
    notification_timeout: int = 10

    class Config:
        env_prefix = "MICROFIN_"
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
