"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class TellerConfig(BaseSettings):
    """Teller core configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///teller_core.db"  # memory://, sqlite:///path, postgresql://...
    database_pool_size: int = 5
    lock_timeout_seconds: float = 5.0  # Max wait for an account row lock
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    conflict_retry_attempts: int = 3  # Retries of a whole request on StoreConflict
    
    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_expiry_hours: int = 8
    jwt_algorithm: str = "HS256"
    password_min_length: int = 6
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Business rules configuration
    base_currency: str = "SYP"
    amount_precision: int = 2
    rate_precision: int = 6
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "TELLER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = TellerConfig()


def get_config() -> TellerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> TellerConfig:
    """Reload configuration from environment"""
    global config
    config = TellerConfig()
    return config
