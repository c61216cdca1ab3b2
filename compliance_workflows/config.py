"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import Field
from pydantic_settings import BaseSettings
from typing import Optional


class WorkflowConfig(BaseSettings):
    """Approval engine configuration"""

    # Storage configuration
    database_url: str = "memory://"  # memory://, sqlite:// or sqlite:///path/to/file.db

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stderr

    # Engine policy
    require_definition: bool = False  # True: start() without a definition raises NotFoundError
    enable_audit_hash_chain: bool = True

    # Notification configuration
    notification_webhook_url: str = ""  # Empty = disabled
    notification_timeout: float = Field(default=5.0, gt=0)

    # SLA configuration
    sla_warning_threshold_percent: float = Field(default=80.0, gt=0, le=100)
    sla_critical_hours: float = Field(default=24.0, ge=0)

    class Config:
        env_prefix = "WORKFLOW_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WorkflowConfig()


def get_config() -> WorkflowConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WorkflowConfig:
    """Reload configuration from environment"""
    global config
    config = WorkflowConfig()
    return config
