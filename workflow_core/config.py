"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WorkflowConfig(BaseSettings):
    """Workflow engine configuration"""

    # Storage configuration
    storage_backend: str = "sqlite"  # memory, sqlite or postgres
    database_url: str = "workflows.db"  # SQLite path or PostgreSQL DSN

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8095

    # Security configuration
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    dev_user_id: str = "dev-user"  # Caller identity when auth is disabled

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # SLA configuration
    sla_check_interval_seconds: int = 300
    reminder_window_hours: int = 24
    default_approval_due_hours: Optional[int] = 48

    # Engine configuration
    conflict_retries: int = 1
    template_list_limit: int = 50

    # External action service (automation and notification steps)
    action_service_url: str = ""  # Empty = log actions only
    action_timeout_seconds: float = 10.0
    action_api_key: str = ""

    # Feature flags
    enable_audit_logging: bool = True
    enable_sla_scheduler: bool = True

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
