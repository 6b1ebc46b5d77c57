"""
Configuration Module
====================

Application settings and configuration management using Pydantic.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="sla-notifier", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Server ==========
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8000, description="Server port", ge=1, le=65535)

    # ========== Database ==========
    database_url: str = Field(
        default="postgresql+asyncpg://localhost:5432/sla_notifier",
        description="PostgreSQL connection URL (async)"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)

    # ========== SLA Configuration ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to SLA notification configuration YAML file"
    )
    sla_evaluation_interval: int = Field(
        default=3600,
        description="Seconds between SLA notification runs (0 disables the scheduler)",
        ge=0
    )

    # ========== Azure DevOps ==========
    azure_devops_org_url: str = Field(
        default="https://dev.azure.com/example",
        description="Azure DevOps organization URL"
    )
    azure_devops_project: str = Field(
        default="",
        description="Azure DevOps project name"
    )
    azure_devops_pat: Optional[str] = Field(
        default=None,
        description="Azure DevOps personal access token"
    )
    azure_devops_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout for Azure DevOps API calls",
        ge=0.1,
        le=120
    )

    # ========== Chat Delivery ==========
    chat_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for chat webhook calls",
        ge=0.1,
        le=30
    )

    # ========== CORS ==========
    cors_origins: List[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins"
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-ap-south-1.grafana.net)"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class NotificationType(str):
    """Notification types recorded in a subscriber's history."""
    WORK_ITEM_UPDATE_SLA = "WorkItemUpdateSla"
    AD_HOC = "AdHoc"


class WorkItemState(str):
    """Work item states considered open for SLA tracking."""
    NEW = "New"
    ACTIVE = "Active"


class WorkItemField(str):
    """Azure DevOps field reference names."""
    ID = "System.Id"
    TITLE = "System.Title"
    WORK_ITEM_TYPE = "System.WorkItemType"
    CHANGED_DATE = "System.ChangedDate"


class BlockedReason(str):
    """Reasons reported when the notification gate refuses a send."""
    MISSING_SUBSCRIBER = "Subscriber ID is required"
    QUIET_HOURS = "Subscriber is in quiet hours"
    HOURLY_LIMIT = "Hourly limit exceeded"
    DAILY_LIMIT = "Daily limit exceeded"


# ========== Lists for validation ==========

OPEN_WORK_ITEM_STATES = [WorkItemState.ACTIVE, WorkItemState.NEW]
VIOLATION_QUERY_FIELDS = [
    WorkItemField.ID, WorkItemField.TITLE,
    WorkItemField.WORK_ITEM_TYPE, WorkItemField.CHANGED_DATE
]

# Circuit breaker opens after this many consecutive delivery failures
MAX_CONSECUTIVE_DELIVERY_FAILURES = 5

# Notification history retention (also the rate limiter's read horizon)
NOTIFICATION_RETENTION_HOURS = 24
