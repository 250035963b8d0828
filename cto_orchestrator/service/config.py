"""
Configuration module for the CTO Orchestrator service.

Uses pydantic-settings for environment variable management with type validation.
"""

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrchestratorConfig(BaseSettings):
    """Configuration for the delegation and orchestration engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    host: str = Field(default="0.0.0.0", description="Host to bind the service")
    port: int = Field(default=8000, description="Port to bind the service")
    reload: bool = Field(default=False, description="Enable auto-reload for development")

    # Delegation Tables
    delegation_config_path: Optional[str] = Field(
        default=None,
        description="Path to a delegation YAML (roster, triggers, gates, stages). "
        "The packaged default is used when unset.",
    )

    # Dependent Services
    subagent_manager_url: str = Field(
        default="http://localhost:8001",
        description="Subagent Manager URL used to invoke workers and reviewers",
    )
    http_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Default timeout for the HTTP client"
    )

    # Execution Configuration
    worker_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Timeout for a single worker invocation"
    )
    reviewer_timeout_seconds: float = Field(
        default=120.0, gt=0, description="Timeout for a single reviewer invocation"
    )
    task_max_retries: int = Field(
        default=1, ge=0, le=10, description="Retries for a failed worker invocation"
    )
    retry_backoff_seconds: float = Field(
        default=1.0, ge=0.0, description="Base delay for exponential retry backoff"
    )
    max_tracked_plans: int = Field(
        default=1000, ge=1, description="Finished plans kept by the progress tracker"
    )

    # Observability Configuration
    log_level: str = Field(
        default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the allowed values."""
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed_levels:
            raise ValueError(f"log_level must be one of {allowed_levels}")
        return v_upper

    @field_validator("subagent_manager_url")
    @classmethod
    def validate_subagent_manager_url(cls, v: str) -> str:
        """Strip trailing slashes so endpoint paths join cleanly."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("subagent_manager_url must be an http(s) URL")
        return v.rstrip("/")


# Global config instance
config = OrchestratorConfig()
