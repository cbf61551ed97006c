"""Configuration management for deployctl."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Orchestrator settings, read from DEPLOYCTL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DEPLOYCTL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"

    # Kubernetes Settings
    kubeconfig_path: Optional[str] = Field(
        default="~/.kube/config",
        description="Path to kubeconfig file (unset to use in-cluster config)",
    )
    kube_context: Optional[str] = None
    default_namespace: str = "default"
    field_manager: str = "deployctl"
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # Retry Settings
    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Attempts per cluster call before a transient failure becomes fatal",
    )
    backoff_initial_seconds: float = Field(default=1.0, ge=0)
    backoff_max_seconds: float = Field(default=30.0, ge=0)
    backoff_jitter_seconds: float = Field(default=1.0, ge=0)

    # Readiness Settings
    readiness_poll_interval_seconds: float = Field(default=2.0, gt=0)
    readiness_timeout_seconds: float = Field(default=300.0, gt=0)

    # Reconcile Loop Settings
    reconcile_interval_seconds: float = Field(default=60.0, gt=0)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
