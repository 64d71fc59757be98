"""
Shared configuration management for the Team Management service.
"""

from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="TEAMS_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")
    api_prefix: str = Field(default="/api/v1")
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])

    # Datastore; no DSN means the in-memory document store
    database_dsn: Optional[str] = Field(default=None)
    db_connect_attempts: int = Field(default=5)
    db_connect_base_delay: float = Field(default=1.0)
    db_pool_min_size: int = Field(default=2)
    db_pool_max_size: int = Field(default=10)

    # Security
    access_token_secret: str = Field(default="local-development-secret-change-me")
    access_token_expiry_seconds: int = Field(default=3600)
    password_hash_rounds: int = Field(default=10)

    # Business limits
    max_team_memberships: int = Field(default=5)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
