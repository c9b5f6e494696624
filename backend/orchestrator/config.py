"""Application configuration."""
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # App
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_debug: bool = True
    log_level: str = "DEBUG"
    cors_origins: str = Field(
        default="http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    # Database - optional, in-memory repository is used when unset
    database_url: Optional[str] = Field(
        default=None,
        description="Database connection URL (postgresql+asyncpg://...)",
    )
    db_pool_size: int = Field(
        default=20,
        description="DB connection pool size",
    )
    db_max_overflow: int = Field(
        default=10,
        description="Max overflow connections",
    )

    # Redis - optional, process-local locks are used when unset
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL for distributed locks and the event stream",
    )
    redis_max_connections: int = Field(
        default=50,
        description="Redis max connections",
    )
    redis_socket_timeout: float = Field(
        default=5.0,
        description="Redis socket timeout in seconds",
    )

    # Public endpoint reachable by game servers
    public_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL game servers use for webhooks, config and demo uploads",
    )
    webhook_token: str = Field(
        ...,
        description="Shared secret sent to servers and required on event ingestion (required)",
    )
    admin_api_key: str = Field(
        ...,
        description="Key required in X-Admin-Key for administrative routes (required)",
    )

    # Command dispatcher
    rcon_command_timeout: float = Field(
        default=5.0,
        description="Per-command RCON timeout in seconds",
    )
    rcon_call_timeout: float = Field(
        default=10.0,
        description="Overall deadline for one command sequence in seconds",
    )
    rcon_encoding: str = "utf-8"

    # Allocation
    allocation_poll_interval: float = Field(
        default=10.0,
        description="Seconds between background allocation retries (0 disables)",
    )
    server_probe_enabled: bool = Field(
        default=True,
        description="Probe server status over RCON before pairing",
    )
    drain_timeout: float = Field(
        default=2.0,
        description="Bounded wait for in-flight server commands before reset/delete",
    )

    # Locks
    lock_timeout_ms: int = Field(
        default=30000,
        description="Lock auto-expire time in milliseconds",
    )
    lock_acquire_timeout_ms: int = Field(
        default=15000,
        description="Max wait to acquire a lock in milliseconds",
    )

    # MatchZy server defaults
    matchzy_chat_prefix: str = "[{Green}Tournament{Default}]"
    matchzy_knife_enabled_default: bool = True
    matchzy_minimum_ready_required: int = 1

    # Demo uploads
    demo_dir: str = Field(
        default="data/demos",
        description="Directory demo files uploaded by servers are written to",
    )

    # Rating pipeline
    rating_service_url: Optional[str] = Field(
        default=None,
        description="Endpoint notified once per completed match (optional)",
    )

    @field_validator("webhook_token")
    @classmethod
    def validate_webhook_token(cls, v: str) -> str:
        """Validate webhook token strength."""
        if len(v) < 16:
            raise ValueError(
                "webhook_token must be at least 16 characters long"
            )
        if '"' in v or " " in v:
            raise ValueError(
                "webhook_token must not contain quotes or spaces "
                "(it is embedded in server commands)"
            )
        return v

    @field_validator("admin_api_key")
    @classmethod
    def validate_admin_api_key(cls, v: str) -> str:
        """Validate admin API key strength."""
        if len(v) < 16:
            raise ValueError(
                "admin_api_key must be at least 16 characters long"
            )

        weak_patterns = [
            "changeme",
            "password",
            "12345",
            "admin",
        ]
        lower_v = v.lower()
        for pattern in weak_patterns:
            if pattern in lower_v:
                raise ValueError(
                    f"admin_api_key contains weak pattern '{pattern}'. "
                    "Use a strong, random API key."
                )

        return v

    @field_validator("public_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Validate settings for production environment."""
        if self.app_env == "production":
            if self.app_debug:
                raise ValueError(
                    "app_debug must be False in production environment"
                )

            origins = [o.strip() for o in self.cors_origins.split(",")]
            if "*" in origins:
                raise ValueError(
                    "CORS wildcard '*' is not allowed in production environment. "
                    "Specify explicit allowed origins."
                )

            # Servers send the webhook token in a header
            if not self.public_base_url.startswith("https://"):
                raise ValueError(
                    "public_base_url must use https in production environment"
                )

        if self.rcon_command_timeout > self.rcon_call_timeout:
            raise ValueError(
                "rcon_command_timeout must not exceed rcon_call_timeout"
            )

        return self

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
