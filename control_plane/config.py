"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Service Configuration
    service_host: str = Field(default="0.0.0.0", description="Service host")
    service_port: int = Field(default=8000, description="Service port")
    log_level: str = Field(default="INFO", description="Logging level")

    # Database
    database_url: Optional[str] = Field(
        default=None, description="PostgreSQL connection URL"
    )
    db_pool_min_size: int = Field(default=1, description="Minimum connection pool size")
    db_pool_max_size: int = Field(default=10, description="Maximum connection pool size")

    # Authentication
    agent_api_token: Optional[str] = Field(
        default=None,
        description="Shared token agents send in X-Agent-Token. Unset disables the check.",
    )
    admin_token: Optional[str] = Field(
        default=None, description="Operator token for X-Admin-Token protected routes"
    )

    # Job leases
    job_lease_seconds: int = Field(
        default=300, ge=1, description="Lease length granted to an agent on claim"
    )
    job_max_lease_recoveries: int = Field(
        default=3,
        ge=0,
        description="Expired leases returned to the queue before the job is failed",
    )
    agent_poll_limit: int = Field(
        default=1, ge=1, description="Default number of queued jobs returned per poll"
    )

    # Live status queries
    query_cache_ttl_seconds: int = Field(
        default=15, description="Freshness window for cached query snapshots"
    )
    query_queue_ttl_seconds: int = Field(
        default=12, description="Cooldown between queued probe requests per instance"
    )
    query_timeout_seconds: float = Field(
        default=5.0, description="Timeout for backend-mode protocol probes"
    )

    # Reconciliation batches
    disk_scan_batch_limit: int = Field(
        default=50, ge=1, description="Max disk scan jobs queued per pass"
    )
    server_status_batch_limit: int = Field(
        default=50, ge=1, description="Max public server checks queued per pass"
    )
    schedule_batch_limit: int = Field(
        default=250, ge=1, description="Max schedules evaluated per pass"
    )
    reconcile_interval_seconds: int = Field(
        default=60, ge=1, description="Pause between passes in `cli loop`"
    )

    # Sentry Observability
    sentry_dsn: Optional[str] = Field(
        default=None, description="Sentry DSN for error tracking"
    )
    sentry_environment: str = Field(
        default="development",
        description="Sentry environment tag (development, staging, production)",
    )
    sentry_traces_sample_rate: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Sentry performance tracing sample rate (0.0-1.0)",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
