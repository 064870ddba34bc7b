"""Application settings and configuration management."""

from functools import lru_cache
from typing import Literal

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
    service_name: str = Field(
        default="token_usage",
        description="Service name used for the API title and telemetry",
    )
    service_host: str = Field(
        default="0.0.0.0",
        description="Server host",
    )
    service_port: int = Field(
        default=8000,
        description="Server port",
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./token_usage.db",
        description="Database URL (PostgreSQL for production). Stores raw usage events and rollup buckets.",
    )
    database_pool_size: int = Field(
        default=5,
        description="Database connection pool size",
    )
    database_pool_max_overflow: int = Field(
        default=10,
        description="Maximum overflow connections beyond pool size",
    )

    # Aggregation
    aggregation_scheduler_enabled: bool = Field(
        default=True,
        description="Run incremental aggregation and retention sweeps in the background",
    )
    aggregation_interval_seconds: int = Field(
        default=3600,
        description="Interval between incremental aggregation runs",
    )
    aggregation_retention_interval_seconds: int = Field(
        default=86400,
        description="Interval between retention sweeps",
    )
    aggregation_retention_days: int = Field(
        default=400,
        ge=0,
        description="Delete buckets whose period ended more than this many days ago (0 disables)",
    )
    aggregation_enforce_watermark: bool = Field(
        default=True,
        description="Skip spans already recorded in the aggregated span ledger",
    )

    # Query routing
    query_pre_aggregation_threshold_days: int = Field(
        default=7,
        ge=0,
        description="Date ranges longer than this are answered from pre-aggregated buckets",
    )

    # Data health checks
    health_lookback_days: int = Field(
        default=7,
        ge=1,
        description="Days of aggregated data compared against raw events by health checks",
    )
    health_freshness_sla_minutes: int = Field(
        default=60,
        ge=1,
        description="Maximum age of the newest raw event for data to count as fresh",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log format",
    )

    # Development Settings
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    # OpenTelemetry Configuration
    otel_enabled: bool = Field(
        default=False,
        description="Enable OpenTelemetry tracing",
    )
    otel_service_name: str = Field(
        default="token_usage",
        description="Service name for OpenTelemetry traces",
    )
    otel_exporter_otlp_endpoint: str = Field(
        default="http://localhost:4317",
        description="OTLP exporter endpoint (gRPC)",
    )
    otel_exporter_otlp_http_endpoint: str = Field(
        default="http://localhost:4318",
        description="OTLP exporter endpoint (HTTP)",
    )
    otel_exporter_type: Literal["otlp", "otlp-http", "console"] = Field(
        default="otlp",
        description="Telemetry exporter type",
    )
    otel_traces_sampler: Literal[
        "always_on",
        "always_off",
        "traceidratio",
        "parentbased_always_on",
        "parentbased_traceidratio",
    ] = Field(
        default="parentbased_always_on",
        description="Trace sampler",
    )
    otel_traces_sampler_arg: float = Field(
        default=1.0,
        ge=0.0,
        le=1.0,
        description="Sampling ratio for ratio-based samplers",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance.
    """
    return Settings()
