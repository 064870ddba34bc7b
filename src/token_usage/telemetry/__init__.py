"""OpenTelemetry integration for distributed tracing."""

from token_usage.telemetry.setup import (
    build_sampler,
    build_tracer_provider,
    setup_telemetry,
    shutdown_telemetry,
)

__all__ = ["build_sampler", "build_tracer_provider", "setup_telemetry", "shutdown_telemetry"]
