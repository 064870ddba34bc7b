"""Tracer provider for the aggregation and query spans.

The services create their spans through ``opentelemetry.trace`` only; this
module decides where those spans go. With tracing disabled the API's no-op
tracer stays in place.
"""

import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter, SpanExporter
from opentelemetry.sdk.trace.sampling import (
    ALWAYS_OFF,
    ALWAYS_ON,
    ParentBased,
    Sampler,
    TraceIdRatioBased,
)

from token_usage import __version__
from token_usage.config import Settings, get_settings

logger = logging.getLogger(__name__)

_tracer_provider: TracerProvider | None = None


def build_sampler(name: str, ratio: float) -> Sampler:
    """Sampler for an ``OTEL_TRACES_SAMPLER`` value."""
    samplers = {
        "always_on": ALWAYS_ON,
        "always_off": ALWAYS_OFF,
        "traceidratio": TraceIdRatioBased(ratio),
        "parentbased_traceidratio": ParentBased(TraceIdRatioBased(ratio)),
    }
    return samplers.get(name, ParentBased(ALWAYS_ON))


def build_exporter(settings: Settings) -> SpanExporter:
    """Span exporter for the configured ``OTEL_EXPORTER_TYPE``."""
    if settings.otel_exporter_type == "console":
        return ConsoleSpanExporter()

    if settings.otel_exporter_type == "otlp-http":
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter as HTTPSpanExporter,
        )

        return HTTPSpanExporter(endpoint=f"{settings.otel_exporter_otlp_http_endpoint}/v1/traces")

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter

    return OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)


def build_tracer_provider(settings: Settings) -> TracerProvider:
    """Tracer provider tagged with the service name, version and environment."""
    provider = TracerProvider(
        resource=Resource.create(
            {
                "service.name": settings.otel_service_name,
                "service.version": __version__,
                "deployment.environment": "development" if settings.debug else "production",
            }
        ),
        sampler=build_sampler(settings.otel_traces_sampler, settings.otel_traces_sampler_arg),
    )
    provider.add_span_processor(BatchSpanProcessor(build_exporter(settings)))
    return provider


def setup_telemetry() -> None:
    """Install the configured tracer provider globally.

    Call before the app or the scheduler create any spans.
    """
    global _tracer_provider

    settings = get_settings()
    if not settings.otel_enabled:
        logger.debug("Tracing disabled; usage spans are not exported")
        return

    _tracer_provider = build_tracer_provider(settings)
    trace.set_tracer_provider(_tracer_provider)
    logger.info(
        "Tracing usage spans: service=%s, exporter=%s, sampler=%s",
        settings.otel_service_name,
        settings.otel_exporter_type,
        settings.otel_traces_sampler,
    )


def shutdown_telemetry() -> None:
    """Flush pending spans and release the tracer provider."""
    global _tracer_provider

    if _tracer_provider is None:
        return
    _tracer_provider.shutdown()
    _tracer_provider = None
    logger.info("Tracing shut down")
