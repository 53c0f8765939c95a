"""
Observability Module - OpenTelemetry tracing for cache rebuilds and retrieval.

USAGE:
------
# At process startup (the CLI does this):
from gaql_context.observability import init_tracing

init_tracing()  # no-op unless GAQL_CONTEXT_TRACING_ENABLED=true

# In code that needs tracing:
from gaql_context.observability import get_tracer

tracer = get_tracer()
with tracer.start_span("retrieval.search", attributes={"retrieval.collection": "field_metadata"}) as span:
    ...
    span.set_attribute("retrieval.result_count", 5)
"""

from __future__ import annotations

import logging

from gaql_context.observability.attributes import (
    GEN_AI_REQUEST_MODEL,
    GEN_AI_SYSTEM,
    RETRIEVAL_COLLECTION,
    RETRIEVAL_DOCUMENT_COUNT,
    RETRIEVAL_LATENCY_MS,
    RETRIEVAL_MAX_RESULTS,
    RETRIEVAL_REBUILD_REASON,
    RETRIEVAL_REBUILD_SECONDS,
    RETRIEVAL_RESULT_COUNT,
    RETRIEVAL_TOP_SCORE,
    rebuild_attributes,
    retrieve_attributes,
)
from gaql_context.observability.config import (
    TracingConfig,
    get_config,
    reset_config,
)
from gaql_context.observability.tracer import (
    NoOpSpan,
    NoOpTracer,
    SpanProtocol,
    TracerProtocol,
    get_tracer,
    reset_tracer,
)

logger = logging.getLogger(__name__)

_tracing_initialized = False


def init_tracing(config: TracingConfig | None = None) -> bool:
    """
    Install an OpenTelemetry TracerProvider.

    Spans are exported over OTLP/HTTP when an endpoint is configured and
    printed to the console otherwise.

    Returns:
        True if tracing was initialized, False if disabled or unavailable
    """
    global _tracing_initialized
    if _tracing_initialized:
        return True

    config = config or get_config()
    if not config.enabled:
        logger.debug("Tracing disabled")
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter

        if config.otlp_endpoint:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

            exporter = OTLPSpanExporter(endpoint=config.otlp_endpoint)
            logger.info(f"Exporting spans to {config.otlp_endpoint}")
        else:
            exporter = ConsoleSpanExporter()
            logger.info("Exporting spans to console")

        provider = TracerProvider(resource=Resource.create({"service.name": config.service_name}))
        provider.add_span_processor(BatchSpanProcessor(exporter))
        trace.set_tracer_provider(provider)
    except ImportError as e:
        logger.warning(f"OpenTelemetry not installed, tracing disabled: {e}")
        return False

    reset_tracer()
    _tracing_initialized = True
    return True


def shutdown_tracing() -> None:
    """Flush and shut down the tracer provider."""
    global _tracing_initialized

    if not _tracing_initialized:
        return

    from opentelemetry import trace

    provider = trace.get_tracer_provider()
    if hasattr(provider, "shutdown"):
        provider.shutdown()

    reset_tracer()
    reset_config()
    _tracing_initialized = False


__all__ = [
    "init_tracing",
    "shutdown_tracing",
    # Config
    "TracingConfig",
    "get_config",
    "reset_config",
    # Tracer
    "TracerProtocol",
    "SpanProtocol",
    "NoOpTracer",
    "NoOpSpan",
    "get_tracer",
    "reset_tracer",
    # Attributes
    "GEN_AI_SYSTEM",
    "GEN_AI_REQUEST_MODEL",
    "RETRIEVAL_COLLECTION",
    "RETRIEVAL_MAX_RESULTS",
    "RETRIEVAL_RESULT_COUNT",
    "RETRIEVAL_TOP_SCORE",
    "RETRIEVAL_LATENCY_MS",
    "RETRIEVAL_REBUILD_REASON",
    "RETRIEVAL_DOCUMENT_COUNT",
    "RETRIEVAL_REBUILD_SECONDS",
    "rebuild_attributes",
    "retrieve_attributes",
]
