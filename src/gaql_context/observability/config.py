"""
Tracing Configuration

Loads tracing settings from environment variables.
Tracing is off unless explicitly enabled.
"""

import os
from dataclasses import dataclass


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


@dataclass
class TracingConfig:
    """Configuration for OpenTelemetry tracing.

    Environment Variables:
        GAQL_CONTEXT_TRACING_ENABLED: Enable tracing (default: false)
        GAQL_CONTEXT_SERVICE_NAME: Service name on exported spans (default: gaql-context)
        OTEL_EXPORTER_OTLP_ENDPOINT: OTLP/HTTP collector; spans go to stderr if empty
        GAQL_CONTEXT_CAPTURE_QUERY_TEXT: Record query text on spans (default: false)
    """

    enabled: bool = False
    service_name: str = "gaql-context"
    otlp_endpoint: str | None = None
    capture_query_text: bool = False  # queries may contain account names

    @classmethod
    def from_env(cls) -> "TracingConfig":
        """Load config from environment variables."""
        return cls(
            enabled=_env_flag("GAQL_CONTEXT_TRACING_ENABLED"),
            service_name=os.environ.get("GAQL_CONTEXT_SERVICE_NAME", "gaql-context"),
            otlp_endpoint=os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT") or None,
            capture_query_text=_env_flag("GAQL_CONTEXT_CAPTURE_QUERY_TEXT"),
        )


_config: TracingConfig | None = None


def get_config() -> TracingConfig:
    """Get the global tracing config (lazy-loaded from env)."""
    global _config
    if _config is None:
        _config = TracingConfig.from_env()
    return _config


def reset_config() -> None:
    """Reset config (useful for testing)."""
    global _config
    _config = None
