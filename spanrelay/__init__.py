"""
SpanRelay - ship OpenTelemetry spans to a collector that offloads inline media and forwards them to a tracing backend.

Exporter side (inside the instrumented process):

    from spanrelay import install_exporter

    # Attaches a BatchSpanProcessor(SpanRelayExporter) to the global tracer provider
    install_exporter("http://localhost:3418/ingest")

Collector side: run `spanrelay-collector` (or `python -m spanrelay`). Set environment variables:
    LANGFUSE_BASE_URL, LANGFUSE_PUBLIC_KEY, LANGFUSE_SECRET_KEY: backend connection
    PORT: listen port (default 3418)
    CORS_ALLOW_ORIGINS: comma-separated allowed origins (default *)
See spanrelay.config for the full list.
"""

from .client import install_exporter
from .exporter import SpanRelayExporter, serialize_span
from .converter import to_readable_span
from .media_service import MediaService
from .backend import BackendClient
from .config import CollectorConfig
from .ingest_server import ServerContext, IngestServer, create_app, serve
from .constants import VERSION

__all__ = [
    "install_exporter",
    "SpanRelayExporter",
    "serialize_span",
    "to_readable_span",
    "MediaService",
    "BackendClient",
    "CollectorConfig",
    "ServerContext",
    "IngestServer",
    "create_app",
    "serve",
    "VERSION",
]
