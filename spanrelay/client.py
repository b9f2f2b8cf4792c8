# spanrelay/client.py
import os
import logging
import weakref
from typing import Any, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from .constants import DEFAULT_BATCH_BYTES_LIMIT, LOG_TAG
from .exporter import SpanRelayExporter
from .http_utils import get_env_bool, get_endpoint
from .object_serialiser import toNumber

logger = logging.getLogger(LOG_TAG)


# provider -> exporter attached by install_exporter(). Weak so discarded providers are not kept alive.
_attached: "weakref.WeakKeyDictionary[TracerProvider, SpanRelayExporter]" = weakref.WeakKeyDictionary()


def _find_attached_exporter(provider: TracerProvider) -> Optional[SpanRelayExporter]:
    return _attached.get(provider)


def install_exporter(
    endpoint: Optional[str] = None,
    provider: Optional[TracerProvider] = None,
    **exporter_kwargs: Any,
) -> SpanRelayExporter:
    """
    Attach a SpanRelayExporter (behind a BatchSpanProcessor) to a tracer provider.
    Idempotent - if a SpanRelayExporter is already attached, that one is returned.

    Reads SPANRELAY_ENDPOINT, SPANRELAY_BATCH_BYTES_LIMIT and SPANRELAY_AUTO_FLUSH when the
    corresponding arguments are not given.

    Args:
        endpoint: Collector ingest URL
        provider: Tracer provider to attach to. Defaults to the global provider; if that is
            still the no-op proxy, an SDK TracerProvider is created and installed globally.
        exporter_kwargs: Passed through to SpanRelayExporter

    Example:
        from spanrelay.client import install_exporter
        install_exporter("http://collector:3418/ingest", auto_flush=True)
    """
    if provider is None:
        global_provider = trace.get_tracer_provider()
        if isinstance(global_provider, TracerProvider):
            provider = global_provider
        else:
            provider = TracerProvider()
            trace.set_tracer_provider(provider)

    existing = _find_attached_exporter(provider)
    if existing is not None:
        logger.debug("SpanRelay span processor already attached, skipping")
        return existing

    if "batch_bytes_limit" not in exporter_kwargs:
        exporter_kwargs["batch_bytes_limit"] = (
            toNumber(os.getenv("SPANRELAY_BATCH_BYTES_LIMIT")) or DEFAULT_BATCH_BYTES_LIMIT
        )
    if "auto_flush" not in exporter_kwargs:
        exporter_kwargs["auto_flush"] = get_env_bool("SPANRELAY_AUTO_FLUSH")

    exporter = SpanRelayExporter(endpoint=get_endpoint(endpoint), **exporter_kwargs)
    provider.add_span_processor(BatchSpanProcessor(exporter))
    _attached[provider] = exporter
    logger.info(f"SpanRelay span processor attached (endpoint: {exporter.url})")
    return exporter
