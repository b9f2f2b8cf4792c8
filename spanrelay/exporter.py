"""
OpenTelemetry span exporter that sends spans to a SpanRelay collector.
Each export call is sent as one JSON batch. Oversized batches are dropped locally.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from opentelemetry.sdk.trace import ReadableSpan
from opentelemetry.sdk.trace.export import SpanExporter, SpanExportResult
from opentelemetry.trace import SpanContext

from .constants import DEFAULT_BATCH_BYTES_LIMIT, FORCE_FLUSH_QUERY_KEY, LOG_TAG
from .http_utils import get_endpoint
from .object_serialiser import json_byte_length, safe_json_dumps
from .types import HrTime, TransportSpan, TransportSpanContext

logger = logging.getLogger(LOG_TAG)

# One-way send: (url, body) -> True if the payload was queued for delivery.
BeaconType = Callable[[str, bytes], bool]


def time_to_hrtime(nanoseconds: int) -> HrTime:
    """Convert nanoseconds to [seconds, nanoseconds]."""
    seconds = int(nanoseconds // 1_000_000_000)
    nanos = int(nanoseconds % 1_000_000_000)
    return [seconds, nanos]


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def serialize_span_context(context: SpanContext) -> TransportSpanContext:
    trace_state = context.trace_state.to_header() if context.trace_state else None
    return {
        "traceId": format(context.trace_id, "032x"),
        "spanId": format(context.span_id, "016x"),
        "traceFlags": int(context.trace_flags),
        "traceState": trace_state or None,
        "isRemote": bool(context.is_remote),
    }


def serialize_span(span: ReadableSpan) -> TransportSpan:
    """Convert a finished ReadableSpan to its wire form."""
    span_context = span.get_span_context()
    context = serialize_span_context(span_context)
    parent = span.parent
    scope = span.instrumentation_scope
    resource = span.resource
    start_time = span.start_time or 0
    end_time = span.end_time or start_time

    return {
        "traceId": context["traceId"],
        "spanId": context["spanId"],
        "traceFlags": context["traceFlags"],
        "traceState": context["traceState"],
        "spanContext": context,
        "parentSpanId": format(parent.span_id, "016x") if parent else None,
        "parentSpanContext": serialize_span_context(parent) if parent else None,
        "name": span.name,
        "kind": _enum_value(span.kind),
        "startTime": time_to_hrtime(start_time),
        "endTime": time_to_hrtime(end_time),
        "duration": time_to_hrtime(end_time - start_time),
        "status": {
            "code": _enum_value(span.status.status_code),
            "message": span.status.description,
        },
        "attributes": dict(span.attributes) if span.attributes else {},
        "links": [
            {
                "context": serialize_span_context(link.context),
                "attributes": dict(link.attributes) if link.attributes else {},
                "droppedAttributesCount": getattr(link, "dropped_attributes", 0),
            }
            for link in (span.links or [])
        ],
        "events": [
            {
                "name": event.name,
                "time": time_to_hrtime(event.timestamp),
                "attributes": dict(event.attributes) if event.attributes else {},
                "droppedAttributesCount": getattr(event, "dropped_attributes", 0),
            }
            for event in (span.events or [])
        ],
        "droppedAttributesCount": getattr(span, "dropped_attributes", 0),
        "droppedEventsCount": getattr(span, "dropped_events", 0),
        "droppedLinksCount": getattr(span, "dropped_links", 0),
        "ended": span.end_time is not None,
        "resource": {
            "attributes": dict(resource.attributes) if resource and resource.attributes else {},
            "schemaUrl": (resource.schema_url or None) if resource else None,
        },
        "instrumentationScope": {
            "name": scope.name if scope else "",
            "version": scope.version if scope else None,
            "schemaUrl": (scope.schema_url or None) if scope else None,
        },
    }


class SpanRelayExporter(SpanExporter):
    """
    Exports spans to a SpanRelay collector, one HTTP request per export() call.
    Use with a BatchSpanProcessor, which does the buffering.

    Delivery: if a beacon (a one-way, fire-and-forget send that survives process teardown)
    is configured, it is tried first. Otherwise, or if the beacon refuses the payload, the
    batch is POSTed and the collector's IngestResult decides success.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        batch_bytes_limit: int = DEFAULT_BATCH_BYTES_LIMIT,
        use_beacon: bool = True,
        auto_flush: bool = False,
        beacon: Optional[BeaconType] = None,
        timeout: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
    ):
        """
        Initialize the exporter.

        Args:
            endpoint: Collector ingest URL (defaults to SPANRELAY_ENDPOINT env var)
            batch_bytes_limit: Maximum serialized batch size in bytes. Larger batches are dropped, not split.
            use_beacon: Prefer the beacon channel when one is configured
            auto_flush: Ask the collector to force-flush its backend after accepting each batch
            beacon: One-way send function, e.g. a page-unload-safe transport supplied by the host
            timeout: Timeout in seconds for the fallback HTTP request
            headers: Extra headers for the fallback HTTP request
        """
        self._endpoint = get_endpoint(endpoint)
        self.batch_bytes_limit = batch_bytes_limit
        self.use_beacon = use_beacon
        self.auto_flush = auto_flush
        self.beacon = beacon
        self.timeout = timeout
        self._headers = {"Content-Type": "application/json", **(headers or {})}
        self._shutdown_lock = threading.Lock()
        self.shutdown_requested = False
        logger.info(f"Initializing SpanRelayExporter: endpoint={self._endpoint}, "
            f"batch_bytes_limit={batch_bytes_limit}, auto_flush={auto_flush}, beacon={'yes' if beacon else 'no'}"
        )

    @property
    def url(self) -> str:
        if not self.auto_flush:
            return self._endpoint
        separator = "&" if "?" in self._endpoint else "?"
        return f"{self._endpoint}{separator}{FORCE_FLUSH_QUERY_KEY}=true"

    def export(self, spans: Sequence[ReadableSpan]) -> SpanExportResult:
        """Serialize spans into one batch and deliver it. Never raises."""
        if self.shutdown_requested:
            logger.warning(f"export: called after shutdown, dropping {len(spans)} span(s)")
            return SpanExportResult.FAILURE
        if not spans:
            logger.debug("export: called with empty spans list")
            return SpanExportResult.SUCCESS

        try:
            payload = [serialize_span(span) for span in spans]
            json_str = safe_json_dumps(payload)
            size = json_byte_length(json_str)
            if size > self.batch_bytes_limit:
                logger.warning(f"Payload too large ({size} bytes > {self.batch_bytes_limit} bytes), "
                    f"dropping batch of {len(spans)} span(s)"
                )
                return SpanExportResult.FAILURE

            body = json_str.encode("utf-8")
            url = self.url

            if self.use_beacon and self.beacon is not None:
                if self._send_beacon(url, body):
                    logger.debug(f"export: {len(spans)} span(s) handed to beacon")
                    return SpanExportResult.SUCCESS
                logger.debug("export: beacon refused payload, falling back to HTTP")

            return self._send_http(url, body, len(spans))
        except Exception as e:
            logger.error(f"export: unexpected error: {e}", exc_info=True)
            return SpanExportResult.FAILURE

    def _send_beacon(self, url: str, body: bytes) -> bool:
        try:
            return bool(self.beacon(url, body))
        except Exception as e:
            logger.warning(f"export: beacon failed: {type(e).__name__}: {e}")
            return False

    def _send_http(self, url: str, body: bytes, span_count: int) -> SpanExportResult:
        try:
            response = requests.post(url, data=body, headers=self._headers, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"export failed: {type(e).__name__}: {e}")
            return SpanExportResult.FAILURE

        logger.debug(f"export: received response: status={response.status_code}")
        if not response.ok:
            error_text = response.text[:200] if response.text else ""
            logger.error(f"export failed: {response.status_code} {response.reason} - {error_text}")
            return SpanExportResult.FAILURE

        return self._interpret_result(response, span_count)

    def _interpret_result(self, response: requests.Response, span_count: int) -> SpanExportResult:
        """At-least-one-accepted: a batch with some rejects still counts as exported."""
        try:
            result: Any = response.json()
        except ValueError:
            result = None
        if not isinstance(result, dict):
            logger.debug(f"export: response body is not an IngestResult, treating {span_count} span(s) as sent")
            return SpanExportResult.SUCCESS

        accepted = result.get("accepted") or 0
        rejected = result.get("rejected") or 0
        if rejected > 0:
            logger.warning(f"Some spans rejected: accepted={accepted}, rejected={rejected}, errors={result.get('errors')}")
            return SpanExportResult.SUCCESS if accepted > 0 else SpanExportResult.FAILURE
        return SpanExportResult.SUCCESS

    def force_flush(self, timeout_millis: int = 30000) -> bool:
        # nothing is buffered here: every export() call sends immediately
        return True

    def shutdown(self) -> None:
        with self._shutdown_lock:
            if self.shutdown_requested:
                logger.debug("shutdown: already shut down")
                return
            self.shutdown_requested = True
        logger.info("shutdown: SpanRelayExporter shut down")
