"""
Converts transport spans (the JSON wire form) into OpenTelemetry SDK ReadableSpans,
the canonical span the backend span processor consumes. Pure: no I/O.
"""

import logging
import re
from typing import Any, Dict, Mapping, Optional

from opentelemetry.attributes import BoundedAttributes
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import Event, ReadableSpan
from opentelemetry.sdk.util import BoundedList
from opentelemetry.sdk.util.instrumentation import InstrumentationScope
from opentelemetry.trace import Link, SpanContext, SpanKind, TraceFlags, TraceState
from opentelemetry.trace.status import Status, StatusCode

from .constants import ENVIRONMENT_ATTRIBUTE, LOG_TAG, RELEASE_ATTRIBUTE
from .errors import SpanConversionError
from .object_serialiser import to_attribute_value
from .types import TransportSpan, TransportSpanContext

logger = logging.getLogger(LOG_TAG)

_TRACE_ID_RE = re.compile(r"^[0-9a-fA-F]{32}$")
_SPAN_ID_RE = re.compile(r"^[0-9a-fA-F]{16}$")


def _parse_id(value: Any, pattern: "re.Pattern[str]", field: str) -> int:
    if not isinstance(value, str) or not pattern.match(value):
        raise SpanConversionError(f"Invalid {field}: {value!r}", field=field)
    parsed = int(value, 16)
    if parsed == 0:
        raise SpanConversionError(f"Invalid {field}: all zeros", field=field)
    return parsed


def normalize_trace_flags(value: Any) -> TraceFlags:
    """Trace flags may arrive as a number, a decimal string or a hex string. Anything else means no flags."""
    if isinstance(value, bool):
        return TraceFlags(TraceFlags.DEFAULT)
    if isinstance(value, int):
        return TraceFlags(value & 0xFF)
    if isinstance(value, str):
        for base in (10, 16):
            try:
                return TraceFlags(int(value, base) & 0xFF)
            except ValueError:
                continue
    return TraceFlags(TraceFlags.DEFAULT)


def _parse_trace_state(value: Any) -> Optional[TraceState]:
    if not value or not isinstance(value, str):
        return None
    return TraceState.from_header([value])


def resolve_span_context(context: Any, field: str = "spanContext") -> SpanContext:
    """Build an SDK SpanContext from a transport span context."""
    if not isinstance(context, Mapping):
        raise SpanConversionError(f"Invalid {field}: expected an object", field=field)
    return SpanContext(
        trace_id=_parse_id(context.get("traceId"), _TRACE_ID_RE, f"{field}.traceId"),
        span_id=_parse_id(context.get("spanId"), _SPAN_ID_RE, f"{field}.spanId"),
        is_remote=bool(context.get("isRemote", False)),
        trace_flags=normalize_trace_flags(context.get("traceFlags")),
        trace_state=_parse_trace_state(context.get("traceState")),
    )


def hrtime_to_nanos(value: Any, field: str) -> int:
    """
    Convert an HrTime [seconds, nanoseconds] to integer nanoseconds.
    A plain integer is taken to already be nanoseconds.
    """
    if value is None:
        raise SpanConversionError(f"Missing required field '{field}'", field=field)
    if isinstance(value, bool):
        raise SpanConversionError(f"Invalid {field}: {value!r}", field=field)
    if isinstance(value, int):
        return value
    if isinstance(value, (list, tuple)) and len(value) == 2:
        seconds, nanos = value
        if all(isinstance(part, (int, float)) and not isinstance(part, bool) for part in value):
            return int(seconds) * 1_000_000_000 + int(nanos)
    raise SpanConversionError(f"Invalid {field}: expected [seconds, nanoseconds], got {value!r}", field=field)


def _to_attributes(raw: Any, field: str, dropped: Any = 0) -> BoundedAttributes:
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise SpanConversionError(f"Invalid {field}: expected an object", field=field)
    cleaned: Dict[str, Any] = {}
    for key, value in raw.items():
        converted = to_attribute_value(value)
        if converted is not None:
            cleaned[str(key)] = converted
    attributes = BoundedAttributes(attributes=cleaned, immutable=True)
    attributes.dropped = _count(dropped)
    return attributes


def _count(value: Any) -> int:
    return value if isinstance(value, int) and not isinstance(value, bool) and value > 0 else 0


def _to_kind(value: Any) -> SpanKind:
    if value is None:
        return SpanKind.INTERNAL
    try:
        return SpanKind(value)
    except ValueError:
        raise SpanConversionError(f"Invalid kind: {value!r}", field="kind") from None


def _to_status(value: Any) -> Status:
    if not isinstance(value, Mapping):
        return Status(StatusCode.UNSET)
    try:
        code = StatusCode(value.get("code", 0))
    except ValueError:
        raise SpanConversionError(f"Invalid status code: {value.get('code')!r}", field="status") from None
    # the SDK only keeps a description on ERROR
    description = value.get("message") if code is StatusCode.ERROR else None
    return Status(code, description)


def _bounded(items: list, dropped: Any) -> BoundedList:
    bounded = BoundedList.from_seq(None, items)
    bounded.dropped = _count(dropped)
    return bounded


def _parent_context(transport: TransportSpan, span_context: SpanContext) -> Optional[SpanContext]:
    if transport.get("parentSpanContext"):
        return resolve_span_context(transport["parentSpanContext"], "parentSpanContext")
    parent_span_id = transport.get("parentSpanId")
    if parent_span_id:
        # flat parent id only: the parent lives in the same trace
        return SpanContext(
            trace_id=span_context.trace_id,
            span_id=_parse_id(parent_span_id, _SPAN_ID_RE, "parentSpanId"),
            is_remote=False,
            trace_flags=span_context.trace_flags,
            trace_state=span_context.trace_state,
        )
    return None


def to_readable_span(
    transport: TransportSpan,
    default_environment: Optional[str] = None,
    default_release: Optional[str] = None,
) -> ReadableSpan:
    """
    Map a transport span to a ReadableSpan.

    The span context is taken from `spanContext` when present, otherwise built from the flat
    traceId/spanId/traceFlags/traceState fields. Environment and release attributes are
    back-filled from the defaults only when the span does not carry them.

    Raises:
        SpanConversionError: the span is malformed (bad identifiers, missing timing fields, ...).
    """
    if not isinstance(transport, Mapping):
        raise SpanConversionError("Invalid span: expected an object")

    context_source: TransportSpanContext = transport.get("spanContext") or {
        "traceId": transport.get("traceId"),
        "spanId": transport.get("spanId"),
        "traceFlags": transport.get("traceFlags"),
        "traceState": transport.get("traceState"),
    }
    span_context = resolve_span_context(context_source)
    parent = _parent_context(transport, span_context)

    name = transport.get("name")
    if not isinstance(name, str):
        raise SpanConversionError(f"Invalid name: {name!r}", field="name")

    start_time = hrtime_to_nanos(transport.get("startTime"), "startTime")
    end_time = hrtime_to_nanos(transport.get("endTime"), "endTime")

    raw_attributes = transport.get("attributes")
    if raw_attributes is None:
        raw_attributes = {}
    if isinstance(raw_attributes, Mapping):
        raw_attributes = dict(raw_attributes)
        # explicit values on the span win over process-wide defaults
        if default_environment and raw_attributes.get(ENVIRONMENT_ATTRIBUTE) is None:
            raw_attributes[ENVIRONMENT_ATTRIBUTE] = default_environment
        if default_release and raw_attributes.get(RELEASE_ATTRIBUTE) is None:
            raw_attributes[RELEASE_ATTRIBUTE] = default_release
    attributes = _to_attributes(raw_attributes, "attributes", transport.get("droppedAttributesCount"))

    events = []
    for i, event in enumerate(transport.get("events") or []):
        if not isinstance(event, Mapping):
            raise SpanConversionError(f"Invalid events[{i}]: expected an object", field="events")
        events.append(Event(
            name=str(event.get("name", "")),
            attributes=_to_attributes(event.get("attributes"), f"events[{i}].attributes", event.get("droppedAttributesCount")),
            timestamp=hrtime_to_nanos(event.get("time"), f"events[{i}].time"),
        ))

    links = []
    for i, link in enumerate(transport.get("links") or []):
        if not isinstance(link, Mapping):
            raise SpanConversionError(f"Invalid links[{i}]: expected an object", field="links")
        links.append(Link(
            resolve_span_context(link.get("context"), f"links[{i}].context"),
            _to_attributes(link.get("attributes"), f"links[{i}].attributes", link.get("droppedAttributesCount")),
        ))

    resource = transport.get("resource")
    if not isinstance(resource, Mapping):
        resource = {}
    scope = transport.get("instrumentationScope")
    if not isinstance(scope, Mapping):
        scope = {}

    return ReadableSpan(
        name=name,
        context=span_context,
        parent=parent,
        resource=Resource(
            dict(_to_attributes(resource.get("attributes"), "resource.attributes")),
            resource.get("schemaUrl"),
        ),
        attributes=attributes,
        events=_bounded(events, transport.get("droppedEventsCount")),
        links=_bounded(links, transport.get("droppedLinksCount")),
        kind=_to_kind(transport.get("kind")),
        status=_to_status(transport.get("status")),
        start_time=start_time,
        end_time=end_time,
        instrumentation_scope=InstrumentationScope(
            name=scope.get("name") or "",
            version=scope.get("version"),
            schema_url=scope.get("schemaUrl"),
        ),
    )


def replace_attributes(span: ReadableSpan, attributes: Mapping[str, Any]) -> ReadableSpan:
    """
    Return a copy of span with its attributes replaced. ReadableSpans are immutable, so
    rewriting attributes (e.g. swapping inline media for reference tags) builds a new span.
    """
    new_attributes = BoundedAttributes(attributes=dict(attributes), immutable=True)
    new_attributes.dropped = span.dropped_attributes
    return ReadableSpan(
        name=span.name,
        context=span.get_span_context(),
        parent=span.parent,
        resource=span.resource,
        attributes=new_attributes,
        events=_bounded(list(span.events), span.dropped_events),
        links=_bounded(list(span.links), span.dropped_links),
        kind=span.kind,
        status=span.status,
        start_time=span.start_time,
        end_time=span.end_time,
        instrumentation_scope=span.instrumentation_scope,
    )
