from typing import TypedDict, Dict, Optional, Any, List, Union, Sequence, Literal

# Span attribute value, as OpenTelemetry accepts it: a primitive or a homogeneous sequence of primitives.
AttributeValue = Union[str, bool, int, float, Sequence[str], Sequence[bool], Sequence[int], Sequence[float]]

# High-resolution time as [seconds, nanoseconds]
HrTime = List[int]


class TransportSpanContext(TypedDict, total=False):
  """Identifiers of a span on the wire. traceId and spanId are lower-case hex."""
  traceId: str
  spanId: str
  traceFlags: Optional[Union[int, str]]
  traceState: Optional[str]
  isRemote: bool


class TransportStatus(TypedDict, total=False):
  code: int
  message: Optional[str]


class TransportEvent(TypedDict, total=False):
  name: str
  time: HrTime
  attributes: Dict[str, Any]
  droppedAttributesCount: int


class TransportLink(TypedDict, total=False):
  context: TransportSpanContext
  attributes: Dict[str, Any]
  droppedAttributesCount: int


class TransportResource(TypedDict, total=False):
  attributes: Dict[str, Any]
  schemaUrl: Optional[str]


class TransportInstrumentationScope(TypedDict, total=False):
  name: str
  version: Optional[str]
  schemaUrl: Optional[str]


class TransportSpan(TypedDict, total=False):
  """
  One finished span as sent from the exporter to the collector.
  The flat traceId/spanId/traceFlags/traceState fields are always present; spanContext
  and parentSpanContext carry the same information as nested objects.
  """
  traceId: str
  spanId: str
  traceFlags: Optional[Union[int, str]]
  traceState: Optional[str]
  spanContext: TransportSpanContext
  parentSpanId: Optional[str]
  parentSpanContext: Optional[TransportSpanContext]
  name: str
  kind: int
  startTime: HrTime
  endTime: HrTime
  duration: HrTime
  status: TransportStatus
  attributes: Dict[str, Any]
  links: List[TransportLink]
  events: List[TransportEvent]
  droppedAttributesCount: int
  droppedEventsCount: int
  droppedLinksCount: int
  ended: bool
  resource: TransportResource
  instrumentationScope: TransportInstrumentationScope


# A batch on the wire: a bare list, or {"spans": [...]}
TransportPayload = Union[List[TransportSpan], Dict[str, List[TransportSpan]]]


class IngestError(TypedDict):
  index: int
  message: str


class IngestResult(TypedDict):
  """Response body of POST /ingest. accepted + rejected == number of spans in the batch."""
  accepted: int
  rejected: int
  errors: List[IngestError]


MediaField = Literal["input", "output", "metadata"]


class UploadSlot(TypedDict):
  """Answer of the backend to an upload-slot request. uploadUrl is None when the content is already stored."""
  uploadUrl: Optional[str]
  mediaId: str
