"""
Shared fixtures: transport span factory, a backend client whose network calls are mocked,
and a collector context wired to an in-memory span exporter.
"""

import base64
import copy
from unittest.mock import AsyncMock, MagicMock

import pytest
from opentelemetry.sdk.trace import SpanProcessor
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from spanrelay.backend import BackendClient, UploadResponse
from spanrelay.config import CollectorConfig
from spanrelay.ingest_server import ServerContext
from spanrelay.media import sha256_base64, media_id_for_hash
from spanrelay.media_service import MediaService

TRACE_ID = "4bf92f3577b34da6a3ce929d0e0e4736"
SPAN_ID = "00f067aa0ba902b7"
PARENT_SPAN_ID = "53995c3f42cd8ad8"

IMAGE_BYTES = b"\x89PNG\r\n\x1a\n" + b"not-really-an-image" * 4
IMAGE_BASE64 = base64.b64encode(IMAGE_BYTES).decode("ascii")
IMAGE_DATA_URI = f"data:image/png;base64,{IMAGE_BASE64}"
IMAGE_SHA256 = sha256_base64(IMAGE_BYTES)
IMAGE_MEDIA_ID = media_id_for_hash(IMAGE_SHA256)

BASE_SPAN = {
    "traceId": TRACE_ID,
    "spanId": SPAN_ID,
    "traceFlags": 1,
    "traceState": None,
    "parentSpanId": PARENT_SPAN_ID,
    "name": "generate-answer",
    "kind": 0,
    "startTime": [1700000000, 100],
    "endTime": [1700000001, 200],
    "duration": [1, 100],
    "status": {"code": 0},
    "attributes": {"app.step": "answer"},
    "events": [],
    "links": [],
    "droppedAttributesCount": 0,
    "droppedEventsCount": 0,
    "droppedLinksCount": 0,
    "ended": True,
    "resource": {"attributes": {"service.name": "agent"}},
    "instrumentationScope": {"name": "agent-tracer", "version": "1.0.0"},
}


def make_transport_span(**overrides):
    """A valid transport span; keyword arguments replace top-level fields."""
    span = copy.deepcopy(BASE_SPAN)
    span.update(overrides)
    return span


@pytest.fixture
def transport_span():
    return make_transport_span


@pytest.fixture
def memory_exporter():
    return InMemorySpanExporter()


def mock_media_network(backend: BackendClient) -> BackendClient:
    """Stub the media API and blob store calls; the span sink stays real."""
    backend.get_upload_url = AsyncMock(
        return_value={"uploadUrl": "https://blob.test/upload", "mediaId": IMAGE_MEDIA_ID}
    )
    backend.put_blob = AsyncMock(return_value=UploadResponse(status=200, text=""))
    backend.patch_media = AsyncMock(return_value=None)
    return backend


@pytest.fixture
def backend(memory_exporter):
    """Real BackendClient with an in-memory span sink and mocked media/blob calls."""
    client = BackendClient(
        base_url="http://backend.test",
        public_key="pk-test",
        secret_key="sk-test",
        span_processor=SimpleSpanProcessor(memory_exporter),
    )
    return mock_media_network(client)


@pytest.fixture
def recording_processor():
    """A span processor that only records calls, to count flushes and shutdowns."""
    processor = MagicMock(spec=SpanProcessor)
    processor.force_flush.return_value = True
    return processor


@pytest.fixture
def no_sleep():
    return AsyncMock(return_value=None)


@pytest.fixture
def media_service(backend, no_sleep):
    return MediaService(backend, max_retries=3, base_delay=1.0, sleep=no_sleep, jitter=lambda: 0.5)


@pytest.fixture
def collector_config():
    return CollectorConfig(
        port=0,
        host="127.0.0.1",
        body_limit_bytes=1024 * 1024,
        base_url="http://backend.test",
        public_key="pk-test",
        secret_key="sk-test",
        default_environment="staging",
        default_release="v1.2.3",
        allowed_origins=["*"],
    )


@pytest.fixture
def server_context(collector_config, backend, media_service):
    return ServerContext(config=collector_config, backend=backend, media=media_service)
