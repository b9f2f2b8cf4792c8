"""
Client for the downstream tracing backend.

Two halves:
- the media API (upload-slot negotiation, upload status reporting) and the blob store PUT, over aiohttp;
- the span sink: an OpenTelemetry span processor (by default a BatchSpanProcessor around an
  OTLP/HTTP exporter) that receives finished spans via on_end() and can be force-flushed.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.trace import ReadableSpan, SpanProcessor
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from .constants import LOG_TAG
from .http_utils import basic_auth_value, build_headers, format_http_error, get_base_url
from .types import MediaField, UploadSlot

logger = logging.getLogger(LOG_TAG)


@dataclass(frozen=True)
class UploadResponse:
    """Outcome of one blob PUT. The body is read eagerly so no connection is held open."""
    status: int
    text: str

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


def create_span_processor(base_url: str, public_key: Optional[str], secret_key: Optional[str]) -> SpanProcessor:
    """Default span sink: batch spans and ship them to the backend's OTLP/HTTP trace endpoint."""
    exporter = OTLPSpanExporter(
        endpoint=f"{base_url}/api/public/otel/v1/traces",
        headers={"Authorization": basic_auth_value(public_key, secret_key)},
    )
    return BatchSpanProcessor(exporter)


class BackendClient:
    """
    Connection to the tracing backend. Constructed once at startup and shut down once.
    The aiohttp session is created lazily, inside the running event loop.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        public_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        span_processor: Optional[SpanProcessor] = None,
        timeout_seconds: float = 30.0,
    ):
        self.base_url = get_base_url(base_url)
        self._public_key = public_key
        self._secret_key = secret_key
        self._headers = build_headers(public_key, secret_key)
        self.span_processor = span_processor or create_span_processor(self.base_url, public_key, secret_key)
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds, connect=10.0)
        self._session: Optional[aiohttp.ClientSession] = None
        self._shutdown = False

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def get_upload_url(
        self,
        *,
        content_length: int,
        trace_id: str,
        observation_id: Optional[str],
        field: MediaField,
        content_type: str,
        sha256_hash: str,
    ) -> UploadSlot:
        """
        Ask the backend for an upload slot. uploadUrl is None when the backend already
        stores content with this hash.
        """
        body: Dict[str, Any] = {
            "contentLength": content_length,
            "traceId": trace_id,
            "observationId": observation_id,
            "field": field,
            "contentType": content_type,
            "sha256Hash": sha256_hash,
        }
        session = self._get_session()
        async with session.post(f"{self.base_url}/api/public/media", json=body, headers=self._headers) as response:
            if response.status >= 300:
                error_text = await response.text()
                raise Exception(format_http_error(response, "request media upload url", error_text))
            data = await response.json(content_type=None)
        if not isinstance(data, dict) or not data.get("mediaId"):
            raise Exception(f"Failed to request media upload url: unexpected response {data!r}")
        return {"uploadUrl": data.get("uploadUrl"), "mediaId": data["mediaId"]}

    async def patch_media(
        self,
        media_id: str,
        *,
        uploaded_at: str,
        upload_http_status: int,
        upload_http_error: Optional[str],
        upload_time_ms: int,
    ) -> None:
        """Report how the upload of a media item went."""
        body = {
            "uploadedAt": uploaded_at,
            "uploadHttpStatus": upload_http_status,
            "uploadHttpError": upload_http_error,
            "uploadTimeMs": upload_time_ms,
        }
        session = self._get_session()
        async with session.patch(f"{self.base_url}/api/public/media/{media_id}", json=body, headers=self._headers) as response:
            if response.status >= 300:
                error_text = await response.text()
                raise Exception(format_http_error(response, "report media upload status", error_text))

    async def put_blob(self, upload_url: str, content: bytes, content_type: str, sha256_hash: str) -> UploadResponse:
        """
        PUT raw bytes to a presigned blob-store URL. Transport errors (aiohttp.ClientError,
        asyncio.TimeoutError) propagate; any HTTP status is returned.
        """
        headers = {
            "Content-Type": content_type,
            "x-amz-checksum-sha256": sha256_hash,
            "x-ms-blob-type": "BlockBlob",
        }
        session = self._get_session()
        async with session.put(upload_url, data=content, headers=headers) as response:
            return UploadResponse(status=response.status, text=await response.text())

    def on_end(self, span: ReadableSpan) -> None:
        """Hand a finished span to the span sink."""
        if self._shutdown:
            raise RuntimeError("Backend client is shut down")
        self.span_processor.on_end(span)

    async def force_flush(self) -> bool:
        """Block (in a worker thread) until the span sink has exported everything it holds."""
        if self._shutdown:
            return True
        flushed = await asyncio.to_thread(self.span_processor.force_flush)
        if flushed is False:
            logger.warning("Backend force flush did not complete in time")
        return flushed is not False

    async def shutdown(self) -> None:
        """Shut down the span sink and close the HTTP session. Idempotent."""
        if self._shutdown:
            logger.debug("Backend client already shut down")
            return
        self._shutdown = True
        try:
            await asyncio.to_thread(self.span_processor.shutdown)
        finally:
            if self._session is not None and not self._session.closed:
                await self._session.close()
            logger.info("Backend client shut down")
