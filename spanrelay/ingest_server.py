"""HTTP ingest endpoint for the SpanRelay collector.

Routes:
    - POST /ingest (also /otel-ingest): accept a batch of transport spans
    - POST /flush: drain pending media uploads, then force-flush the backend
    - GET /health (also /healthz): liveness probe

Each span in a batch is converted, stripped of inline media, and handed to the backend
independently: one bad span is reported in the IngestResult and never fails the batch.

Example:
    >>> config = CollectorConfig.from_env()
    >>> asyncio.run(serve(config))
"""

import asyncio
import json
import logging
import signal
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

from aiohttp import web
from opentelemetry.sdk.trace import SpanProcessor

from .backend import BackendClient
from .config import CollectorConfig
from .constants import FORCE_FLUSH_QUERY_KEY, LOG_TAG
from .converter import to_readable_span
from .errors import BatchPayloadError
from .media_service import MediaService
from .types import IngestError, IngestResult, TransportPayload, TransportSpan

logger = logging.getLogger(LOG_TAG)

INVALID_PAYLOAD_MESSAGE = "Invalid payload: expected an array of spans or { spans: [] }"


@dataclass
class ServerContext:
    """Everything the request handlers share. Built once at startup, closed once at shutdown."""

    config: CollectorConfig
    backend: BackendClient
    media: MediaService
    _closed: bool = field(default=False, init=False)
    _close_lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    @classmethod
    def from_config(cls, config: CollectorConfig, span_processor: Optional[SpanProcessor] = None) -> "ServerContext":
        backend = BackendClient(
            base_url=config.base_url,
            public_key=config.public_key,
            secret_key=config.secret_key,
            span_processor=span_processor,
        )
        media = MediaService(
            backend,
            max_retries=config.media_max_retries,
            base_delay=config.media_base_delay_seconds,
        )
        return cls(config=config, backend=backend, media=media)

    @property
    def closed(self) -> bool:
        return self._closed

    async def flush(self) -> None:
        """Wait for pending media uploads, then force-flush the backend."""
        await self.media.flush()
        await self.backend.force_flush()

    async def close(self) -> None:
        """Drain uploads, flush and shut down the backend. Runs once; later calls return at once."""
        async with self._close_lock:
            if self._closed:
                return
            self._closed = True
            pending = self.media.pending_uploads
            if pending:
                logger.info(f"Waiting for {pending} pending media upload(s) before shutdown")
            await self.media.flush()
            await self.backend.force_flush()
            await self.backend.shutdown()


CONTEXT_KEY = web.AppKey("spanrelay_context", ServerContext)


def extract_spans(payload: TransportPayload) -> List[TransportSpan]:
    """The spans of a batch: a bare list, or the list under "spans"."""
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict) and isinstance(payload.get("spans"), list):
        return payload["spans"]
    raise BatchPayloadError(INVALID_PAYLOAD_MESSAGE)


def parse_batch(raw: bytes) -> List[TransportSpan]:
    """Decode a request body into its list of transport spans."""
    if not raw:
        raise BatchPayloadError(INVALID_PAYLOAD_MESSAGE)
    try:
        payload = json.loads(raw)
    except ValueError:
        raise BatchPayloadError("Invalid payload: body is not valid JSON") from None
    return extract_spans(payload)


def _span_ids(span: Any) -> str:
    if not isinstance(span, dict):
        return "traceId=None spanId=None"
    return f"traceId={span.get('traceId')} spanId={span.get('spanId')}"


async def process_spans(context: ServerContext, spans: List[TransportSpan]) -> IngestResult:
    """
    Convert, strip media from, and forward each span in order. Failures are recorded per index.
    """
    errors: List[IngestError] = []
    accepted = 0
    for index, span in enumerate(spans):
        try:
            readable_span = to_readable_span(
                span,
                default_environment=context.config.default_environment,
                default_release=context.config.default_release,
            )
            readable_span = await context.media.process(readable_span)
            context.backend.on_end(readable_span)
            accepted += 1
        except Exception as e:
            logger.error(f"Failed to process span index={index} {_span_ids(span)}: {type(e).__name__}: {e}")
            errors.append({"index": index, "message": str(e) or type(e).__name__})
    return {"accepted": accepted, "rejected": len(errors), "errors": errors}


def _invalid_payload_response(message: str) -> web.Response:
    body = {"error": message, "accepted": 0, "rejected": 0, "errors": []}
    return web.json_response(body, status=400)


async def handle_ingest(request: web.Request) -> web.Response:
    context = request.app[CONTEXT_KEY]
    started_at = time.monotonic()

    raw = await request.read()
    try:
        spans = parse_batch(raw)
    except BatchPayloadError as e:
        logger.warning(f"Rejected payload: {e} (content-type={request.content_type}, bytes={len(raw)})")
        return _invalid_payload_response(str(e))

    logger.info(f"Received {len(spans)} span(s) from {request.remote}")
    result = await process_spans(context, spans)

    should_force_flush = (
        request.query.get(FORCE_FLUSH_QUERY_KEY, "false") == "true" or context.config.force_flush
    )
    if should_force_flush:
        logger.info("Force flushing backend")
        await context.flush()

    elapsed_ms = int((time.monotonic() - started_at) * 1000)
    logger.info(f"Processed spans (accepted={result['accepted']}, rejected={result['rejected']}, "
        f"forceFlush={should_force_flush}) in {elapsed_ms}ms"
    )
    return web.json_response(result, status=207 if result["rejected"] > 0 else 202)


async def handle_flush(request: web.Request) -> web.Response:
    logger.info("Manual flush requested")
    await request.app[CONTEXT_KEY].flush()
    return web.json_response({"status": "flushed"}, status=202)


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


def _apply_cors_headers(request: web.Request, response: web.StreamResponse, config: CollectorConfig) -> None:
    origin = request.headers.get("Origin")
    explicitly_allowed = origin is not None and origin in config.allowed_origins
    if not (config.allow_all_origins or explicitly_allowed):
        return

    response_origin = origin or "*"
    response.headers["Access-Control-Allow-Origin"] = response_origin
    if response_origin != "*":
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Vary"] = "Origin"
    response.headers["Access-Control-Allow-Headers"] = request.headers.get("Access-Control-Request-Headers", "*")
    response.headers["Access-Control-Allow-Methods"] = request.headers.get(
        "Access-Control-Request-Method", "GET,POST,OPTIONS"
    )
    response.headers["Access-Control-Expose-Headers"] = "*"
    response.headers["Access-Control-Max-Age"] = "86400"


def cors_middleware(config: CollectorConfig):
    """CORS for browser exporters. Preflight requests are answered here and never reach a handler."""

    @web.middleware
    async def middleware(request: web.Request, handler):
        if request.method == "OPTIONS":
            response = web.Response(status=204)
            _apply_cors_headers(request, response, config)
            return response
        try:
            response = await handler(request)
        except web.HTTPException as e:
            _apply_cors_headers(request, e, config)
            raise
        _apply_cors_headers(request, response, config)
        return response

    return middleware


def create_app(context: ServerContext) -> web.Application:
    app = web.Application(
        client_max_size=context.config.body_limit_bytes,
        middlewares=[cors_middleware(context.config)],
    )
    app[CONTEXT_KEY] = context
    app.router.add_post("/ingest", handle_ingest)
    app.router.add_post("/otel-ingest", handle_ingest)
    app.router.add_post("/flush", handle_flush)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/healthz", handle_health)
    return app


class IngestServer:
    """Runs the ingest app on a TCP site, and owns the graceful-shutdown sequence."""

    def __init__(self, context: ServerContext, host: Optional[str] = None, port: Optional[int] = None):
        self.context = context
        self._host = host or context.config.host
        self._port = context.config.port if port is None else port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @property
    def is_running(self) -> bool:
        return self._site is not None

    async def start(self) -> None:
        if self._runner is not None:
            logger.debug("IngestServer already started, skipping")
            return
        self._runner = web.AppRunner(create_app(self.context))
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        logger.info(f"Listening on {self._host}:{self._port}. Body limit: {self.context.config.body_limit_bytes} bytes")

    async def stop(self) -> None:
        """
        Graceful shutdown: stop accepting connections, let in-flight requests finish,
        then wait for pending uploads and flush and shut down the backend.
        """
        try:
            if self._runner is not None:
                # Stops the site, then waits up to the runner's shutdown timeout for running handlers.
                await self._runner.cleanup()
                self._runner = None
            self._site = None
        finally:
            await self.context.close()
        logger.info("Shutdown complete")


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    error = context.get("exception")
    logger.error(f"Unhandled error in background task: {context.get('message')}", exc_info=error)


async def serve(config: CollectorConfig, stop_event: Optional[asyncio.Event] = None) -> None:
    """Run the collector until SIGINT/SIGTERM (or stop_event), then shut down gracefully."""
    loop = asyncio.get_running_loop()
    loop.set_exception_handler(_log_loop_exception)

    stop_event = stop_event or asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, stop_event, sig)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            logger.debug(f"Signal handler for {sig.name} not supported on this platform")

    server = IngestServer(ServerContext.from_config(config))
    await server.start()
    try:
        await stop_event.wait()
    finally:
        await server.stop()


def _request_stop(stop_event: asyncio.Event, sig: signal.Signals) -> None:
    logger.info(f"Received {sig.name}, shutting down...")
    stop_event.set()
