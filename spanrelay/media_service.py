"""
Media offloading for converted spans.

Scans span attributes for inline media (base64 data URIs in input/output/metadata attributes,
and file parts in AI SDK prompt messages), replaces each payload with a reference tag, and
uploads the bytes to the backend's blob store in background tasks.
The span handed back by process() never contains the raw payloads; uploads finish later and
flush() waits for them.
"""

import asyncio
import json
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Set, Tuple

import aiohttp
from opentelemetry.sdk.trace import ReadableSpan

from .backend import BackendClient, UploadResponse
from .constants import (
    DEFAULT_MEDIA_BASE_DELAY_SECONDS,
    DEFAULT_MEDIA_MAX_RETRIES,
    LOG_TAG,
    OBSERVATION_INPUT_ATTRIBUTE,
    OBSERVATION_METADATA_ATTRIBUTE,
    OBSERVATION_OUTPUT_ATTRIBUTE,
    TRACE_INPUT_ATTRIBUTE,
    TRACE_METADATA_ATTRIBUTE,
    TRACE_OUTPUT_ATTRIBUTE,
)
from .converter import replace_attributes
from .errors import MediaIntegrityError
from .media import MediaItem, MediaReference, find_data_uris, rewrite_payloads
from .types import MediaField

logger = logging.getLogger(LOG_TAG)

MEDIA_ATTRIBUTE_PREFIXES = [
    OBSERVATION_INPUT_ATTRIBUTE,
    TRACE_INPUT_ATTRIBUTE,
    OBSERVATION_OUTPUT_ATTRIBUTE,
    TRACE_OUTPUT_ATTRIBUTE,
    OBSERVATION_METADATA_ATTRIBUTE,
    TRACE_METADATA_ATTRIBUTE,
]

# Instrumentation scope of the AI SDK, and the attributes where it records prompt messages
AI_SDK_SCOPE_NAME = "ai"
AI_SDK_MEDIA_ATTRIBUTES = ["ai.prompt.messages", "ai.prompt"]

# 408 Request Timeout, 429 Too Many Requests; plus all 5xx
RETRYABLE_STATUS_CODES = frozenset({408, 429})

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)


def resolve_field(attribute_prefix: str) -> MediaField:
    if "input" in attribute_prefix:
        return "input"
    if "output" in attribute_prefix:
        return "output"
    return "metadata"


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUS_CODES or status >= 500


def _default_jitter() -> float:
    return random.uniform(0.0, 1.0)


class UploadRegistry:
    """
    Tracks in-flight upload tasks. Tasks remove themselves when they settle.
    Only touched from the event loop thread, so a plain set is safe.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def register(self, coro: Coroutine[Any, Any, None], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning(f"Upload task {task.get_name()} was cancelled")
            return
        error = task.exception()
        if error is not None:
            # upload tasks catch their own errors; this is the last line of defence
            logger.error(f"Upload task {task.get_name()} failed: {error}", exc_info=error)

    def __len__(self) -> int:
        return len(self._tasks)

    async def wait_all(self) -> None:
        """Wait until every task registered so far has settled (success or failure)."""
        pending = list(self._tasks)
        if not pending:
            return
        logger.debug(f"Waiting for {len(pending)} pending media upload(s)")
        await asyncio.gather(*pending, return_exceptions=True)


class MediaService:
    """Finds inline media in spans, swaps it for reference tags, and uploads it in the background."""

    def __init__(
        self,
        backend: BackendClient,
        max_retries: int = DEFAULT_MEDIA_MAX_RETRIES,
        base_delay: float = DEFAULT_MEDIA_BASE_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        jitter: Callable[[], float] = _default_jitter,
    ):
        """
        Args:
            backend: Backend client used for slot negotiation, blob upload and status reports
            max_retries: Retries after the first upload attempt (so at most max_retries + 1 PUTs)
            base_delay: Seconds; the wait before retry n is base_delay * 2**n plus jitter
            sleep: Awaitable sleep, replaceable in tests
            jitter: Returns extra seconds in [0, 1) added to each backoff
        """
        self._backend = backend
        self.max_retries = max(0, max_retries)
        self.base_delay = base_delay
        self._sleep = sleep
        self._jitter = jitter
        self.registry = UploadRegistry()

    @property
    def pending_uploads(self) -> int:
        return len(self.registry)

    async def flush(self) -> None:
        """Resolve once all uploads scheduled so far have settled."""
        await self.registry.wait_all()

    async def process(self, span: ReadableSpan) -> ReadableSpan:
        """
        Return span with inline media replaced by reference tags (the same span object if
        there was nothing to replace). Uploads are scheduled, not awaited.
        """
        attributes: Dict[str, Any] = dict(span.attributes or {})
        changed = self._handle_standard_attributes(span, attributes)
        changed = self._handle_ai_sdk_attributes(span, attributes) or changed
        if not changed:
            return span
        return replace_attributes(span, attributes)

    def _handle_standard_attributes(self, span: ReadableSpan, attributes: Dict[str, Any]) -> bool:
        changed = False
        for attribute_prefix in MEDIA_ATTRIBUTE_PREFIXES:
            field = resolve_field(attribute_prefix)
            eligible_keys = [key for key in attributes if key.startswith(attribute_prefix)]
            for key in eligible_keys:
                value = attributes[key]
                if isinstance(value, str):
                    updated = self._replace_data_uris(span, value, field)
                elif isinstance(value, (list, tuple)) and all(isinstance(item, str) for item in value):
                    updated = tuple(self._replace_data_uris(span, item, field) for item in value)
                else:
                    logger.warning(f"Span attribute {key} is not a string. Skipping media handling.")
                    continue
                if updated != value:
                    attributes[key] = updated
                    changed = True
        return changed

    def _replace_data_uris(self, span: ReadableSpan, value: str, field: MediaField) -> str:
        replacements: List[Tuple[str, str]] = []
        for data_uri in find_data_uris(value):
            media = MediaItem.from_data_uri(data_uri)
            tag = media.tag if media else None
            if not tag:
                logger.warning("Failed to create media tag. Skipping media item.")
                continue
            self._schedule_upload(span, media, field)
            replacements.append((data_uri, tag))
        return rewrite_payloads(value, replacements)

    def _handle_ai_sdk_attributes(self, span: ReadableSpan, attributes: Dict[str, Any]) -> bool:
        scope = span.instrumentation_scope
        if scope is None or scope.name != AI_SDK_SCOPE_NAME:
            return False

        changed = False
        for attribute_key in AI_SDK_MEDIA_ATTRIBUTES:
            raw_value = attributes.get(attribute_key)
            if not raw_value or not isinstance(raw_value, str):
                continue
            try:
                parsed = json.loads(raw_value)
            except ValueError as e:
                logger.warning(f"Failed to handle media for AI SDK attribute {attribute_key} "
                    f"for span {format(span.get_span_context().span_id, '016x')}: {e}"
                )
                continue

            replacements = self._collect_message_media(span, parsed)
            if replacements:
                updated = rewrite_payloads(raw_value, replacements)
                if updated != raw_value:
                    attributes[attribute_key] = updated
                    changed = True
        return changed

    def _collect_message_media(self, span: ReadableSpan, parsed: Any) -> List[Tuple[str, str]]:
        """(inline payload, tag) for each file part in a list of chat messages."""
        if isinstance(parsed, dict) and isinstance(parsed.get("messages"), list):
            parsed = parsed["messages"]
        if not isinstance(parsed, list):
            return []

        found: List[Tuple[str, str]] = []
        seen: Set[str] = set()
        for message in parsed:
            content = message.get("content") if isinstance(message, dict) else None
            if not isinstance(content, list):
                continue
            for part in content:
                if not isinstance(part, dict) or part.get("type") != "file":
                    continue
                media_type = part.get("mediaType")
                if not isinstance(media_type, str) or not media_type:
                    continue
                payload = part.get("data") or part.get("image")
                if not isinstance(payload, str) or not payload or payload in seen:
                    continue
                seen.add(payload)

                if payload.startswith("data:"):
                    media = MediaItem.from_data_uri(payload)
                else:
                    media = MediaItem.from_base64(payload, media_type)
                tag = media.tag if media else None
                if not tag:
                    logger.warning("Failed to create media tag. Skipping media item.")
                    continue
                self._schedule_upload(span, media, "input")
                found.append((payload, tag))
        return found

    def _schedule_upload(self, span: ReadableSpan, media: MediaItem, field: MediaField) -> None:
        span_context = span.get_span_context()
        reference = media.reference(
            trace_id=format(span_context.trace_id, "032x"),
            observation_id=format(span_context.span_id, "016x"),
            field=field,
        )
        self.registry.register(
            self._handle_upload(media, reference),
            name=f"media-upload-{media.media_id}",
        )

    async def _handle_upload(self, media: MediaItem, reference: MediaReference) -> None:
        """One upload, start to finish. Never raises: every failure is logged here."""
        try:
            slot = await self._backend.get_upload_url(
                content_length=reference.byte_length,
                trace_id=reference.trace_id,
                observation_id=reference.observation_id,
                field=reference.field,
                content_type=reference.content_type,
                sha256_hash=reference.sha256,
            )
            media_id = slot["mediaId"]
            upload_url = slot.get("uploadUrl")
            if not upload_url:
                logger.debug(f"Media status: Media with ID {media_id} already uploaded. Skipping.")
                return

            if media.media_id != media_id:
                raise MediaIntegrityError(media.media_id, media_id)

            start = time.monotonic()
            response = await self.upload_with_backoff(upload_url, media)
            await self._backend.patch_media(
                media_id,
                uploaded_at=datetime.now(timezone.utc).isoformat(),
                upload_http_status=response.status,
                upload_http_error=None if response.ok else response.text,
                upload_time_ms=int((time.monotonic() - start) * 1000),
            )
            if response.ok:
                logger.debug(f"Media upload status reported for {media_id}")
            else:
                logger.error(f"Media upload failed for {media_id}: HTTP {response.status}")
        except MediaIntegrityError as e:
            logger.error(f"Media integrity error: {e}. Upload cancelled.")
        except Exception as e:
            logger.error(f"Error processing media item {media!r}: {type(e).__name__}: {e}")

    def backoff_delay(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt) + self._jitter()

    async def upload_with_backoff(self, upload_url: str, media: MediaItem) -> UploadResponse:
        """
        PUT the media bytes, retrying transient failures (transport errors, 408, 429, 5xx)
        up to max_retries times with exponential backoff plus jitter. Other 4xx responses are
        returned at once. The last attempt's response is returned as-is; a transport error on
        the last attempt is raised.
        """
        previous_delay = 0.0
        for attempt in range(self.max_retries + 1):
            is_last_attempt = attempt >= self.max_retries
            try:
                response = await self._backend.put_blob(
                    upload_url, media.content_bytes, media.content_type, media.sha256_hash
                )
            except _TRANSPORT_ERRORS as e:
                if is_last_attempt:
                    raise
                logger.warning(f"Media upload attempt {attempt + 1} failed: {type(e).__name__}: {e}")
            else:
                if response.ok:
                    return response
                if is_last_attempt or not is_retryable_status(response.status):
                    return response
                logger.warning(f"Media upload attempt {attempt + 1} failed with status {response.status}")

            # never wait less than before, even with a small base delay and unlucky jitter
            delay = max(self.backoff_delay(attempt), previous_delay)
            previous_delay = delay
            await self._sleep(delay)

        raise AssertionError("unreachable: the last attempt always returns or raises")
