"""
Exceptions raised by the SpanRelay collector.
"""

from typing import Optional


class SpanRelayError(Exception):
    """Base class for SpanRelay errors."""


class BatchPayloadError(SpanRelayError):
    """The request body is not a batch: neither a list of spans nor an object with a `spans` list."""


class SpanConversionError(SpanRelayError):
    """A single transport span could not be converted. Only that span is rejected."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class MediaIntegrityError(SpanRelayError):
    """Client-computed media ID does not match the one issued by the backend. Never retried."""

    def __init__(self, client_media_id: str, server_media_id: str):
        super().__init__(
            f"Media ID mismatch between client ({client_media_id}) and server ({server_media_id})"
        )
        self.client_media_id = client_media_id
        self.server_media_id = server_media_id
