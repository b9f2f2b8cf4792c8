"""
Media items embedded in span attributes: detection, hashing, IDs and reference tags.
Everything here is pure; uploading lives in media_service.
"""

import base64
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .constants import LOG_TAG
from .types import MediaField

logger = logging.getLogger(LOG_TAG)

DATA_URI_PATTERN = re.compile(r"data:[^;]+;base64,[A-Za-z0-9+/=]+")

SOURCE_DATA_URI = "base64_data_uri"
SOURCE_BYTES = "bytes"


def sha256_base64(content: bytes) -> str:
    """SHA-256 of content, standard base64 encoded (the form the blob store checks)."""
    return base64.b64encode(hashlib.sha256(content).digest()).decode("ascii")


def media_id_for_hash(sha256_hash: str) -> str:
    """Media ID: the first 22 characters of the URL-safe base64 content hash. The backend derives the same ID."""
    return sha256_hash.replace("+", "-").replace("/", "_")[:22]


def find_data_uris(value: str) -> List[str]:
    """All base64 data URIs in value, deduplicated, in order of first appearance."""
    return list(dict.fromkeys(DATA_URI_PATTERN.findall(value)))


def rewrite_payloads(value: str, replacements: Sequence[Tuple[str, str]]) -> str:
    """
    Replace every occurrence of each payload with its tag in a single pass.
    Where one payload is a prefix of another, the longer one wins. Pure: returns a new string.
    """
    tags = {payload: tag for payload, tag in replacements if payload}
    if not tags:
        return value
    pattern = re.compile("|".join(re.escape(payload) for payload in sorted(tags, key=len, reverse=True)))
    return pattern.sub(lambda match: tags[match.group(0)], value)


def decode_base64(data: str) -> Optional[bytes]:
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return None


@dataclass(frozen=True)
class MediaReference:
    """What the backend needs to know about one media item found in a span."""
    sha256: str
    byte_length: int
    content_type: str
    trace_id: str
    observation_id: Optional[str]
    field: MediaField


class MediaItem:
    """
    Raw media content plus its content type. The hash, media ID and tag are derived from the
    content only, so the same bytes always get the same tag.
    """

    def __init__(self, content_bytes: bytes, content_type: str, source: str = SOURCE_BYTES):
        self.content_bytes = content_bytes
        self.content_type = content_type
        self.source = source
        self._sha256_hash: Optional[str] = None

    @classmethod
    def from_data_uri(cls, data_uri: str) -> Optional["MediaItem"]:
        """Parse `data:<type>;base64,<data>`. Returns None if it is not a usable data URI."""
        if not data_uri.startswith("data:") or "," not in data_uri:
            logger.warning("Data URI is not formatted correctly, skipping media item")
            return None
        header, data = data_uri[len("data:"):].split(",", 1)
        content_type, _, encoding = header.partition(";")
        if encoding != "base64" or not content_type:
            logger.warning("Data URI is not base64 encoded or has no content type, skipping media item")
            return None
        content = decode_base64(data)
        if content is None:
            logger.warning("Data URI payload is not valid base64, skipping media item")
            return None
        return cls(content, content_type, SOURCE_DATA_URI)

    @classmethod
    def from_base64(cls, data: str, content_type: str) -> Optional["MediaItem"]:
        """Inline base64 content with a separately declared content type."""
        content = decode_base64(data)
        if content is None:
            logger.warning(f"Inline {content_type} payload is not valid base64, skipping media item")
            return None
        return cls(content, content_type, SOURCE_BYTES)

    @property
    def content_length(self) -> int:
        return len(self.content_bytes)

    @property
    def sha256_hash(self) -> str:
        if self._sha256_hash is None:
            self._sha256_hash = sha256_base64(self.content_bytes)
        return self._sha256_hash

    @property
    def media_id(self) -> str:
        return media_id_for_hash(self.sha256_hash)

    @property
    def tag(self) -> Optional[str]:
        """Reference tag that replaces the inline payload, or None if there is nothing to reference."""
        if not self.content_bytes or not self.content_type:
            return None
        return f"@@@langfuseMedia:type={self.content_type}|id={self.media_id}|source={self.source}@@@"

    def reference(self, trace_id: str, observation_id: Optional[str], field: MediaField) -> MediaReference:
        return MediaReference(
            sha256=self.sha256_hash,
            byte_length=self.content_length,
            content_type=self.content_type,
            trace_id=trace_id,
            observation_id=observation_id,
            field=field,
        )

    def __repr__(self) -> str:
        return f"MediaItem(type={self.content_type}, bytes={self.content_length}, source={self.source})"
