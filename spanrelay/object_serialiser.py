"""
Serialization helpers: JSON encoding of wire payloads, and coercion of arbitrary JSON values
into span attribute values that OpenTelemetry accepts.
"""

import json
import logging
from typing import Any, Optional

from .constants import LOG_TAG
from .types import AttributeValue

logger = logging.getLogger(LOG_TAG)

_PRIMITIVE_TYPES = (str, bool, int, float)

def sanitize_string_for_utf8(text: Optional[str]) -> Optional[str]:
    """
    Sanitize a string to remove surrogate characters that can't be encoded to UTF-8.
    Surrogate characters (U+D800 to U+DFFF) are invalid in UTF-8 and can cause encoding errors.

    Args:
        text: The string to sanitize

    Returns:
        A string with surrogate characters replaced by the Unicode replacement character (U+FFFD)
    """
    if text is None:
        return None
    if not isinstance(text, str): # paranoia
        text = str(text)
    try:
        text.encode('utf-8')
        return text
    except UnicodeEncodeError:
        return text.encode('utf-8', errors='replace').decode('utf-8', errors='replace')

def toNumber(value: str|int|None) -> int:
    """Convert string to number. handling units like g, m, k, (also mb kb gb as used for body limits)"""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    if not isinstance(value, str):
        value = str(value)
    value = value.strip().lower()
    if value.endswith("b"): # drop the b
        value = value[:-1]
    if value.endswith("g"):
        return int(value[:-1]) * 1024 * 1024 * 1024
    elif value.endswith("m"):
        return int(value[:-1]) * 1024 * 1024
    elif value.endswith("k"):
        return int(value[:-1]) * 1024
    return int(value)


def safe_str_repr(value: Any) -> str:
    """
    Safely convert a value to string representation.
    Handles objects with __repr__ that might raise exceptions.
    """
    try:
        return sanitize_string_for_utf8(repr(value))
    except Exception:
        try:
            return f"<{type(value).__name__} object>"
        except Exception:
            return "<unknown object>"


def _json_default(value: Any) -> Any:
    """Fallback for values json can't encode (tuples are handled natively as lists)."""
    if isinstance(value, (set, frozenset)):
        return list(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return safe_str_repr(value)


def safe_json_dumps(value: Any) -> str:
    """
    Serialize a value to a compact JSON string. Never raises: values json can't encode
    are replaced by their repr.
    """
    try:
        return json.dumps(value, default=_json_default, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        # circular references or NaN edge cases
        logger.debug(f"safe_json_dumps failed for {type(value).__name__}: {e}")
        return json.dumps(safe_str_repr(value))


def json_byte_length(json_str: str) -> int:
    """Size in bytes of a JSON string once UTF-8 encoded (what actually goes over the wire)."""
    return len(sanitize_string_for_utf8(json_str).encode("utf-8"))


def _is_homogeneous_primitive_sequence(value: Any) -> bool:
    if not isinstance(value, (list, tuple)):
        return False
    if not value:
        return True
    first_type = bool if isinstance(value[0], bool) else type(value[0])
    if first_type not in _PRIMITIVE_TYPES:
        return False
    for item in value:
        # bool is a subclass of int: keep them apart
        item_type = bool if isinstance(item, bool) else type(item)
        if item_type is not first_type:
            return False
    return True


def to_attribute_value(value: Any) -> Optional[AttributeValue]:
    """
    Coerce a decoded JSON value into a span attribute value.
    OpenTelemetry only accepts primitives (bool, str, int, float) or homogeneous sequences of those.
    Objects, mixed lists and lists of objects are JSON-encoded to a string.
    None is returned as None (the caller drops it).
    """
    if value is None or isinstance(value, _PRIMITIVE_TYPES):
        return value
    if _is_homogeneous_primitive_sequence(value):
        return tuple(value)
    return safe_json_dumps(value)
