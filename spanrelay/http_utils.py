"""
Shared HTTP utilities for SpanRelay.
Provides common functions for building headers, handling errors, and reading environment variables.
The exporter reads SPANRELAY_ENDPOINT; the collector talks to the backend with Basic auth
built from LANGFUSE_PUBLIC_KEY / LANGFUSE_SECRET_KEY.
"""

import base64
import os
from typing import Dict, Optional

from .constants import SDK_NAME, VERSION


def get_env(name: str, *fallbacks: str, default: Optional[str] = None) -> Optional[str]:
    """
    Read an environment variable, trying fallback names in order.
    Empty strings count as unset.
    """
    for key in (name, *fallbacks):
        value = os.getenv(key)
        if value:
            return value
    return default


def get_env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_endpoint(endpoint: Optional[str] = None) -> str:
    """
    Get the collector ingest URL from parameter or environment variable.

    Checks SPANRELAY_ENDPOINT, then falls back to http://localhost:3418/ingest.
    """
    if endpoint:
        return endpoint
    return get_env("SPANRELAY_ENDPOINT", default="http://localhost:3418/ingest")


def get_base_url(base_url: Optional[str] = None) -> str:
    """
    Get the backend base URL with trailing slash removed.
    Defaults to https://cloud.langfuse.com if neither the parameter nor LANGFUSE_BASE_URL is set.
    """
    url = base_url or get_env("LANGFUSE_BASE_URL", "LANGFUSE_HOST", default="https://cloud.langfuse.com")
    return url.rstrip("/")


def basic_auth_value(public_key: Optional[str], secret_key: Optional[str]) -> str:
    """Authorization header value for the backend: Basic base64(public:secret)."""
    token = base64.b64encode(f"{public_key or ''}:{secret_key or ''}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def build_headers(public_key: Optional[str] = None, secret_key: Optional[str] = None) -> Dict[str, str]:
    """
    Build HTTP headers for backend API requests.

    Returns:
        Dictionary with Content-Type, SDK identification, and Authorization when a public key is known.
    """
    headers = {
        "Content-Type": "application/json",
        "x-langfuse-sdk-name": SDK_NAME,
        "x-langfuse-sdk-version": VERSION,
    }
    if public_key:
        headers["Authorization"] = basic_auth_value(public_key, secret_key)
        headers["x-langfuse-public-key"] = public_key
    return headers


def mask_secret(value: Optional[str]) -> str:
    """Show just enough of a credential to recognise it in logs."""
    if not value:
        return "<unset>"
    if len(value) <= 4:
        return "<hidden>"
    return f"{value[:4]}...{value[-2:]}"


def format_http_error(response, operation: str, error_text: Optional[str] = None) -> str:
    """
    Format an HTTP error message from a response object.
    Works with both requests responses (status_code, text) and aiohttp responses (status, with
    the body passed in as error_text because reading it is async).

    Args:
        response: Response object
        operation: Description of the operation that failed (e.g., "request upload url")
        error_text: Body text, when it has already been read

    Returns:
        Formatted error message string.
    """
    if error_text is None:
        error_text = getattr(response, "text", None)
        if not isinstance(error_text, str):
            error_text = "Unknown error"
    status_code = getattr(response, "status_code", getattr(response, "status", "unknown"))
    reason = getattr(response, "reason", "") or ""
    return f"Failed to {operation}: {status_code} {reason} - {error_text[:500]}"
