"""
Collector configuration, read from environment variables (a .env file is loaded by the entry point).

    PORT                              Listen port (default 3418)
    HOST                              Listen address (default 0.0.0.0)
    BODY_LIMIT                        Request body ceiling, e.g. "1mb" (default 1mb)
    LANGFUSE_BASE_URL                 Backend base URL
    LANGFUSE_PUBLIC_KEY               Backend credentials
    LANGFUSE_SECRET_KEY
    LANGFUSE_TRACING_ENVIRONMENT      Default environment tag (fallback LANGFUSE_DEFAULT_ENVIRONMENT)
    LANGFUSE_RELEASE                  Default release tag
    CORS_ALLOW_ORIGINS                Comma-separated origins, or * (default *)
    LANGFUSE_FORCE_FLUSH              "true" to force-flush the backend after every ingest request
    SPANRELAY_MEDIA_MAX_RETRIES       Upload retries (default 3)
    SPANRELAY_MEDIA_BASE_DELAY_SECONDS  Upload backoff base delay (default 1.0)
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from .constants import (
    DEFAULT_BODY_LIMIT,
    DEFAULT_HOST,
    DEFAULT_MEDIA_BASE_DELAY_SECONDS,
    DEFAULT_MEDIA_MAX_RETRIES,
    DEFAULT_PORT,
    LOG_TAG,
)
from .http_utils import get_base_url, get_env, get_env_bool, mask_secret
from .object_serialiser import toNumber

logger = logging.getLogger(LOG_TAG)


def parse_origins(value: Optional[str]) -> List[str]:
    """Split a comma-separated origin list. Unset means allow all."""
    if value is None:
        value = "*"
    return [item.strip() for item in value.split(",") if item.strip()]


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Invalid {name} value '{value}', using default {default}")
        return default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Invalid {name} value '{value}', using default {default}")
        return default


@dataclass
class CollectorConfig:
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    body_limit_bytes: int = toNumber(DEFAULT_BODY_LIMIT)
    base_url: str = field(default_factory=get_base_url)
    public_key: Optional[str] = None
    secret_key: Optional[str] = None
    default_environment: Optional[str] = None
    default_release: Optional[str] = None
    allowed_origins: List[str] = field(default_factory=lambda: ["*"])
    force_flush: bool = False
    media_max_retries: int = DEFAULT_MEDIA_MAX_RETRIES
    media_base_delay_seconds: float = DEFAULT_MEDIA_BASE_DELAY_SECONDS

    @property
    def allow_all_origins(self) -> bool:
        return not self.allowed_origins or "*" in self.allowed_origins

    @classmethod
    def from_env(cls) -> "CollectorConfig":
        body_limit = os.getenv("BODY_LIMIT") or DEFAULT_BODY_LIMIT
        try:
            body_limit_bytes = toNumber(body_limit)
        except ValueError:
            logger.warning(f"Invalid BODY_LIMIT value '{body_limit}', using default {DEFAULT_BODY_LIMIT}")
            body_limit_bytes = toNumber(DEFAULT_BODY_LIMIT)

        return cls(
            port=_int_env("PORT", DEFAULT_PORT),
            host=os.getenv("HOST") or DEFAULT_HOST,
            body_limit_bytes=body_limit_bytes,
            base_url=get_base_url(),
            public_key=get_env("LANGFUSE_PUBLIC_KEY"),
            secret_key=get_env("LANGFUSE_SECRET_KEY"),
            default_environment=get_env("LANGFUSE_TRACING_ENVIRONMENT", "LANGFUSE_DEFAULT_ENVIRONMENT"),
            default_release=get_env("LANGFUSE_RELEASE"),
            allowed_origins=parse_origins(os.getenv("CORS_ALLOW_ORIGINS")),
            force_flush=get_env_bool("LANGFUSE_FORCE_FLUSH"),
            media_max_retries=_int_env("SPANRELAY_MEDIA_MAX_RETRIES", DEFAULT_MEDIA_MAX_RETRIES),
            media_base_delay_seconds=_float_env("SPANRELAY_MEDIA_BASE_DELAY_SECONDS", DEFAULT_MEDIA_BASE_DELAY_SECONDS),
        )

    def describe(self) -> str:
        """One-line summary for the startup log. Credentials are masked."""
        return (
            f"baseUrl={self.base_url} environment={self.default_environment or '<unset>'} "
            f"release={self.default_release or '<unset>'} publicKey={mask_secret(self.public_key)} "
            f"secretKey={mask_secret(self.secret_key)} corsOrigins={','.join(self.allowed_origins)} "
            f"bodyLimit={self.body_limit_bytes} forceFlush={self.force_flush}"
        )
