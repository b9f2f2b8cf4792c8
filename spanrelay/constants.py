"""
Constants used across the SpanRelay package.
"""

SDK_NAME = "spanrelay"
VERSION = "0.3.1"

LOG_TAG = "SpanRelay" # Used in all logging output to identify SpanRelay messages

# Exporter
DEFAULT_BATCH_BYTES_LIMIT = 800_000
FORCE_FLUSH_QUERY_KEY = "flush"

# Collector
DEFAULT_PORT = 3418
DEFAULT_HOST = "0.0.0.0"
DEFAULT_BODY_LIMIT = "1mb"

# Span attributes understood by the backend
ENVIRONMENT_ATTRIBUTE = "langfuse.environment"
RELEASE_ATTRIBUTE = "langfuse.release"
TRACE_INPUT_ATTRIBUTE = "langfuse.trace.input"
TRACE_OUTPUT_ATTRIBUTE = "langfuse.trace.output"
TRACE_METADATA_ATTRIBUTE = "langfuse.trace.metadata"
OBSERVATION_INPUT_ATTRIBUTE = "langfuse.observation.input"
OBSERVATION_OUTPUT_ATTRIBUTE = "langfuse.observation.output"
OBSERVATION_METADATA_ATTRIBUTE = "langfuse.observation.metadata"

# Media upload
DEFAULT_MEDIA_MAX_RETRIES = 3
DEFAULT_MEDIA_BASE_DELAY_SECONDS = 1.0
