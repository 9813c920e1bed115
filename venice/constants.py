# venice/constants.py
"""
Constants and configuration values for venice.

This module contains the constants used throughout the venice library,
including API endpoints, default header names, retry defaults and
environment variable names.
"""

from pathlib import Path

from .version import __version__

# API Configuration
DEFAULT_API_ENDPOINT = "https://api.venice.ai/api/v1"
API_VERSION = "v1"
USER_AGENT = f"venice-python/{__version__}"

# Retry defaults
DEFAULT_TIMEOUT = 30  # seconds
MAX_API_RETRIES = 3
DEFAULT_INITIAL_BACKOFF = 0.5  # seconds
DEFAULT_MAX_BACKOFF = 10.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_MAX_RATE_LIMIT_WAIT = 60.0  # seconds
RETRYABLE_STATUS_CODES = frozenset([429] + list(range(500, 600)))

# Rate limit response headers (names are defined by the upstream service)
RATE_LIMIT_HEADERS = {
    "limit_requests": "x-ratelimit-limit-requests",
    "remaining_requests": "x-ratelimit-remaining-requests",
    "reset_requests": "x-ratelimit-reset-requests",
    "limit_tokens": "x-ratelimit-limit-tokens",
    "remaining_tokens": "x-ratelimit-remaining-tokens",
    "reset_tokens": "x-ratelimit-reset-tokens",
    "balance_vcu": "x-venice-balance-vcu",
    "balance_usd": "x-venice-balance-usd",
    "retry_after": "Retry-After",
}

# Reset header values above this are Unix timestamps, below are relative seconds
EPOCH_THRESHOLD = 1_000_000_000

# Streaming
STREAM_DONE_SENTINEL = "[DONE]"
STREAM_CONTENT_TYPE = "text/event-stream"

# Webhooks
WEBHOOK_SIGNATURE_HEADER = "x-venice-signature"
WEBHOOK_TIMESTAMP_HEADER = "x-venice-timestamp"
DEFAULT_WEBHOOK_TOLERANCE = 300  # seconds

# File Paths
DEFAULT_CONFIG_DIR = Path.home() / ".venice"
CONFIG_FILE_NAME = "config.yaml"

# Environment Variables
ENV_VAR_PREFIX = "VENICE_"
ENV_VARS = {
    "API_KEY": f"{ENV_VAR_PREFIX}API_KEY",
    "API_ENDPOINT": f"{ENV_VAR_PREFIX}API_ENDPOINT",
    "API_TIMEOUT": f"{ENV_VAR_PREFIX}API_TIMEOUT",
    "API_RETRIES": f"{ENV_VAR_PREFIX}API_RETRIES",
    "WEBHOOK_SECRET": f"{ENV_VAR_PREFIX}WEBHOOK_SECRET",
    "LOG_LEVEL": f"{ENV_VAR_PREFIX}LOG_LEVEL",
    "AUTO_THROTTLE": f"{ENV_VAR_PREFIX}AUTO_THROTTLE",
    "VERIFY_SSL": f"{ENV_VAR_PREFIX}VERIFY_SSL",
}
