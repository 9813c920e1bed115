# venice/__init__.py
"""
venice: resilient Python client for the Venice AI API.

Every call goes through one request pipeline that retries transient
failures with backoff, tracks the server's rate limits, decodes streamed
responses incrementally and can be cancelled or bounded by a deadline.
Inbound webhook payloads can be verified with :mod:`venice.webhooks`.

Examples:
    Chat completion::

        import venice

        client = venice.APIClient(api_key="your-key")
        response = client.chat.create_completion({
            "model": "llama-3.3-70b",
            "messages": [{"role": "user", "content": "Hello"}],
        })
        print(response.data["choices"][0]["message"]["content"])
        print(response.rate_limit.remaining_requests)

    Streaming with a deadline::

        with client.chat.stream_completion(payload, timeout=30) as stream:
            for chunk in stream:
                print(chunk.text, end="")

    Webhook verification::

        from venice import WebhookVerifier

        WebhookVerifier().verify(body, signature, timestamp, secret)

Note:
    This library requires Python 3.8 or later.
"""

import warnings

# Version information
from .version import __version__, __version_info__, get_version_info

# Configuration management
from .config import (
    VeniceConfig, configure, configure_session, get_config,
    load_config, reset_config, save_config
)

# Exceptions
from .exceptions import (
    VeniceError,
    TransportError,
    HttpStatusError,
    AuthenticationError,
    DecodeError,
    RateLimitExceeded,
    SignatureError,
    CancelledError,
    ConfigurationError,
    ValidationError,
)

# API client
from .api import (
    APIClient, APIRequest, APIResponse, AsyncRequestPipeline, CancellationToken,
    ChunkStream, RateLimitSnapshot, RateLimitTracker, RequestPipeline,
    RetryPolicy, RetryPolicyConfig, configure_api, get_api_client, set_api_key
)
from .models import ChatCompletionChunk
from .webhooks import WebhookSignature, WebhookVerifier, get_webhook_headers, verify_webhook_signature

# Utilities
from .utils.logging import set_log_level

# Initialize default configuration on import
try:
    configure()
except ConfigurationError as e:
    warnings.warn(f"Failed to initialize default configuration: {e}")


def get_version() -> str:
    """Get venice version string."""
    return __version__


__all__ = [
    # Version information
    "__version__",
    "__version_info__",
    "get_version",
    "get_version_info",

    # Configuration
    "VeniceConfig",
    "configure",
    "configure_session",
    "get_config",
    "load_config",
    "reset_config",
    "save_config",

    # Exceptions
    "VeniceError",
    "TransportError",
    "HttpStatusError",
    "AuthenticationError",
    "DecodeError",
    "RateLimitExceeded",
    "SignatureError",
    "CancelledError",
    "ConfigurationError",
    "ValidationError",

    # API
    "APIClient",
    "APIRequest",
    "APIResponse",
    "AsyncRequestPipeline",
    "CancellationToken",
    "ChunkStream",
    "RateLimitSnapshot",
    "RateLimitTracker",
    "RequestPipeline",
    "RetryPolicy",
    "RetryPolicyConfig",
    "ChatCompletionChunk",
    "configure_api",
    "get_api_client",
    "set_api_key",

    # Webhooks
    "WebhookSignature",
    "WebhookVerifier",
    "get_webhook_headers",
    "verify_webhook_signature",

    # Utilities
    "set_log_level",
]

# Package metadata
__license__ = "Apache-2.0"
__description__ = "Resilient request pipeline and client for the Venice AI API"
