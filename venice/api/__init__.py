# venice/api/__init__.py
"""
API client for venice.

This package contains the request pipeline and the client built on it:

- Single-attempt execution over a ``requests`` session
- Retry with exponential backoff and decorrelated jitter
- Rate limit tracking from response headers, with optional throttling
- Incremental decoding of server-sent event streams
- Cancellation and deadlines for every call

Example:
    Basic usage with API key::

        import venice

        venice.set_api_key("your-api-key")
        client = venice.get_api_client()

        models = client.models.list().data

        for chunk in client.chat.stream_completion({
            "model": "llama-3.3-70b",
            "messages": [{"role": "user", "content": "Hello"}],
        }):
            print(chunk.text, end="")

    Advanced client configuration::

        from venice.api import APIClient

        client = APIClient(
            api_key="your-key",
            timeout=60,
            max_retries=5
        )

.. warning::
   API keys should be kept secure and never committed to version control.
   Consider using environment variables or configuration files.
"""

from .auth import APIAuth
from .cancellation import CancellationToken
from .client import (
    APIClient, APIKeysAPI, ChatAPI, ImagesAPI, ModelsAPI,
    configure_api, get_api_client, set_api_key
)
from .endpoints import APIEndpoints
from .executor import APIRequest, Executor, RawResponse
from .pipeline import APIResponse, AsyncChunkStream, AsyncRequestPipeline, RequestPipeline
from .rate_limiting import (
    RateLimitHeaders, RateLimitSnapshot, RateLimitTracker,
    get_shared_tracker, parse_rate_limit_headers
)
from .retry import JitterMode, RetryDecision, RetryPolicy, RetryPolicyConfig
from .streaming import END_OF_STREAM, ChunkStream, StreamBuffer, StreamDecoder

__all__ = [
    "APIClient",
    "APIAuth",
    "APIEndpoints",
    "APIRequest",
    "APIResponse",
    "APIKeysAPI",
    "AsyncChunkStream",
    "AsyncRequestPipeline",
    "CancellationToken",
    "ChatAPI",
    "ChunkStream",
    "END_OF_STREAM",
    "Executor",
    "ImagesAPI",
    "JitterMode",
    "ModelsAPI",
    "RateLimitHeaders",
    "RateLimitSnapshot",
    "RateLimitTracker",
    "RawResponse",
    "RequestPipeline",
    "RetryDecision",
    "RetryPolicy",
    "RetryPolicyConfig",
    "StreamBuffer",
    "StreamDecoder",
    "configure_api",
    "get_api_client",
    "get_shared_tracker",
    "parse_rate_limit_headers",
    "set_api_key",
]
