# venice/api/client.py
"""
Main API client for venice.

This module wires authentication, URL construction, the executor, the retry
policy and the shared rate limit tracker into a :class:`RequestPipeline`, and
exposes one capability object per API area. Capabilities only build
requests; all execution semantics live in the pipeline.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, Iterator, Optional

import requests

from ..config import get_config, save_config
from ..exceptions import DecodeError, ValidationError
from ..models import ChatCompletionChunk
from ..utils.logging import log_operation
from .auth import APIAuth
from .cancellation import CancellationToken
from .endpoints import APIEndpoints
from .executor import APIRequest, Executor
from .pipeline import APIResponse, AsyncRequestPipeline, RequestPipeline
from .rate_limiting import RateLimitHeaders, RateLimitSnapshot, RateLimitTracker, get_shared_tracker
from .retry import RetryPolicy, RetryPolicyConfig
from .streaming import ChunkStream

logger = logging.getLogger(__name__)


class _Capability:
    """Base for capability objects; depends only on the pipeline."""

    def __init__(self, pipeline: RequestPipeline, endpoints: APIEndpoints):
        self._pipeline = pipeline
        self._endpoints = endpoints

    def _execute(self, method: str, url: str, cancel: Optional[CancellationToken] = None,
                 timeout: Optional[float] = None, **kwargs) -> APIResponse:
        return self._pipeline.execute(APIRequest(method, url, **kwargs), cancel=cancel, timeout=timeout)


class ChatAPI(_Capability):
    """
    Chat completions.

    Example:
        >>> response = client.chat.create_completion({
        ...     "model": "llama-3.3-70b",
        ...     "messages": [{"role": "user", "content": "Hello"}],
        ... })
        >>> print(response.data["choices"][0]["message"]["content"])
    """

    def create_completion(self, payload: Dict[str, Any], cancel: Optional[CancellationToken] = None,
                          timeout: Optional[float] = None) -> APIResponse:
        """Create a chat completion."""
        payload = dict(payload)
        payload.pop("stream", None)
        return self._execute("POST", self._endpoints.chat_completions, json=payload,
                             cancel=cancel, timeout=timeout,
                             estimated_cost=_estimate_cost(payload))

    def stream_completion(self, payload: Dict[str, Any], cancel: Optional[CancellationToken] = None,
                          timeout: Optional[float] = None) -> ChunkStream:
        """
        Stream a chat completion.

        Returns:
            ChunkStream: Iterator of :class:`~venice.models.ChatCompletionChunk`
        """
        payload = dict(payload, stream=True)
        request = APIRequest("POST", self._endpoints.chat_completions, json=payload,
                             estimated_cost=_estimate_cost(payload))
        return self._pipeline.stream(request, parse=ChatCompletionChunk.from_dict,
                                     cancel=cancel, timeout=timeout)


class ImagesAPI(_Capability):
    """Image generation, styles and upscaling."""

    def generate(self, payload: Dict[str, Any], cancel: Optional[CancellationToken] = None,
                 timeout: Optional[float] = None) -> APIResponse:
        """Generate images from a prompt."""
        return self._execute("POST", self._endpoints.image_generate, json=payload,
                             cancel=cancel, timeout=timeout)

    def list_styles(self) -> APIResponse:
        """List available image styles."""
        return self._execute("GET", self._endpoints.image_styles)

    def upscale(self, image: bytes, scale: int = 2, filename: str = "image.png",
                cancel: Optional[CancellationToken] = None, timeout: Optional[float] = None,
                **options) -> APIResponse:
        """
        Upscale an image.

        Args:
            image (bytes): Image content
            scale (int): Upscale factor
            filename (str): File name sent with the multipart upload
            **options: Additional form fields

        Returns:
            APIResponse: ``data`` holds the upscaled image bytes
        """
        if not image:
            raise ValidationError("Image content is empty", field="image")

        fields = {"scale": str(scale)}
        fields.update({key: str(value) for key, value in options.items()})
        return self._execute("POST", self._endpoints.image_upscale,
                             files={"image": (filename, bytes(image))}, data=fields,
                             cancel=cancel, timeout=timeout)


class ModelsAPI(_Capability):
    """Model listing."""

    def list(self, model_type: Optional[str] = None) -> APIResponse:
        """List models, optionally filtered by type (e.g. ``"text"``, ``"image"``)."""
        params = {"type": model_type} if model_type else None
        return self._execute("GET", self._endpoints.models_list, params=params)

    def traits(self, model_type: Optional[str] = None) -> APIResponse:
        """Map of model traits to model ids."""
        params = {"type": model_type} if model_type else None
        return self._execute("GET", self._endpoints.models_traits, params=params)

    def compatibility_mapping(self, source_model: Optional[str] = None) -> APIResponse:
        """Map of model names from other providers to venice model ids."""
        params = {"source_model": source_model} if source_model else None
        return self._execute("GET", self._endpoints.models_compatibility_mapping, params=params)


class APIKeysAPI(_Capability):
    """
    API key management.

    Example:
        Walk every key across pages::

            for key in client.api_keys.iter_all(limit=50):
                print(key["id"], key.get("description"))
    """

    def list(self, limit: Optional[int] = None, cursor: Optional[str] = None) -> APIResponse:
        """List one page of API keys."""
        params = {}
        if limit is not None:
            params["limit"] = limit
        if cursor:
            params["cursor"] = cursor
        return self._execute("GET", self._endpoints.api_keys, params=params or None)

    def iter_all(self, limit: Optional[int] = None) -> Iterator[Dict[str, Any]]:
        """
        Iterate over all API keys, following ``next_cursor`` while ``has_more``.

        Raises:
            DecodeError: If a page is not a JSON object with a ``data`` list
        """
        cursor = None
        pages = 0

        with log_operation("list_api_keys", logger):
            while True:
                page = self.list(limit=limit, cursor=cursor).data
                if not isinstance(page, dict) or not isinstance(page.get("data"), list):
                    raise DecodeError("Unexpected API key page format", payload=repr(page))

                pages += 1
                for item in page["data"]:
                    yield item

                cursor = page.get("next_cursor")
                if not page.get("has_more") or not cursor:
                    logger.debug(f"Listed API keys in {pages} page(s)")
                    return

    def create(self, payload: Dict[str, Any]) -> APIResponse:
        """Create an API key."""
        return self._execute("POST", self._endpoints.api_keys, json=payload)

    def delete(self, key_id: str) -> APIResponse:
        """Delete an API key."""
        if not key_id:
            raise ValidationError("API key id is required", field="key_id")
        return self._execute("DELETE", self._endpoints.api_key(key_id))

    def rate_limits(self) -> APIResponse:
        """Rate limits and balances of the current key."""
        return self._execute("GET", self._endpoints.api_keys_rate_limits)

    def web3_token(self) -> APIResponse:
        """Fetch the token a wallet signs to generate a Web3 API key."""
        return self._execute("GET", self._endpoints.api_keys_web3)

    def generate_web3_key(self, wallet_address: str, signature: Optional[str] = None,
                          token: Optional[str] = None, name: Optional[str] = None,
                          **fields) -> APIResponse:
        """
        Generate an API key tied to a wallet.

        Args:
            wallet_address (str): Wallet the key is issued to
            signature (str, optional): Wallet signature of the token from
                :meth:`web3_token`
            token (str, optional): The signed token
            name (str, optional): Key description
            **fields: Additional body fields (e.g. ``apiKeyType``)

        Returns:
            APIResponse: ``data`` holds the new key, including its secret
        """
        if not wallet_address:
            raise ValidationError("Wallet address is required", field="wallet_address")

        payload = {"wallet_address": wallet_address}
        optional = {"signature": signature, "token": token, "name": name}
        payload.update({key: value for key, value in optional.items() if value is not None})
        payload.update(fields)
        return self._execute("POST", self._endpoints.api_keys_web3, json=payload)


def _estimate_cost(payload: Dict[str, Any]) -> int:
    """Token cost estimate used for pre-emptive throttling."""
    max_tokens = payload.get("max_tokens") or payload.get("max_completion_tokens")
    try:
        return max(1, int(max_tokens)) if max_tokens else 1
    except (TypeError, ValueError):
        return 1


class APIClient:
    """
    Main API client for venice.

    Settings not passed explicitly come from the global configuration
    (:func:`venice.config.get_config`).

    Args:
        api_key: API authentication key
        endpoint: API base URL
        timeout: Per-attempt request timeout in seconds
        max_retries: Maximum retry attempts
        user_agent: Custom user agent string
        verify_ssl: Verify TLS certificates
        proxy: HTTP(S) proxy URL
        tracker: Rate limit tracker. Defaults to the process-wide tracker
            when the configured header names are the defaults.
        session: ``requests`` session to use

    Example:
        >>> with APIClient(api_key="your-key") as client:
        ...     models = client.models.list(model_type="text").data
        ...     for chunk in client.chat.stream_completion(payload):
        ...         print(chunk.text, end="")
        ...     print(client.rate_limit)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        user_agent: Optional[str] = None,
        verify_ssl: Optional[bool] = None,
        proxy: Optional[str] = None,
        tracker: Optional[RateLimitTracker] = None,
        session: Optional[requests.Session] = None
    ):
        self.config = get_config()

        self.api_key = api_key or self.config.api_key
        self.endpoint = endpoint or self.config.api_endpoint
        self.timeout = timeout or self.config.api_timeout

        if not self.api_key:
            logger.warning("No API key provided. Requests will be rejected by the service.")

        self.auth = APIAuth(self.api_key)
        self.endpoints = APIEndpoints(self.endpoint)
        self.executor = Executor(
            self.auth,
            self.endpoints,
            session=session,
            timeout=self.timeout,
            verify_ssl=self.config.verify_ssl if verify_ssl is None else verify_ssl,
            user_agent=user_agent or self.config.user_agent,
            proxy=proxy
        )

        retry_config = RetryPolicyConfig.from_config(self.config)
        if max_retries is not None:
            retry_config = replace(retry_config, max_retries=max_retries)
        self.retry_policy = RetryPolicy(retry_config)

        if tracker is None:
            header_names = RateLimitHeaders.from_overrides(self.config.rate_limit_headers)
            tracker = get_shared_tracker() if header_names == RateLimitHeaders() else RateLimitTracker(header_names)
        self.tracker = tracker

        self.pipeline = RequestPipeline(
            self.executor,
            retry_policy=self.retry_policy,
            tracker=self.tracker,
            auto_throttle=self.config.auto_throttle,
            max_throttle_wait=self.config.max_throttle_wait
        )

        # Capabilities
        self.chat = ChatAPI(self.pipeline, self.endpoints)
        self.images = ImagesAPI(self.pipeline, self.endpoints)
        self.models = ModelsAPI(self.pipeline, self.endpoints)
        self.api_keys = APIKeysAPI(self.pipeline, self.endpoints)

        logger.debug(f"Initialized API client for {self.endpoint}")

    @property
    def rate_limit(self) -> RateLimitSnapshot:
        """Latest rate limit snapshot."""
        return self.tracker.snapshot()

    def async_pipeline(self) -> AsyncRequestPipeline:
        """Asyncio facade over this client's pipeline."""
        return AsyncRequestPipeline(self.pipeline)

    def close(self):
        """Close HTTP session and cleanup resources."""
        self.pipeline.close()
        logger.debug("API client session closed")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def __repr__(self) -> str:
        return f"APIClient(endpoint='{self.endpoint}', auth={self.auth!r})"


# Global API client instance
_api_client: Optional[APIClient] = None


def get_api_client(**kwargs) -> APIClient:
    """
    Get or create global API client instance.

    Args:
        **kwargs: API client configuration options, used on creation only

    Returns:
        Global API client instance
    """
    global _api_client

    if _api_client is None:
        _api_client = APIClient(**kwargs)

    return _api_client


def set_api_key(api_key: str, persist: bool = False):
    """
    Set API key for global client.

    Args:
        api_key: venice API key
        persist: Save to the configuration file
    """
    global _api_client

    config = get_config()
    config.api_key = api_key

    # Reset client to use new key
    if _api_client:
        _api_client.close()
        _api_client = None

    if persist:
        save_config()

    logger.info("API key updated")


def configure_api(**kwargs):
    """
    Configure global API client settings.

    Args:
        **kwargs: Configuration options (see :class:`~venice.config.VeniceConfig`)

    Example:
        >>> configure_api(api_timeout=60, api_retries=5)
    """
    global _api_client

    from ..config import configure
    configure(**kwargs)

    if _api_client:
        _api_client.close()
        _api_client = None

    logger.info("API configuration updated")
