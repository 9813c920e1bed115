# venice/api/executor.py
"""
Single-attempt HTTP execution for venice API requests.

The :class:`Executor` owns the ``requests`` session and sends exactly one
attempt per call. It never retries and never raises for HTTP status codes:
non-2xx responses are returned to the pipeline, which decides what to do
with them. Only failures that produced no HTTP response at all are raised,
as :class:`~venice.exceptions.TransportError`.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from requests.structures import CaseInsensitiveDict
from urllib3.util.retry import Retry

from ..constants import DEFAULT_TIMEOUT, USER_AGENT
from ..exceptions import TransportError, ValidationError
from .auth import APIAuth
from .endpoints import APIEndpoints

logger = logging.getLogger(__name__)


@dataclass
class APIRequest:
    """
    A request to send through the pipeline.

    The pipeline treats ``json`` as an opaque value and never inspects it.

    Attributes:
        method: HTTP method
        path: Path relative to the API base URL, or an absolute URL
        json: JSON body
        params: Query parameters
        headers: Extra request headers
        data: Form fields for multipart requests
        files: Multipart files (bytes values, so retries can resend them)
        stream: Whether the response body is consumed incrementally
        timeout: Per-attempt timeout override in seconds
        estimated_cost: Estimated token cost, used for pre-emptive throttling
    """

    method: str
    path: str
    json: Any = None
    params: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    data: Optional[Dict[str, Any]] = None
    files: Optional[Dict[str, Any]] = None
    stream: bool = False
    timeout: Optional[float] = None
    estimated_cost: int = 1

    def describe(self) -> str:
        return f"{self.method.upper()} {self.path}"


@dataclass
class RawResponse:
    """
    One HTTP response as received.

    Attributes:
        status: HTTP status code
        headers: Response headers (case-insensitive)
        body: Response body; empty for successful streamed responses
        url: Final request URL
        elapsed: Seconds between sending and receiving the headers
        channel: The open ``requests.Response`` of a successful streamed
            request, ``None`` otherwise
    """

    status: int
    headers: CaseInsensitiveDict
    body: bytes = b""
    url: Optional[str] = None
    elapsed: float = 0.0
    channel: Optional[requests.Response] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def content_type(self) -> str:
        return self.headers.get("Content-Type", "").split(";")[0].strip().lower()


class Executor:
    """
    Sends single HTTP attempts with authentication applied.

    Transport level retries in the urllib3 adapter are disabled, so every
    retry decision is made by :class:`~venice.api.retry.RetryPolicy`.

    Args:
        auth (APIAuth): Authentication header provider
        endpoints (APIEndpoints): URL construction
        session (requests.Session, optional): Session to use. A new one is
            created when omitted.
        timeout (float): Default per-attempt timeout in seconds
        verify_ssl (bool): Whether to verify TLS certificates
        user_agent (str, optional): Custom user agent string
        pool_maxsize (int): Connection pool size per host
        proxy (str, optional): HTTP(S) proxy URL

    Example:
        Send one attempt::

            executor = Executor(APIAuth("key"), APIEndpoints(DEFAULT_API_ENDPOINT))
            raw = executor.send(APIRequest("GET", "models"))
            print(raw.status, raw.headers.get("x-ratelimit-remaining-requests"))
    """

    def __init__(
        self,
        auth: APIAuth,
        endpoints: APIEndpoints,
        session: Optional[requests.Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        verify_ssl: bool = True,
        user_agent: Optional[str] = None,
        pool_maxsize: int = 20,
        proxy: Optional[str] = None
    ):
        self.auth = auth
        self.endpoints = endpoints
        self.timeout = timeout
        self.verify_ssl = verify_ssl

        self.session = session or requests.Session()
        self.session.headers.update({
            "User-Agent": user_agent or USER_AGENT,
            "Accept": "application/json",
        })

        # Retries are decided by RetryPolicy only
        adapter = HTTPAdapter(
            max_retries=Retry(total=0, raise_on_status=False),
            pool_connections=pool_maxsize,
            pool_maxsize=pool_maxsize
        )
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        if proxy:
            self.session.proxies.update({"http": proxy, "https": proxy})

        logger.debug(f"Initialized executor for {self.endpoints.base_url}")

    def send(self, request: APIRequest, timeout: Optional[float] = None) -> RawResponse:
        """
        Send one attempt.

        Args:
            request (APIRequest): Request to send
            timeout (float, optional): Timeout override, e.g. the time left
                until the caller's deadline

        Returns:
            RawResponse: The response, whatever its status

        Raises:
            TransportError: If no HTTP response was received
            ValidationError: If the request URL is malformed
        """
        url = self.endpoints.resolve(request.path)
        headers = dict(self.auth.get_auth_headers())
        headers.update(request.headers or {})

        timeout = timeout or request.timeout or self.timeout
        start_time = time.time()

        try:
            response = self.session.request(
                method=request.method.upper(),
                url=url,
                json=request.json,
                params=request.params,
                data=request.data,
                files=request.files,
                headers=headers,
                timeout=timeout,
                stream=request.stream,
                verify=self.verify_ssl
            )
        except (requests.exceptions.InvalidURL, requests.exceptions.MissingSchema,
                requests.exceptions.InvalidSchema) as e:
            raise ValidationError(f"Invalid request URL: {url}", field="url", value=url) from e
        except requests.exceptions.RequestException as e:
            logger.debug(f"Transport failure for {request.describe()}: {e}")
            raise TransportError(
                f"Request failed: {type(e).__name__}: {e}", url=url, original_error=e
            ) from e

        raw = RawResponse(
            status=response.status_code,
            headers=CaseInsensitiveDict(response.headers),
            url=response.url or url,
            elapsed=time.time() - start_time
        )

        if request.stream and raw.ok:
            raw.channel = response
            return raw

        try:
            raw.body = response.content or b""
        except requests.exceptions.RequestException as e:
            raise TransportError(
                f"Connection dropped while reading body: {e}", url=url, original_error=e
            ) from e
        finally:
            response.close()

        logger.debug(f"{request.describe()} -> {raw.status} in {raw.elapsed:.3f}s")
        return raw

    def close(self):
        """Close HTTP session and cleanup resources."""
        if self.session:
            self.session.close()

        logger.debug("Executor session closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
