# venice/api/pipeline.py
"""
Request pipeline for venice API calls.

Every call, whatever capability it belongs to, goes through the same loop::

    throttle (optional) -> send one attempt -> record rate limit headers
        -> classify -> retry decision -> interruptible backoff -> ...

Each logical call is sequential; distinct calls run independently on their
own threads. The only state shared between calls is the rate limit snapshot
held by the :class:`~venice.api.rate_limiting.RateLimitTracker`.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, replace
from http import HTTPStatus
from typing import Any, Callable, Optional, Tuple

from requests.structures import CaseInsensitiveDict

from ..constants import DEFAULT_MAX_RATE_LIMIT_WAIT, STREAM_CONTENT_TYPE
from ..exceptions import (
    AuthenticationError, CancelledError, DecodeError, HttpStatusError,
    RateLimitExceeded, TransportError, error_details
)
from .cancellation import CancellationToken, sleep
from .executor import APIRequest, Executor, RawResponse
from .rate_limiting import RateLimitSnapshot, RateLimitTracker, get_shared_tracker, parse_retry_after
from .retry import RetryPolicy
from .streaming import END_OF_STREAM, ChunkStream, StreamDecoder

logger = logging.getLogger(__name__)


@dataclass
class APIResponse:
    """
    Successful response of a pipeline call.

    Attributes:
        status: HTTP status code
        headers: Response headers (case-insensitive)
        data: Parsed JSON for JSON responses, raw bytes otherwise
        rate_limit: Rate limit snapshot recorded from this response
        attempts: Attempts the call took
        elapsed: Seconds spent on the final attempt
        url: Final request URL
    """

    status: int
    headers: CaseInsensitiveDict
    data: Any
    rate_limit: RateLimitSnapshot
    attempts: int = 1
    elapsed: float = 0.0
    url: Optional[str] = None

    def json(self) -> Any:
        return self.data


def _is_json(content_type: str) -> bool:
    return content_type == "application/json" or content_type.endswith("+json")


def parse_error_body(body: bytes, status: int) -> Tuple[str, Optional[str]]:
    """
    Extract ``(message, error_code)`` from an error response body.

    Understands ``{"error": {"code": ..., "message": ...}}``,
    ``{"error": "..."}`` and ``{"message": ...}``; anything else is used
    as plain text.
    """
    text = body.decode("utf-8", errors="replace").strip() if body else ""

    try:
        payload = json.loads(text) if text else None
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message") or json.dumps(error)
            code = error.get("code")
            return str(message), str(code) if code is not None else None
        if isinstance(error, str):
            return error, None
        if isinstance(payload.get("message"), str):
            code = payload.get("code")
            return payload["message"], str(code) if code is not None else None

    if text:
        return text[:500], None

    try:
        return HTTPStatus(status).phrase, None
    except ValueError:
        return "Unknown error", None


class RequestPipeline:
    """
    Retrying, rate limit aware execution of API requests.

    Args:
        executor (Executor): Sends single attempts
        retry_policy (RetryPolicy, optional): Retry decisions. Defaults to
            :class:`RetryPolicy` with default configuration.
        tracker (RateLimitTracker, optional): Rate limit state. Defaults to
            the process-wide tracker.
        auto_throttle (bool): Sleep before sending when the latest snapshot
            shows exhausted capacity. Defaults to False.
        max_throttle_wait (float): Upper bound on a pre-emptive throttle sleep

    Example:
        Execute a request with a deadline::

            pipeline = RequestPipeline(executor)

            response = pipeline.execute(
                APIRequest("POST", "chat/completions", json=payload),
                timeout=20
            )
            print(response.data, response.attempts, response.rate_limit)

        Cancel from another thread::

            token = CancellationToken()
            threading.Timer(2, token.cancel).start()
            pipeline.execute(request, cancel=token)   # raises CancelledError
    """

    def __init__(
        self,
        executor: Executor,
        retry_policy: Optional[RetryPolicy] = None,
        tracker: Optional[RateLimitTracker] = None,
        auto_throttle: bool = False,
        max_throttle_wait: float = DEFAULT_MAX_RATE_LIMIT_WAIT
    ):
        self.executor = executor
        self.retry_policy = retry_policy or RetryPolicy()
        self.tracker = tracker or get_shared_tracker()
        self.auto_throttle = auto_throttle
        self.max_throttle_wait = max_throttle_wait

        logger.debug(f"Initialized request pipeline with {self.retry_policy}")

    def execute(
        self,
        request: APIRequest,
        cancel: Optional[CancellationToken] = None,
        timeout: Optional[float] = None
    ) -> APIResponse:
        """
        Execute a request, retrying transient failures.

        Args:
            request (APIRequest): Request to execute
            cancel (CancellationToken, optional): Cancels the call
            timeout (float, optional): Deadline for the whole call in seconds,
                retries and backoff included

        Returns:
            APIResponse: The successful response

        Raises:
            HttpStatusError: Non-retryable status, or retries exhausted on 5xx
            AuthenticationError: HTTP 401 or 403
            RateLimitExceeded: Retries exhausted on HTTP 429
            TransportError: Retries exhausted on transport failures
            DecodeError: A successful JSON response could not be decoded
            CancelledError: The call was cancelled or its deadline passed
        """
        token, owned = self._call_token(cancel, timeout)
        try:
            raw, attempts, snapshot = self._send_with_retry(request, token)
        finally:
            if owned:
                token.dispose()

        return self._build_response(raw, attempts, snapshot)

    def stream(
        self,
        request: APIRequest,
        parse: Optional[Callable[[Any], Any]] = None,
        cancel: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
        chunk_size: Optional[int] = None
    ) -> ChunkStream:
        """
        Open a streamed request and return its chunk iterator.

        The opening request goes through the same retry loop as
        :meth:`execute`. Once the first bytes of the body flow there are no
        retries: a failure mid-stream is raised from the iterator.

        Args:
            request (APIRequest): Request to open
            parse (Callable, optional): Converts each decoded JSON event to a chunk
            cancel (CancellationToken, optional): Cancels opening and reading
            timeout (float, optional): Deadline for the whole stream in seconds
            chunk_size (int, optional): Read size for the underlying response

        Returns:
            ChunkStream: Lazy iterator of decoded chunks
        """
        headers = dict(request.headers or {})
        headers.setdefault("Accept", STREAM_CONTENT_TYPE)
        request = replace(request, stream=True, headers=headers)

        token, owned = self._call_token(cancel, timeout)
        try:
            raw, attempts, snapshot = self._send_with_retry(request, token)
        except BaseException:
            if owned:
                token.dispose()
            raise

        return ChunkStream(
            raw.channel,
            StreamDecoder(parse),
            cancel=token,
            rate_limit=snapshot,
            status=raw.status,
            attempts=attempts,
            chunk_size=chunk_size,
            owns_cancel=owned
        )

    def close(self):
        """Close the underlying executor."""
        self.executor.close()

    def _call_token(self, cancel: Optional[CancellationToken],
                    timeout: Optional[float]) -> Tuple[CancellationToken, bool]:
        if cancel is not None and timeout is None:
            return cancel, False
        if cancel is not None:
            return cancel.linked(timeout), True
        return CancellationToken(timeout), True

    def _attempt_timeout(self, request: APIRequest, token: CancellationToken) -> Optional[float]:
        remaining = token.remaining()
        base = request.timeout or self.executor.timeout
        if remaining is None:
            return base
        return max(min(base, remaining), 0.001)

    def _send_with_retry(
        self,
        request: APIRequest,
        token: CancellationToken
    ) -> Tuple[RawResponse, int, RateLimitSnapshot]:
        request_id = uuid.uuid4().hex[:8]
        attempt = 0
        rate_limited_attempts = 0
        previous_delay: Optional[float] = None

        while True:
            token.raise_if_cancelled(attempts=attempt)

            if self.auto_throttle:
                try:
                    self.tracker.throttle(request.estimated_cost, self.max_throttle_wait, token)
                except CancelledError as e:
                    e.attempts = attempt
                    raise

            attempt += 1
            try:
                raw = self.executor.send(request, timeout=self._attempt_timeout(request, token))
            except TransportError as e:
                if token.cancelled:
                    token.raise_if_cancelled(attempts=attempt)
                e.attempts = attempt
                error = e
                status = None
            else:
                snapshot = self.tracker.update(raw.headers)
                if raw.ok:
                    if attempt > 1:
                        logger.info(
                            f"{request.describe()} succeeded on attempt {attempt}",
                            extra={"request_id": request_id, "attempt": attempt, "status": raw.status}
                        )
                    return raw, attempt, snapshot
                error = self._status_error(raw, attempt, snapshot)
                status = raw.status

            if status == 429:
                rate_limited_attempts += 1

            decision = self.retry_policy.decide(attempt, error, previous_delay, rate_limited_attempts)

            if not decision.retry:
                if decision.reason == "not_retryable":
                    logger.debug(
                        f"{request.describe()} failed with non-retryable error: {error}",
                        extra={"request_id": request_id, "attempt": attempt, "status": status}
                    )
                    raise error

                logger.error(
                    f"{request.describe()} failed after {attempt} attempts ({decision.reason})",
                    extra={"request_id": request_id, "attempt": attempt, "status": status,
                           "error_details": error_details(error)}
                )
                if status == 429:
                    raise RateLimitExceeded(
                        retry_after=error.retry_after,
                        snapshot=self.tracker.snapshot(),
                        last_error=error,
                        attempts=attempt
                    ) from error
                raise error

            logger.warning(
                f"Attempt {attempt} of {request.describe()} failed ({error}), "
                f"retrying in {decision.delay:.2f}s",
                extra={"request_id": request_id, "attempt": attempt, "status": status}
            )
            sleep(decision.delay, token, attempts=attempt)
            previous_delay = decision.delay

    def _status_error(self, raw: RawResponse, attempts: int,
                      snapshot: RateLimitSnapshot) -> HttpStatusError:
        message, code = parse_error_body(raw.body, raw.status)

        retry_after = parse_retry_after(raw.headers.get(self.tracker.header_names.retry_after))
        if retry_after is None and raw.status == 429:
            retry_after = snapshot.seconds_until_reset()

        error_class = AuthenticationError if raw.status in (401, 403) else HttpStatusError
        return error_class(
            raw.status,
            message,
            error_code=code,
            headers=raw.headers,
            body=raw.body,
            retry_after=retry_after,
            url=raw.url,
            attempts=attempts
        )

    def _build_response(self, raw: RawResponse, attempts: int,
                        snapshot: RateLimitSnapshot) -> APIResponse:
        data: Any = raw.body
        if _is_json(raw.content_type):
            if raw.body.strip():
                try:
                    data = json.loads(raw.body)
                except ValueError as e:
                    raise DecodeError(
                        f"Response body is not valid JSON: {e}",
                        payload=raw.body.decode("utf-8", errors="replace"),
                        attempts=attempts
                    ) from e
            else:
                data = None

        return APIResponse(
            status=raw.status,
            headers=raw.headers,
            data=data,
            rate_limit=snapshot,
            attempts=attempts,
            elapsed=raw.elapsed,
            url=raw.url
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class AsyncChunkStream:
    """
    Async iterator over a :class:`ChunkStream`.

    Each read runs in the default executor so the event loop is never blocked.
    """

    def __init__(self, stream: ChunkStream):
        self._stream = stream

    @property
    def done(self) -> bool:
        return self._stream.done

    @property
    def rate_limit(self) -> Optional[RateLimitSnapshot]:
        return self._stream.rate_limit

    def __aiter__(self) -> "AsyncChunkStream":
        return self

    async def __anext__(self) -> Any:
        loop = asyncio.get_running_loop()
        try:
            item = await loop.run_in_executor(None, self._next_or_sentinel)
        except asyncio.CancelledError:
            self._stream.close()
            raise
        if item is END_OF_STREAM:
            raise StopAsyncIteration
        return item

    def _next_or_sentinel(self) -> Any:
        # StopIteration cannot cross an executor future
        return next(self._stream, END_OF_STREAM)

    async def aclose(self):
        self._stream.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


class AsyncRequestPipeline:
    """
    Async version of :class:`RequestPipeline`.

    Runs the blocking pipeline in the default executor. Cancelling the
    awaiting task cancels the call's token, which interrupts any pending
    backoff or throttle sleep.
    """

    def __init__(self, pipeline: RequestPipeline):
        self._pipeline = pipeline

    @property
    def tracker(self) -> RateLimitTracker:
        return self._pipeline.tracker

    async def execute(self, request: APIRequest, cancel: Optional[CancellationToken] = None,
                      timeout: Optional[float] = None) -> APIResponse:
        """Async execute a request."""
        token = cancel or CancellationToken()
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None,
                lambda: self._pipeline.execute(request, cancel=token, timeout=timeout)
            )
        except asyncio.CancelledError:
            token.cancel()
            raise

    async def stream(self, request: APIRequest, parse: Optional[Callable[[Any], Any]] = None,
                     cancel: Optional[CancellationToken] = None,
                     timeout: Optional[float] = None) -> AsyncChunkStream:
        """Async open a streamed request."""
        token = cancel or CancellationToken()
        loop = asyncio.get_running_loop()
        try:
            stream = await loop.run_in_executor(
                None,
                lambda: self._pipeline.stream(request, parse=parse, cancel=token, timeout=timeout)
            )
        except asyncio.CancelledError:
            token.cancel()
            raise
        return AsyncChunkStream(stream)
