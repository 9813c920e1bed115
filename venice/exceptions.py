# venice/exceptions.py
"""
Exception classes for venice.

This module defines the error taxonomy used by the request pipeline, the
stream decoder and the webhook verifier. Every pipeline error carries the
number of attempts that were made, so callers can diagnose failures without
re-running the request.
"""

from typing import Any, Dict, Mapping, Optional


class VeniceError(Exception):
    """
    Base exception for all venice errors.

    Args:
        message: Error message describing what went wrong
        code: Optional error code for programmatic handling
        details: Optional additional details about the error
        attempts: Number of attempts made before the error surfaced
    """

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[dict] = None, attempts: Optional[int] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        self.attempts = attempts
        super().__init__(message)

    def __str__(self):
        return self.message

    def to_dict(self):
        """
        Convert exception to dictionary representation.

        Returns:
            dict: Dictionary containing error information
        """
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "attempts": self.attempts,
            "details": self.details
        }


class TransportError(VeniceError):
    """
    Raised when a request never produced an HTTP response.

    Covers connection refusals, DNS failures, TLS errors, timeouts and
    connections dropped while a body was being read. Transport errors are
    always considered transient.

    Args:
        message: Error message
        url: The URL that was being accessed
        original_error: The underlying transport exception
    """

    def __init__(self, message: str, url: Optional[str] = None,
                 original_error: Optional[BaseException] = None,
                 attempts: Optional[int] = None):
        self.url = url
        self.original_error = original_error

        super().__init__(message, code="TRANSPORT_ERROR", details={
            "url": url,
            "original_error": repr(original_error) if original_error else None
        }, attempts=attempts)


class HttpStatusError(VeniceError):
    """
    Raised for non-2xx HTTP responses.

    The error body returned by the service (``{"error": {"code": ..., "message": ...}}``)
    is mapped onto ``error_code`` and ``message``.

    Args:
        status: HTTP status code
        message: Human readable message from the error body
        error_code: Machine readable code from the error body
        headers: Response headers
        body: Raw response body
        retry_after: Reset hint in seconds, when the server supplied one

    Example:
        >>> try:
        ...     client.models.list()
        ... except HttpStatusError as e:
        ...     print(e.status, e.error_code, e.attempts)
    """

    def __init__(self, status: int, message: str, error_code: Optional[str] = None,
                 headers: Optional[Mapping[str, str]] = None, body: Optional[bytes] = None,
                 retry_after: Optional[float] = None, url: Optional[str] = None,
                 attempts: Optional[int] = None):
        self.status = status
        self.error_code = error_code
        self.headers = dict(headers or {})
        self.body = body
        self.retry_after = retry_after
        self.url = url

        super().__init__(f"HTTP {status}: {message}", code="HTTP_STATUS_ERROR", details={
            "status": status,
            "error_code": error_code,
            "retry_after": retry_after,
            "url": url
        }, attempts=attempts)
        self.server_message = message

    @property
    def is_rate_limited(self) -> bool:
        """Whether this error is an HTTP 429 response."""
        return self.status == 429

    @property
    def is_server_error(self) -> bool:
        """Whether this error is an HTTP 5xx response."""
        return 500 <= self.status < 600


class AuthenticationError(HttpStatusError):
    """
    Raised when the service rejects the credentials (HTTP 401 or 403).

    Authentication failures are never retried.
    """


class DecodeError(VeniceError):
    """
    Raised when a response body or stream event cannot be decoded.

    Decode errors are terminal: they are never retried, and a stream that
    produced one yields no further chunks.

    Args:
        message: Error message
        payload: The offending payload (truncated for diagnostics)
    """

    def __init__(self, message: str, payload: Optional[str] = None,
                 attempts: Optional[int] = None):
        self.payload = payload

        super().__init__(message, code="DECODE_ERROR", details={
            "payload": payload[:200] if payload else None
        }, attempts=attempts)


class RateLimitExceeded(VeniceError):
    """
    Raised when the retry budget is exhausted on repeated HTTP 429 responses.

    Args:
        retry_after: Last reset hint supplied by the server, in seconds
        snapshot: Latest rate limit snapshot observed
        last_error: The final 429 error

    Example:
        >>> try:
        ...     pipeline.execute(request)
        ... except RateLimitExceeded as e:
        ...     time.sleep(e.retry_after or 60)
    """

    def __init__(self, message: str = "API rate limit exceeded",
                 retry_after: Optional[float] = None, snapshot: Any = None,
                 last_error: Optional[HttpStatusError] = None,
                 attempts: Optional[int] = None):
        self.retry_after = retry_after
        self.snapshot = snapshot
        self.last_error = last_error

        if retry_after:
            message += f". Retry after {retry_after:.2f} seconds"

        super().__init__(message, code="RATE_LIMIT_EXCEEDED", details={
            "retry_after": retry_after,
            "rate_limit": snapshot.to_dict() if snapshot is not None else None
        }, attempts=attempts)


class SignatureError(VeniceError):
    """
    Raised when an inbound webhook payload fails verification.

    Args:
        message: Error message
        reason: Short machine readable reason (``"mismatch"``, ``"expired"``,
            ``"malformed_signature"``, ``"malformed_timestamp"``, ``"missing_input"``)
    """

    def __init__(self, message: str, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(message, code="SIGNATURE_ERROR", details={"reason": reason})


class CancelledError(VeniceError):
    """
    Raised when the caller cancelled a request or its deadline passed.

    Args:
        message: Error message
        reason: ``"cancelled"`` or ``"deadline"``
    """

    def __init__(self, message: str = "Request cancelled", reason: str = "cancelled",
                 attempts: Optional[int] = None):
        self.reason = reason
        super().__init__(message, code="CANCELLED", details={"reason": reason},
                         attempts=attempts)


class ConfigurationError(VeniceError):
    """
    Raised for configuration-related errors.

    Args:
        config_key: The configuration key that has an invalid value
        invalid_value: The invalid value that was provided
        valid_values: List of valid values for this configuration key
    """

    def __init__(self, message: str, config_key: Optional[str] = None,
                 invalid_value: Optional[str] = None, valid_values: Optional[list] = None):
        self.config_key = config_key
        self.invalid_value = invalid_value
        self.valid_values = valid_values

        super().__init__(message, code="CONFIGURATION_ERROR", details={
            "config_key": config_key,
            "invalid_value": invalid_value,
            "valid_values": valid_values
        })


class ValidationError(VeniceError):
    """
    Raised when a request value is rejected before it is sent.

    Args:
        field: The field or parameter that failed validation
        value: The invalid value
    """

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[str] = None):
        self.field = field
        self.value = value

        super().__init__(message, code="VALIDATION_ERROR", details={
            "field": field,
            "value": value
        })


def error_details(error: BaseException) -> Dict[str, Any]:
    """Return a loggable dict for any exception."""
    if isinstance(error, VeniceError):
        return error.to_dict()
    return {"error": type(error).__name__, "message": str(error)}
