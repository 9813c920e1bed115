# venice/webhooks.py
"""
Verification of signed webhook payloads.

Webhook deliveries carry two headers: a hex encoded HMAC-SHA256 signature
and the decimal Unix timestamp at which the payload was signed. The signed
message is ``f"{timestamp}."`` followed by the raw payload bytes, keyed with
the shared secret that was exchanged out of band.

Example:
    Verify a delivery in a web handler::

        from venice.webhooks import WebhookSignature, WebhookVerifier

        verifier = WebhookVerifier(tolerance_window=300)

        signature = WebhookSignature.from_headers(request.headers)
        try:
            verifier.verify(request.body, signature.signature_hex,
                            signature.timestamp, secret)
        except SignatureError as e:
            return 400, e.reason
"""

import hashlib
import hmac
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Tuple, Union

from requests.structures import CaseInsensitiveDict

from .config import get_config
from .constants import WEBHOOK_SIGNATURE_HEADER, WEBHOOK_TIMESTAMP_HEADER
from .exceptions import SignatureError

logger = logging.getLogger(__name__)

_HEX_PATTERN = re.compile(r"^[0-9a-fA-F]+$")
_TIMESTAMP_PATTERN = re.compile(r"^[0-9]+$")

Timestamp = Union[str, int]


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else bytes(value)


@dataclass
class WebhookSignature:
    """
    Signature material of one webhook delivery.

    Built per verification call and never persisted.

    Attributes:
        signature_hex: Hex encoded HMAC-SHA256 signature
        timestamp: Decimal Unix timestamp the payload was signed at
        tolerance_window: Accepted clock skew in seconds; ``None`` keeps
            the verifier's window
    """
    signature_hex: Optional[str]
    timestamp: Optional[str]
    tolerance_window: Optional[int] = None

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        tolerance_window: Optional[int] = None,
        signature_header: str = WEBHOOK_SIGNATURE_HEADER,
        timestamp_header: str = WEBHOOK_TIMESTAMP_HEADER
    ) -> "WebhookSignature":
        """Extract the signature headers (case-insensitive); missing values become ``None``."""
        signature, timestamp = get_webhook_headers(headers, signature_header, timestamp_header)
        return cls(signature, timestamp, tolerance_window)


class WebhookVerifier:
    """
    Stateless validator for signed webhook payloads.

    Args:
        tolerance_window (int, optional): Maximum accepted difference in
            seconds between the signing timestamp and the current time.
            Defaults to the configured ``webhook_tolerance``.
        clock (Callable, optional): Wall clock, ``time.time`` by default

    Example:
        >>> verifier = WebhookVerifier(clock=lambda: 1700000000)
        >>> sig = verifier.sign(b'{"a":1}', "1700000000", "whsec_test")
        >>> verifier.is_valid(b'{"a":1}', sig, "1700000000", "whsec_test")
        True
    """

    def __init__(self, tolerance_window: Optional[int] = None,
                 clock: Optional[Callable[[], float]] = None):
        if tolerance_window is None:
            tolerance_window = get_config().webhook_tolerance
        self.tolerance_window = tolerance_window
        self._clock = clock or time.time

    def sign(self, payload: Union[str, bytes], timestamp: Timestamp,
             secret: Union[str, bytes]) -> str:
        """
        Compute the hex signature of a payload.

        Returns:
            str: Lowercase hex HMAC-SHA256 of ``f"{timestamp}." + payload``
        """
        return self._digest(_to_bytes(payload), str(timestamp), _to_bytes(secret)).hex()

    def verify(
        self,
        payload: Union[str, bytes, None],
        signature_hex: Optional[str],
        timestamp: Optional[Timestamp],
        secret: Union[str, bytes, None] = None
    ):
        """
        Verify a webhook payload.

        Args:
            payload: Raw request body, exactly as received
            signature_hex: Value of the signature header
            timestamp: Value of the timestamp header
            secret: Shared webhook secret, the configured ``webhook_secret``
                when omitted

        Raises:
            SignatureError: If any input is missing or malformed, the
                timestamp is outside the tolerance window, or the signature
                does not match
        """
        if secret is None:
            secret = get_config().webhook_secret
        if payload is None or not signature_hex or timestamp is None or timestamp == "" or not secret:
            raise SignatureError("Missing webhook payload, signature, timestamp or secret",
                                 reason="missing_input")

        signature_hex = signature_hex.strip()
        if not _HEX_PATTERN.match(signature_hex) or len(signature_hex) % 2:
            raise SignatureError("Webhook signature is not a valid hex string",
                                 reason="malformed_signature")

        timestamp = str(timestamp).strip()
        if not _TIMESTAMP_PATTERN.match(timestamp):
            raise SignatureError("Webhook timestamp is not a decimal Unix timestamp",
                                 reason="malformed_timestamp")

        now = self._clock()
        skew = abs(now - int(timestamp))
        if skew > self.tolerance_window:
            logger.debug(f"Webhook timestamp outside tolerance ({skew:.0f}s > {self.tolerance_window}s)")
            raise SignatureError("Webhook timestamp outside tolerance window", reason="expired")

        expected = self._digest(_to_bytes(payload), timestamp, _to_bytes(secret))
        if not hmac.compare_digest(expected, bytes.fromhex(signature_hex)):
            raise SignatureError("Webhook signature mismatch", reason="mismatch")

    def is_valid(self, payload, signature_hex, timestamp, secret=None) -> bool:
        """Like :meth:`verify`, returning a boolean instead of raising."""
        try:
            self.verify(payload, signature_hex, timestamp, secret)
        except SignatureError as e:
            logger.debug(f"Webhook rejected: {e.reason}")
            return False
        return True

    def verify_signature(self, signature: WebhookSignature, payload: Union[str, bytes, None],
                         secret: Union[str, bytes, None] = None):
        """Verify using extracted :class:`WebhookSignature` material."""
        verifier = self
        window = signature.tolerance_window
        if window is not None and window != self.tolerance_window:
            verifier = WebhookVerifier(window, self._clock)
        verifier.verify(payload, signature.signature_hex, signature.timestamp, secret)

    @staticmethod
    def _digest(payload: bytes, timestamp: str, secret: bytes) -> bytes:
        message = timestamp.encode("ascii") + b"." + payload
        return hmac.new(secret, message, hashlib.sha256).digest()


def verify_webhook_signature(
    payload: Union[str, bytes],
    signature: Optional[str],
    timestamp: Optional[Timestamp],
    secret: Union[str, bytes, None] = None,
    tolerance_window: Optional[int] = None
) -> bool:
    """
    Check a webhook signature.

    ``secret`` and ``tolerance_window`` default to the configured
    ``webhook_secret`` and ``webhook_tolerance``.

    Returns:
        bool: True if the payload is authentic and fresh
    """
    return WebhookVerifier(tolerance_window).is_valid(payload, signature, timestamp, secret)


def get_webhook_headers(
    headers: Mapping[str, str],
    signature_header: str = WEBHOOK_SIGNATURE_HEADER,
    timestamp_header: str = WEBHOOK_TIMESTAMP_HEADER
) -> Tuple[Optional[str], Optional[str]]:
    """
    Extract ``(signature, timestamp)`` from request headers.

    Header names are matched case-insensitively.
    """
    headers = CaseInsensitiveDict(headers or {})
    return headers.get(signature_header), headers.get(timestamp_header)
