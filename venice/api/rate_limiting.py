# venice/api/rate_limiting.py
"""
Rate limit bookkeeping for venice API requests.

This module keeps the most recent rate limit state reported by the server.
Every response's headers are parsed into an immutable
:class:`RateLimitSnapshot` which replaces the previously stored snapshot as a
whole, so a snapshot never mixes values from two different responses.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional

from requests.structures import CaseInsensitiveDict

from ..constants import EPOCH_THRESHOLD, RATE_LIMIT_HEADERS
from ..exceptions import ConfigurationError
from .cancellation import CancellationToken, sleep

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitHeaders:
    """
    Names of the response headers carrying rate limit information.

    The names are defined by the upstream service, so they are configuration
    rather than literals. Defaults come from :data:`venice.constants.RATE_LIMIT_HEADERS`.

    Example:
        Track a service that uses different header names::

            names = RateLimitHeaders.from_overrides({
                "remaining_requests": "x-ratelimit-remaining",
                "reset_requests": "x-ratelimit-reset",
            })
            tracker = RateLimitTracker(header_names=names)
    """

    limit_requests: str = RATE_LIMIT_HEADERS["limit_requests"]
    remaining_requests: str = RATE_LIMIT_HEADERS["remaining_requests"]
    reset_requests: str = RATE_LIMIT_HEADERS["reset_requests"]
    limit_tokens: str = RATE_LIMIT_HEADERS["limit_tokens"]
    remaining_tokens: str = RATE_LIMIT_HEADERS["remaining_tokens"]
    reset_tokens: str = RATE_LIMIT_HEADERS["reset_tokens"]
    balance_vcu: str = RATE_LIMIT_HEADERS["balance_vcu"]
    balance_usd: str = RATE_LIMIT_HEADERS["balance_usd"]
    retry_after: str = RATE_LIMIT_HEADERS["retry_after"]

    @classmethod
    def from_overrides(cls, overrides: Optional[Mapping[str, str]] = None) -> "RateLimitHeaders":
        """Build header names from a partial ``{field: header_name}`` mapping."""
        overrides = dict(overrides or {})
        unknown = set(overrides) - set(cls.__dataclass_fields__)
        if unknown:
            raise ConfigurationError(
                f"Unknown rate limit header field(s): {', '.join(sorted(unknown))}",
                config_key="rate_limit_headers",
                invalid_value=", ".join(sorted(unknown)),
                valid_values=sorted(cls.__dataclass_fields__)
            )
        return cls(**overrides)


@dataclass(frozen=True)
class RateLimitSnapshot:
    """
    Immutable point-in-time copy of the server's rate limit state.

    All fields are optional: a field is ``None`` when the response did not
    carry the corresponding header (or carried an unparsable value).
    Reset times are normalized to Unix epoch seconds.

    Attributes:
        limit_requests: Request quota for the current window
        remaining_requests: Requests left in the current window
        reset_requests_epoch: When the request window resets
        limit_tokens: Token quota for the current window
        remaining_tokens: Tokens left in the current window
        reset_tokens_epoch: When the token window resets
        balance_vcu: Account balance in compute units
        balance_usd: Account balance in USD
        observed_at: Wall clock time the snapshot was taken
    """

    limit_requests: Optional[int] = None
    remaining_requests: Optional[int] = None
    reset_requests_epoch: Optional[float] = None
    limit_tokens: Optional[int] = None
    remaining_tokens: Optional[int] = None
    reset_tokens_epoch: Optional[float] = None
    balance_vcu: Optional[float] = None
    balance_usd: Optional[float] = None
    observed_at: Optional[float] = field(default=None, compare=False)

    def is_exhausted(self, estimated_cost: int = 1) -> bool:
        """
        Whether the snapshot shows no capacity for a request of this cost.

        Args:
            estimated_cost (int): Estimated token cost of the next request
        """
        if self.remaining_requests is not None and self.remaining_requests <= 0:
            return True
        if self.remaining_tokens is not None and self.remaining_tokens < max(1, estimated_cost):
            return True
        return False

    def next_reset_epoch(self, now: Optional[float] = None) -> Optional[float]:
        """Latest future reset time among the exhausted windows, if any."""
        now = time.time() if now is None else now
        candidates = []

        if self.remaining_requests is not None and self.remaining_requests <= 0:
            candidates.append(self.reset_requests_epoch)
        if self.remaining_tokens is not None and self.remaining_tokens <= 0:
            candidates.append(self.reset_tokens_epoch)
        if not candidates:
            candidates = [self.reset_requests_epoch, self.reset_tokens_epoch]

        future = [c for c in candidates if c is not None and c > now]
        return max(future) if future else None

    def seconds_until_reset(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds until :meth:`next_reset_epoch`, or ``None``."""
        now = time.time() if now is None else now
        reset = self.next_reset_epoch(now)
        return None if reset is None else reset - now

    def to_dict(self) -> Dict[str, Any]:
        """Convert the snapshot to a plain dictionary."""
        return asdict(self)

    def __str__(self) -> str:
        return (
            f"Rate Limit Info: {self.remaining_requests}/{self.limit_requests} requests, "
            f"{self.remaining_tokens}/{self.limit_tokens} tokens"
        )


def _parse_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value.strip()))
    except (ValueError, TypeError):
        logger.debug(f"Ignoring unparsable rate limit value: {value!r}")
        return None


def _parse_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value.strip())
    except (ValueError, TypeError):
        logger.debug(f"Ignoring unparsable rate limit value: {value!r}")
        return None


def _parse_reset(value: Optional[str], now: float) -> Optional[float]:
    """Reset can be an epoch timestamp or seconds from now."""
    reset_value = _parse_float(value)
    if reset_value is None:
        return None
    if reset_value > EPOCH_THRESHOLD:
        return reset_value
    return now + reset_value


def parse_retry_after(value: Optional[str], now: Optional[float] = None) -> Optional[float]:
    """
    Parse a ``Retry-After`` value into seconds from now.

    Accepts delta-seconds, an epoch timestamp, or an HTTP date.

    Returns:
        Optional[float]: Non-negative seconds, or ``None`` if absent/unparsable
    """
    if value is None:
        return None
    now = time.time() if now is None else now

    seconds = _parse_float(value)
    if seconds is not None:
        if seconds > EPOCH_THRESHOLD:
            seconds = seconds - now
        return max(0.0, seconds)

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        logger.debug(f"Ignoring unparsable Retry-After value: {value!r}")
        return None
    return max(0.0, when.timestamp() - now)


def parse_rate_limit_headers(
    headers: Optional[Mapping[str, str]],
    names: Optional[RateLimitHeaders] = None,
    now: Optional[float] = None
) -> RateLimitSnapshot:
    """
    Parse response headers into a :class:`RateLimitSnapshot`.

    Args:
        headers: Response headers (matched case-insensitively)
        names: Header names to look for. Defaults to :class:`RateLimitHeaders`.
        now: Wall clock used to normalize relative reset values

    Returns:
        RateLimitSnapshot: Snapshot built from exactly this header set
    """
    names = names or RateLimitHeaders()
    now = time.time() if now is None else now
    headers = CaseInsensitiveDict(headers or {})

    return RateLimitSnapshot(
        limit_requests=_parse_int(headers.get(names.limit_requests)),
        remaining_requests=_parse_int(headers.get(names.remaining_requests)),
        reset_requests_epoch=_parse_reset(headers.get(names.reset_requests), now),
        limit_tokens=_parse_int(headers.get(names.limit_tokens)),
        remaining_tokens=_parse_int(headers.get(names.remaining_tokens)),
        reset_tokens_epoch=_parse_reset(headers.get(names.reset_tokens), now),
        balance_vcu=_parse_float(headers.get(names.balance_vcu)),
        balance_usd=_parse_float(headers.get(names.balance_usd)),
        observed_at=now,
    )


class RateLimitTracker:
    """
    Holder of the latest server rate limit snapshot.

    The tracker is shared by every call going through a pipeline (and, via
    :func:`get_shared_tracker`, by every client in the process). Updates
    replace the stored snapshot as a whole; readers get the current value
    without blocking and may see it superseded right after reading.

    Args:
        header_names (RateLimitHeaders, optional): Header names to parse
        clock (Callable, optional): Wall clock, ``time.time`` by default

    Example:
        Track rate limits and throttle before sending::

            tracker = RateLimitTracker()
            tracker.update(response.headers)

            snapshot = tracker.snapshot()
            print(f"{snapshot.remaining_requests} requests left")

            # Sleeps until the reset only when capacity is exhausted
            tracker.throttle(estimated_cost=500, max_wait=30)
    """

    def __init__(self, header_names: Optional[RateLimitHeaders] = None, clock=None):
        self.header_names = header_names or RateLimitHeaders()
        self._clock = clock or time.time
        self._lock = threading.Lock()
        self._snapshot = RateLimitSnapshot()
        self.total_updates = 0

        logger.debug("Initialized rate limit tracker")

    def update(self, headers: Optional[Mapping[str, str]]) -> RateLimitSnapshot:
        """
        Replace the stored snapshot with one parsed from ``headers``.

        Args:
            headers: Response headers

        Returns:
            RateLimitSnapshot: The snapshot that was stored
        """
        snapshot = parse_rate_limit_headers(headers, self.header_names, self._clock())

        with self._lock:
            self._snapshot = snapshot
            self.total_updates += 1

        logger.debug(f"Rate limit updated: {snapshot}")
        return snapshot

    def snapshot(self) -> RateLimitSnapshot:
        """Return the latest snapshot."""
        return self._snapshot

    def time_until_allowed(self, estimated_cost: int = 1) -> float:
        """
        Seconds until the server is expected to accept a request again.

        Returns:
            float: 0.0 when the snapshot does not show exhausted capacity
        """
        snapshot = self._snapshot
        if not snapshot.is_exhausted(estimated_cost):
            return 0.0

        wait = snapshot.seconds_until_reset(self._clock())
        return wait if wait is not None and wait > 0 else 0.0

    def throttle(
        self,
        estimated_cost: int = 1,
        max_wait: Optional[float] = None,
        cancel: Optional[CancellationToken] = None
    ) -> float:
        """
        Wait for the rate limit window to reset when capacity is exhausted.

        If the current snapshot shows zero remaining capacity and a reset
        time in the future, sleeps until that reset (at most ``max_wait``
        seconds). Otherwise returns immediately and leaves it to the server's
        429 response to drive the retry path.

        Args:
            estimated_cost (int): Estimated token cost of the next request
            max_wait (float, optional): Upper bound on the sleep in seconds
            cancel (CancellationToken, optional): Interrupts the sleep

        Returns:
            float: Seconds slept

        Raises:
            CancelledError: If ``cancel`` fires during the sleep
        """
        wait_time = self.time_until_allowed(estimated_cost)
        if wait_time <= 0:
            return 0.0

        if max_wait is not None:
            wait_time = min(wait_time, max_wait)

        logger.info(f"Rate limit exhausted, waiting {wait_time:.2f}s for reset")
        sleep(wait_time, cancel)
        return wait_time

    def reset(self):
        """Forget the stored snapshot."""
        with self._lock:
            self._snapshot = RateLimitSnapshot()
            self.total_updates = 0

    def __repr__(self) -> str:
        return f"RateLimitTracker({self._snapshot})"


# Process-wide tracker instance
_shared_tracker: Optional[RateLimitTracker] = None
_shared_tracker_lock = threading.Lock()


def get_shared_tracker() -> RateLimitTracker:
    """
    Get or create the process-wide rate limit tracker.

    Returns:
        RateLimitTracker: Tracker shared by every client that does not
        supply its own
    """
    global _shared_tracker

    with _shared_tracker_lock:
        if _shared_tracker is None:
            _shared_tracker = RateLimitTracker()
        return _shared_tracker
