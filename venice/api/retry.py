# venice/api/retry.py
"""
Retry policy for venice API requests.

This module decides whether a failed attempt is retried and how long to wait
before the next one. Decisions are pure: the policy never sleeps and never
sends requests, the :class:`~venice.api.pipeline.RequestPipeline` does.

Backoff is exponential with optional decorrelated jitter. Rate limited
responses (HTTP 429) wait at least as long as the server's reset hint.
"""

import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..constants import (
    DEFAULT_BACKOFF_MULTIPLIER, DEFAULT_INITIAL_BACKOFF, DEFAULT_MAX_BACKOFF,
    DEFAULT_MAX_RATE_LIMIT_WAIT, MAX_API_RETRIES, RETRYABLE_STATUS_CODES
)
from ..exceptions import ConfigurationError, HttpStatusError, TransportError

logger = logging.getLogger(__name__)


class JitterMode(str, Enum):
    """Jitter applied on top of the exponential backoff."""

    NONE = "none"
    DECORRELATED = "decorrelated"


@dataclass(frozen=True)
class RetryPolicyConfig:
    """
    Retry configuration.

    Attributes:
        max_retries (int): Retries after the first attempt. Defaults to 3.
        initial_backoff (float): Delay before the first retry in seconds.
        max_backoff (float): Upper bound on any computed backoff.
        multiplier (float): Exponential growth factor.
        jitter (JitterMode): Jitter mode. Defaults to decorrelated.
        rate_limit_retries (int, optional): Separate budget for HTTP 429
            retries. ``None`` makes 429 retries share ``max_retries``.
        max_rate_limit_wait (float): A server reset hint longer than this
            stops retrying instead of waiting.
    """

    max_retries: int = MAX_API_RETRIES
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter: JitterMode = JitterMode.DECORRELATED
    rate_limit_retries: Optional[int] = None
    max_rate_limit_wait: float = DEFAULT_MAX_RATE_LIMIT_WAIT

    def __post_init__(self):
        if self.max_retries < 0:
            raise ConfigurationError(
                f"max_retries must be non-negative, got {self.max_retries}",
                config_key="max_retries", invalid_value=str(self.max_retries)
            )
        if self.rate_limit_retries is not None and self.rate_limit_retries < 0:
            raise ConfigurationError(
                f"rate_limit_retries must be non-negative, got {self.rate_limit_retries}",
                config_key="rate_limit_retries", invalid_value=str(self.rate_limit_retries)
            )
        if self.initial_backoff < 0 or self.max_backoff < self.initial_backoff:
            raise ConfigurationError(
                "Backoff bounds must satisfy 0 <= initial_backoff <= max_backoff",
                config_key="max_backoff", invalid_value=str(self.max_backoff)
            )
        if self.multiplier < 1.0:
            raise ConfigurationError(
                f"Backoff multiplier must be >= 1.0, got {self.multiplier}",
                config_key="backoff_multiplier", invalid_value=str(self.multiplier)
            )
        if not isinstance(self.jitter, JitterMode):
            try:
                object.__setattr__(self, "jitter", JitterMode(self.jitter))
            except ValueError:
                raise ConfigurationError(
                    f"Invalid jitter mode: {self.jitter}",
                    config_key="jitter", invalid_value=str(self.jitter),
                    valid_values=[mode.value for mode in JitterMode]
                ) from None

    @classmethod
    def from_config(cls, config) -> "RetryPolicyConfig":
        """Build a retry configuration from a :class:`~venice.config.VeniceConfig`."""
        return cls(
            max_retries=config.api_retries,
            initial_backoff=config.initial_backoff,
            max_backoff=config.max_backoff,
            multiplier=config.backoff_multiplier,
            jitter=config.jitter,
            rate_limit_retries=config.rate_limit_retries,
            max_rate_limit_wait=config.max_rate_limit_wait,
        )


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of :meth:`RetryPolicy.decide`."""

    retry: bool
    delay: float = 0.0
    reason: str = ""


class RetryPolicy:
    """
    Stateless retry policy with exponential backoff.

    Args:
        config (RetryPolicyConfig, optional): Retry configuration
        rng (random.Random, optional): Random source used for jitter

    Example:
        Inspect the decision for a failed attempt::

            policy = RetryPolicy(RetryPolicyConfig(max_retries=5))

            decision = policy.decide(attempt=1, error=error)
            if decision.retry:
                print(f"retrying in {decision.delay:.2f}s ({decision.reason})")

        Deterministic delays for tests::

            policy = RetryPolicy(RetryPolicyConfig(jitter=JitterMode.NONE))
            assert policy.backoff(0) == 0.5
            assert policy.backoff(1) == 1.0
    """

    def __init__(self, config: Optional[RetryPolicyConfig] = None,
                 rng: Optional[random.Random] = None):
        self.config = config or RetryPolicyConfig()
        self._rng = rng or random.Random()

        logger.debug(
            f"Initialized retry policy: max_retries={self.config.max_retries}, "
            f"initial_backoff={self.config.initial_backoff}s"
        )

    def is_retryable(self, error: BaseException) -> bool:
        """
        Whether an error is transient.

        Transport failures, HTTP 429 and HTTP 5xx are transient. Every other
        error, including all other 4xx responses, is not.
        """
        if isinstance(error, TransportError):
            return True
        if isinstance(error, HttpStatusError):
            return error.status in RETRYABLE_STATUS_CODES
        return False

    def backoff(self, retry_index: int, previous_delay: Optional[float] = None) -> float:
        """
        Compute the backoff before a retry.

        Args:
            retry_index (int): 0 for the first retry, 1 for the second, ...
            previous_delay (float, optional): Delay used before the previous
                retry. The new delay is never shorter than this, up to
                ``max_backoff``.

        Returns:
            float: Delay in seconds, at most ``max_backoff``
        """
        cfg = self.config
        exponential = min(cfg.initial_backoff * (cfg.multiplier ** retry_index), cfg.max_backoff)
        lower = min(max(exponential, previous_delay or 0.0), cfg.max_backoff)

        if cfg.jitter == JitterMode.NONE:
            return lower

        upper = min(lower * cfg.multiplier, cfg.max_backoff)
        return self._rng.uniform(lower, upper)

    def attempts_allowed(self, rate_limited: bool) -> int:
        """Budget of retries for a failure kind."""
        if rate_limited and self.config.rate_limit_retries is not None:
            return self.config.rate_limit_retries
        return self.config.max_retries

    def decide(
        self,
        attempt: int,
        error: BaseException,
        previous_delay: Optional[float] = None,
        rate_limited_attempts: int = 0
    ) -> RetryDecision:
        """
        Decide whether to retry after a failed attempt.

        Args:
            attempt (int): Attempts made so far, including the failed one (1-based)
            error (BaseException): The failure of the latest attempt
            previous_delay (float, optional): Delay used before the previous retry
            rate_limited_attempts (int): How many of the attempts so far were
                answered with HTTP 429, including the latest one

        Returns:
            RetryDecision: Whether to retry and the delay to wait first
        """
        if not self.is_retryable(error):
            return RetryDecision(False, reason="not_retryable")

        rate_limited = isinstance(error, HttpStatusError) and error.status == 429

        if rate_limited and self.config.rate_limit_retries is not None:
            used = rate_limited_attempts
        elif self.config.rate_limit_retries is not None:
            used = attempt - rate_limited_attempts
        else:
            used = attempt

        if used > self.attempts_allowed(rate_limited):
            return RetryDecision(False, reason="budget_exhausted")

        delay = self.backoff(attempt - 1, previous_delay)

        if rate_limited:
            hint = error.retry_after
            if hint is not None:
                if hint > self.config.max_rate_limit_wait:
                    logger.debug(
                        f"Rate limit reset hint ({hint:.2f}s) exceeds "
                        f"max wait ({self.config.max_rate_limit_wait}s)"
                    )
                    return RetryDecision(False, reason="reset_too_far")
                delay = max(hint, delay)
            return RetryDecision(True, delay, reason="rate_limited")

        if isinstance(error, TransportError):
            return RetryDecision(True, delay, reason="transport_error")
        return RetryDecision(True, delay, reason="server_error")

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_retries={self.config.max_retries}, "
            f"initial_backoff={self.config.initial_backoff}s, "
            f"max_backoff={self.config.max_backoff}s, "
            f"jitter={self.config.jitter.value})"
        )
