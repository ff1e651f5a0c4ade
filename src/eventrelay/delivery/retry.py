"""
Module: delivery/retry.py
Description: Backoff policy for delivery retries.

Computes the delay before a retry from the attempt number and the retry
configuration, with optional exponential growth and jitter. The same
computation is exposed as a tenacity wait strategy so the dispatcher's
retry loop runs on tenacity.

Key Components:
- RetryConfig: Retry budget and backoff parameters
- next_delay(): Pure delay computation (injectable random source)
- RetryPolicyWait: tenacity wait strategy backed by next_delay()

Dependencies: tenacity, random, dataclasses
"""

import random
from dataclasses import dataclass
from typing import Optional

from tenacity import RetryCallState
from tenacity.wait import wait_base

from eventrelay.config.settings import DeliverySettings

JITTER_LOW = 0.75
JITTER_HIGH = 1.25


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry budget and backoff parameters.

    Attributes:
        max_retries: Retries after the first attempt (0 means no retry)
        initial_delay: Delay before the first retry, in seconds
        max_delay: Cap applied after the exponent, in seconds
        multiplier: Exponential growth factor
        exponential: Exponential backoff when True, fixed interval otherwise
        jitter: Sample the final delay from [0.75x, 1.25x]
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    exponential: bool = True
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.multiplier < 1.0:
            raise ValueError("multiplier must be >= 1.0")

    @classmethod
    def no_retry(cls) -> "RetryConfig":
        """Configuration where the first failure is terminal."""
        return cls(max_retries=0)

    @classmethod
    def from_settings(cls, settings: DeliverySettings) -> "RetryConfig":
        """
        Build a RetryConfig from validated settings.

        Args:
            settings: Delivery settings

        Returns:
            RetryConfig with mapped values
        """
        return cls(
            max_retries=settings.max_retries,
            initial_delay=settings.initial_delay_seconds,
            max_delay=settings.max_delay_seconds,
            multiplier=settings.backoff_multiplier,
            exponential=settings.exponential_backoff,
            jitter=settings.jitter,
        )


def next_delay(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """
    Compute the delay before a retry.

    ``attempt`` is 1 for the first retry. With exponential backoff the
    delay is ``min(max_delay, initial_delay * multiplier ** (attempt - 1))``;
    otherwise every attempt waits ``initial_delay``. Jitter, when enabled,
    samples uniformly from ``[0.75 * delay, 1.25 * delay]``.

    Args:
        attempt: Retry number, starting at 1
        config: Retry configuration
        rng: Random source for jitter (module random when omitted)

    Returns:
        Delay in seconds

    Raises:
        ValueError: If attempt is negative
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")

    if config.exponential:
        exponent = max(0, attempt - 1)
        try:
            delay = min(config.max_delay, config.initial_delay * config.multiplier ** exponent)
        except OverflowError:
            delay = config.max_delay
    else:
        delay = config.initial_delay

    if config.jitter and delay > 0:
        source = rng if rng is not None else random
        delay = source.uniform(delay * JITTER_LOW, delay * JITTER_HIGH)

    return delay


class RetryPolicyWait(wait_base):
    """
    tenacity wait strategy backed by next_delay().

    tenacity's attempt_number counts attempts already made, so after the
    first failed attempt it is 1, which is exactly the first retry.
    """

    def __init__(self, config: RetryConfig, rng: Optional[random.Random] = None):
        self.config = config
        self.rng = rng

    def __call__(self, retry_state: RetryCallState) -> float:
        return next_delay(retry_state.attempt_number, self.config, self.rng)
