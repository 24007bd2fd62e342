"""
Retry profiles and backoff delay calculation.

Delays grow exponentially from the profile's base delay, are capped at its
max delay, and are optionally jittered into [0.5, 1.0] of the computed value
so concurrent callers do not retry in lockstep.
"""
import random
import time
from dataclasses import dataclass
from typing import Optional

from billing_sync.config import Settings

# Added on top of a provider-supplied reset time.
RATE_LIMIT_RESET_BUFFER_SECONDS = 1.0


@dataclass(frozen=True)
class RetryProfile:
    """
    Retry budget and backoff shape.

    Attributes:
        max_attempts: Retries allowed after the first attempt
        base_delay: Delay before the first retry (seconds)
        max_delay: Upper bound for any delay (seconds)
        backoff_multiplier: Growth factor per attempt
        jitter: Scale delays by a random factor in [0.5, 1.0]
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


DEFAULT_RETRY_PROFILE = RetryProfile(
    max_attempts=3,
    base_delay=1.0,
    max_delay=30.0,
    backoff_multiplier=2.0,
    jitter=True,
)

RATE_LIMIT_RETRY_PROFILE = RetryProfile(
    max_attempts=5,
    base_delay=2.0,
    max_delay=60.0,
    backoff_multiplier=2.0,
    jitter=True,
)


def profiles_from_settings(settings: Settings) -> tuple[RetryProfile, RetryProfile]:
    """Build the (default, rate-limit) profile pair from settings."""
    default = RetryProfile(
        max_attempts=settings.retry_max_attempts,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
        backoff_multiplier=settings.retry_backoff_multiplier,
        jitter=settings.retry_jitter,
    )
    rate_limit = RetryProfile(
        max_attempts=settings.rate_limit_retry_max_attempts,
        base_delay=settings.rate_limit_retry_base_delay,
        max_delay=settings.rate_limit_retry_max_delay,
        backoff_multiplier=settings.retry_backoff_multiplier,
        jitter=settings.retry_jitter,
    )
    return default, rate_limit


def calculate_delay(
    attempt: int,
    profile: RetryProfile,
    reset_at: Optional[float] = None,
    now: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Compute the delay before the next attempt.

    Args:
        attempt: Number of the attempt that just failed (starts at 1)
        profile: Retry profile to apply
        reset_at: Provider-supplied reset time (epoch seconds), if any
        now: Current epoch time, defaults to time.time()
        rng: Random source for jitter

    Returns:
        float: Delay in seconds
    """
    if attempt < 1:
        raise ValueError("attempt numbering starts at 1")

    if reset_at is not None:
        current = time.time() if now is None else now
        wait = max(0.0, reset_at - current) + RATE_LIMIT_RESET_BUFFER_SECONDS
        return min(wait, profile.max_delay)

    delay = min(
        profile.base_delay * profile.backoff_multiplier ** (attempt - 1),
        profile.max_delay,
    )
    if profile.jitter:
        source = rng or random
        delay *= source.uniform(0.5, 1.0)
    return delay
