"""Retry policy for webhook deliveries.

A pure function maps (attempt index, error class) to either a delay before
the next attempt or a decision to give up. Delays grow exponentially from
``initial_delay`` by ``backoff_multiplier`` and are capped at ``max_delay``;
a bounded jitter of ±20% is applied on top.
"""

import random
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, model_validator

JITTER_RATIO = 0.2


class ErrorKind(str, Enum):
    """Classification of a failed delivery attempt."""

    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection_error"
    HTTP_4XX = "4xx"
    HTTP_5XX = "5xx"
    OTHER = "other"


RetryCondition = Literal["timeout", "connection_error", "5xx", "4xx"]


class ErrorClass(BaseModel):
    """Outcome class of a failed attempt, with the HTTP status when there is one."""

    kind: ErrorKind
    status_code: int | None = None

    @classmethod
    def from_status(cls, status_code: int) -> "ErrorClass":
        """Classify a non-2xx HTTP status code."""
        if 500 <= status_code <= 599:
            return cls(kind=ErrorKind.HTTP_5XX, status_code=status_code)
        if 400 <= status_code <= 499:
            return cls(kind=ErrorKind.HTTP_4XX, status_code=status_code)
        return cls(kind=ErrorKind.OTHER, status_code=status_code)


class RetryPolicy(BaseModel):
    """Per-endpoint retry configuration. Delays are in seconds."""

    enabled: bool = Field(default=True, description="Whether retries are enabled")
    max_retries: int = Field(
        default=3,
        description="Maximum retry attempts after the first",
        ge=0,
        le=10,
    )
    initial_delay: float = Field(
        default=1.0,
        description="Delay before the first retry (seconds)",
        gt=0,
    )
    max_delay: float = Field(
        default=60.0,
        description="Upper bound for any delay (seconds)",
        gt=0,
    )
    backoff_multiplier: float = Field(
        default=2.0,
        description="Exponential backoff multiplier",
        ge=1,
        le=10,
    )
    retry_on: list[RetryCondition] = Field(
        default_factory=lambda: ["timeout", "connection_error", "5xx"],
        description="Error classes that trigger a retry",
    )

    @model_validator(mode="after")
    def _check_delays(self) -> "RetryPolicy":
        if self.initial_delay > self.max_delay:
            raise ValueError("initial_delay must not exceed max_delay")
        return self

    def retries_on(self, error: ErrorClass) -> bool:
        """Check whether this policy lists the given error class."""
        return error.kind.value in self.retry_on


class RetryAfter(BaseModel):
    """Retry after ``delay`` seconds."""

    delay: float


class GiveUp(BaseModel):
    """Stop retrying."""

    reason: str


RetryDecision = RetryAfter | GiveUp


def base_delay(policy: RetryPolicy, attempt: int) -> float:
    """Delay before the retry that follows failed attempt ``attempt``, without jitter.

    Args:
        policy: Retry policy.
        attempt: 0-based index of the attempt that just failed.

    Returns:
        min(max_delay, initial_delay * backoff_multiplier ** attempt)
    """
    try:
        delay = policy.initial_delay * (policy.backoff_multiplier ** attempt)
    except OverflowError:
        return policy.max_delay
    return min(policy.max_delay, delay)


def apply_jitter(delay: float, rng: random.Random | None = None) -> float:
    """Apply a uniform ±20% jitter to a delay."""
    source = rng or random
    return delay * source.uniform(1 - JITTER_RATIO, 1 + JITTER_RATIO)


def next_retry(
    policy: RetryPolicy,
    attempt: int,
    error: ErrorClass,
    *,
    rng: random.Random | None = None,
) -> RetryDecision:
    """Decide what happens after a failed attempt.

    Args:
        policy: Endpoint retry policy.
        attempt: 0-based index of the attempt that just failed.
        error: Classification of the failure.
        rng: Optional random source for deterministic jitter.

    Returns:
        RetryAfter with the jittered delay, or GiveUp with a reason.
    """
    if not policy.enabled:
        return GiveUp(reason="retries disabled")

    if attempt >= policy.max_retries:
        return GiveUp(reason=f"max retries reached ({policy.max_retries})")

    if not policy.retries_on(error):
        return GiveUp(reason=f"error class '{error.kind.value}' is not retried")

    return RetryAfter(delay=apply_jitter(base_delay(policy, attempt), rng))
