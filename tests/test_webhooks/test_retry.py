"""Tests for webhook retry policy."""

import random

import pytest
from pydantic import ValidationError

from innsync.webhooks.retry import (
    ErrorClass,
    ErrorKind,
    GiveUp,
    RetryAfter,
    RetryPolicy,
    apply_jitter,
    base_delay,
    next_retry,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def policy():
    """Policy from the documented retry schedule."""
    return RetryPolicy(
        initial_delay=1,
        backoff_multiplier=2,
        max_delay=60,
        max_retries=3,
        retry_on=["timeout", "5xx"],
    )


@pytest.fixture
def timeout():
    """Timeout error class."""
    return ErrorClass(kind=ErrorKind.TIMEOUT)


# ============================================================================
# ErrorClass Tests
# ============================================================================


class TestErrorClass:
    """Tests for ErrorClass.from_status."""

    @pytest.mark.parametrize(
        ("status_code", "kind"),
        [(500, ErrorKind.HTTP_5XX), (504, ErrorKind.HTTP_5XX), (404, ErrorKind.HTTP_4XX), (302, ErrorKind.OTHER)],
    )
    def test_from_status(self, status_code, kind):
        """Test HTTP status codes are classified by family."""
        error = ErrorClass.from_status(status_code)

        assert error.kind == kind
        assert error.status_code == status_code


# ============================================================================
# RetryPolicy Tests
# ============================================================================


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_defaults(self):
        """Test default policy values."""
        policy = RetryPolicy()

        assert policy.enabled is True
        assert policy.max_retries == 3
        assert policy.initial_delay == 1.0
        assert policy.max_delay == 60.0
        assert policy.backoff_multiplier == 2.0
        assert set(policy.retry_on) == {"timeout", "connection_error", "5xx"}

    def test_initial_delay_above_max_rejected(self):
        """Test initial delay must not exceed max delay."""
        with pytest.raises(ValidationError):
            RetryPolicy(initial_delay=10, max_delay=5)

    def test_max_retries_bounded(self):
        """Test max retries is bounded to 10."""
        with pytest.raises(ValidationError):
            RetryPolicy(max_retries=11)

    def test_unknown_condition_rejected(self):
        """Test unknown retry conditions are rejected."""
        with pytest.raises(ValidationError):
            RetryPolicy(retry_on=["sometimes"])

    def test_retries_on(self, policy, timeout):
        """Test retries_on checks the error kind."""
        assert policy.retries_on(timeout)
        assert policy.retries_on(ErrorClass.from_status(502))
        assert not policy.retries_on(ErrorClass.from_status(400))
        assert not policy.retries_on(ErrorClass(kind=ErrorKind.CONNECTION_ERROR))


# ============================================================================
# Delay Tests
# ============================================================================


class TestDelays:
    """Tests for base_delay and apply_jitter."""

    def test_exponential_schedule(self, policy):
        """Test delays double from the initial delay."""
        assert [base_delay(policy, i) for i in range(4)] == [1, 2, 4, 8]

    def test_capped_at_max_delay(self):
        """Test delays never exceed max delay."""
        policy = RetryPolicy(initial_delay=10, max_delay=30, backoff_multiplier=3)

        assert base_delay(policy, 5) == 30

    def test_monotonic(self):
        """Test delays never decrease with the attempt index."""
        policy = RetryPolicy(initial_delay=0.5, max_delay=45, backoff_multiplier=1.7, max_retries=10)
        delays = [base_delay(policy, i) for i in range(50)]

        assert all(a <= b for a, b in zip(delays, delays[1:]))
        assert all(d <= policy.max_delay for d in delays)

    def test_huge_attempt_does_not_overflow(self):
        """Test very large attempts fall back to max delay."""
        policy = RetryPolicy(backoff_multiplier=10)

        assert base_delay(policy, 10_000) == policy.max_delay

    def test_jitter_bounds(self):
        """Test jitter stays within ±20%."""
        rng = random.Random(42)
        values = [apply_jitter(10.0, rng) for _ in range(500)]

        assert all(8.0 <= v <= 12.0 for v in values)
        assert min(values) < 9.0
        assert max(values) > 11.0


# ============================================================================
# next_retry Tests
# ============================================================================


class TestNextRetry:
    """Tests for next_retry."""

    def test_documented_schedule(self, policy, timeout):
        """Test timeout, 502 and 504 produce ~1s, ~2s and ~4s waits."""
        rng = random.Random(7)
        errors = [timeout, ErrorClass.from_status(502), ErrorClass.from_status(504)]

        decisions = [next_retry(policy, i, e, rng=rng) for i, e in enumerate(errors)]

        assert all(isinstance(d, RetryAfter) for d in decisions)
        for decision, expected in zip(decisions, [1, 2, 4]):
            assert expected * 0.8 <= decision.delay <= expected * 1.2

    def test_gives_up_at_max_retries(self, policy, timeout):
        """Test the attempt at max_retries gives up."""
        decision = next_retry(policy, 3, timeout)

        assert isinstance(decision, GiveUp)
        assert "max retries" in decision.reason

    def test_gives_up_when_disabled(self, timeout):
        """Test disabled policies never retry."""
        decision = next_retry(RetryPolicy(enabled=False), 0, timeout)

        assert isinstance(decision, GiveUp)
        assert decision.reason == "retries disabled"

    def test_gives_up_on_unlisted_error(self, policy):
        """Test errors outside retry_on give up immediately."""
        decision = next_retry(policy, 0, ErrorClass.from_status(404))

        assert isinstance(decision, GiveUp)
        assert "4xx" in decision.reason

    def test_zero_retries(self, timeout):
        """Test max_retries=0 gives up after the first attempt."""
        decision = next_retry(RetryPolicy(max_retries=0), 0, timeout)

        assert isinstance(decision, GiveUp)
