"""Tests for setka.core.retry and setka.core.errors - backoff and classification.

Tests cover:
- Backoff delay schedule.
- Success after a number of rate-limit failures.
- Exhaustion after 6 attempts, surfacing the final error.
- Immediate failure on safety rejections and unclassified errors.
- Classification of raw SDK-style errors.
"""

from __future__ import annotations

import asyncio

import pytest

from setka.core.errors import (
    GenerationError,
    RateLimitedError,
    SafetyRejectionError,
    TransientResponseError,
    classify_exception,
    is_retriable,
)
from setka.core.retry import backoff_delay, call_with_retry


class FlakyThunk:
    """Raises queued errors, then returns ``value``."""

    def __init__(self, errors, value="ok"):
        self.errors = list(errors)
        self.value = value
        self.attempts = 0

    async def __call__(self):
        self.attempts += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.value


class AlwaysFails:
    def __init__(self, make_error):
        self.make_error = make_error
        self.attempts = 0
        self.last_error = None

    async def __call__(self):
        self.attempts += 1
        self.last_error = self.make_error(self.attempts)
        raise self.last_error


class TestBackoffDelay:
    def test_doubles_each_attempt(self):
        assert [backoff_delay(n, 2.0) for n in range(1, 6)] == [2.0, 4.0, 8.0, 16.0, 32.0]

    def test_rejects_attempt_zero(self):
        with pytest.raises(ValueError):
            backoff_delay(0)


class TestCallWithRetry:
    def test_returns_immediately_on_success(self, recording_sleep):
        thunk = FlakyThunk([])
        result = asyncio.run(call_with_retry(thunk, sleep=recording_sleep))

        assert result == "ok"
        assert thunk.attempts == 1
        assert recording_sleep.delays == []

    def test_succeeds_after_three_rate_limits(self, recording_sleep):
        """Three rate-limit failures then success: exactly three delays."""
        thunk = FlakyThunk([RateLimitedError("429")] * 3, value="image")
        result = asyncio.run(
            call_with_retry(thunk, initial_delay=2.0, sleep=recording_sleep)
        )

        assert result == "image"
        assert thunk.attempts == 4
        assert recording_sleep.delays == [2.0, 4.0, 8.0]

    def test_exhausts_after_six_attempts(self, recording_sleep):
        """A call that is always rate-limited gives up at attempt 6."""
        thunk = AlwaysFails(lambda n: RateLimitedError(f"429 attempt {n}"))

        with pytest.raises(RateLimitedError) as excinfo:
            asyncio.run(call_with_retry(thunk, initial_delay=1.0, sleep=recording_sleep))

        assert thunk.attempts == 6
        assert excinfo.value is thunk.last_error
        assert "attempt 6" in str(excinfo.value)
        assert recording_sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0]

    def test_safety_rejection_is_not_retried(self, recording_sleep):
        thunk = AlwaysFails(lambda n: SafetyRejectionError("blocked", finish_reason="SAFETY"))

        with pytest.raises(SafetyRejectionError):
            asyncio.run(call_with_retry(thunk, sleep=recording_sleep))

        assert thunk.attempts == 1
        assert recording_sleep.delays == []

    def test_unclassified_error_is_not_retried(self, recording_sleep):
        thunk = AlwaysFails(lambda n: KeyError("boom"))

        with pytest.raises(KeyError):
            asyncio.run(call_with_retry(thunk, sleep=recording_sleep))

        assert thunk.attempts == 1

    def test_transient_response_is_retried(self, recording_sleep):
        thunk = FlakyThunk([TransientResponseError("empty")], value="image")
        assert asyncio.run(call_with_retry(thunk, sleep=recording_sleep)) == "image"
        assert thunk.attempts == 2

    def test_raw_rate_limit_message_is_classified(self, recording_sleep):
        """Raw SDK errors mentioning RESOURCE_EXHAUSTED are retried and re-raised classified."""
        thunk = AlwaysFails(lambda n: RuntimeError("RESOURCE_EXHAUSTED: quota"))

        with pytest.raises(RateLimitedError) as excinfo:
            asyncio.run(call_with_retry(thunk, max_retries=2, sleep=recording_sleep))

        assert thunk.attempts == 3
        assert isinstance(excinfo.value.__cause__, RuntimeError)

    def test_zero_retries_means_single_attempt(self, recording_sleep):
        thunk = AlwaysFails(lambda n: RateLimitedError("429"))

        with pytest.raises(RateLimitedError):
            asyncio.run(call_with_retry(thunk, max_retries=0, sleep=recording_sleep))

        assert thunk.attempts == 1


class TestClassifyException:
    def test_generation_errors_pass_through(self):
        error = SafetyRejectionError("blocked")
        assert classify_exception(error) is error

    def test_status_code_429(self):
        error = RuntimeError("Too many requests")
        error.code = 429
        assert isinstance(classify_exception(error), RateLimitedError)

    def test_message_marker(self):
        assert isinstance(classify_exception(RuntimeError("HTTP 429")), RateLimitedError)

    def test_other_errors_unchanged(self):
        error = ValueError("bad input")
        assert classify_exception(error) is error

    def test_is_retriable(self):
        assert is_retriable(RateLimitedError("x"))
        assert is_retriable(TransientResponseError("x"))
        assert not is_retriable(SafetyRejectionError("x"))
        assert not is_retriable(GenerationError("x"))
        assert not is_retriable(ValueError("x"))
