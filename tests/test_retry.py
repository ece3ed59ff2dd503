"""Tests for mission_engine.execution.retry: classification, backoff and with_retry."""

from __future__ import annotations

import asyncio
import errno
from unittest.mock import AsyncMock, MagicMock

import pytest

from mission_engine.execution.errors import InBandError
from mission_engine.execution.retry import (
    BACKOFF_DELAYS_MS,
    FailureClass,
    classify_assistant_error,
    classify_error,
    classify_result_error,
    get_retry_delay,
    should_trip_circuit_breaker,
    with_retry,
)


# ---------------------------------------------------------------------------
# classify_error
# ---------------------------------------------------------------------------


class TestClassifyError:
    @pytest.mark.parametrize("message", [
        "Authentication failed",
        "401 Unauthorized",
        "Invalid API key provided",
        "model not found: claude-x",
        "billing hard limit reached",
        "claude executable not found",
        "Operation aborted",
    ])
    def test_fatal_messages(self, message):
        assert classify_error(RuntimeError(message)) == FailureClass.FATAL

    @pytest.mark.parametrize("message", [
        "Rate limit exceeded",
        "HTTP 429",
        "API overloaded",
        "Request timed out",
        "socket hang up",
        "502 Bad Gateway",
        "process exited with code 1",
    ])
    def test_transient_messages(self, message):
        assert classify_error(RuntimeError(message)) == FailureClass.TRANSIENT

    def test_fatal_wins_over_transient(self):
        assert classify_error("rate limit while checking billing") == FailureClass.FATAL

    def test_unknown_defaults_to_transient(self):
        assert classify_error(ValueError("something odd happened")) == FailureClass.TRANSIENT

    def test_error_code_attribute_is_consulted(self):
        err = RuntimeError("request failed")
        err.code = "ECONNRESET"
        assert classify_error(err) == FailureClass.TRANSIENT

    def test_os_error_errno_name_is_consulted(self):
        err = OSError(errno.ECONNREFUSED, "no listener")
        assert classify_error(err) == FailureClass.TRANSIENT

    def test_mapping_error(self):
        assert classify_error({"message": "quota exceeded", "code": 403}) == FailureClass.FATAL

    def test_explicit_classification_wins(self):
        err = InBandError("rate limit", classification="fatal")
        assert classify_error(err) == FailureClass.FATAL

    def test_timeout_error_is_transient(self):
        assert classify_error(TimeoutError("Agent call 'x' timed out after 5s")) == FailureClass.TRANSIENT


class TestInBandClassification:
    def test_assistant_codes(self):
        assert classify_assistant_error("rate_limit") == FailureClass.TRANSIENT
        assert classify_assistant_error("authentication_failed") == FailureClass.FATAL
        assert classify_assistant_error("brand_new_code") is None
        assert classify_assistant_error(None) is None

    def test_result_subtypes(self):
        assert classify_result_error("error_max_turns") == FailureClass.LIMIT
        assert classify_result_error("error_during_execution") == FailureClass.TRANSIENT
        assert classify_result_error("error_max_budget_usd") == FailureClass.FATAL
        assert classify_result_error("success") is None


# ---------------------------------------------------------------------------
# Backoff and circuit breaker
# ---------------------------------------------------------------------------


class TestBackoff:
    def test_delays_follow_schedule(self):
        assert [get_retry_delay(i) for i in range(3)] == list(BACKOFF_DELAYS_MS)

    def test_delay_is_clamped(self):
        assert get_retry_delay(10) == 16000
        assert get_retry_delay(-1) == 1000

    def test_circuit_breaker_threshold(self):
        assert should_trip_circuit_breaker(2) is False
        assert should_trip_circuit_breaker(3) is True
        assert should_trip_circuit_breaker(7) is True


# ---------------------------------------------------------------------------
# with_retry
# ---------------------------------------------------------------------------


class TestWithRetry:
    def test_success_first_try(self):
        fn = AsyncMock(return_value="ok")
        sleep_fn = AsyncMock()
        outcome = asyncio.run(with_retry(fn, sleep_fn=sleep_fn))
        assert outcome.ok
        assert outcome.result == "ok"
        assert outcome.attempts == 1
        fn.assert_awaited_once_with(0)
        sleep_fn.assert_not_awaited()

    def test_transient_then_success(self):
        err = RuntimeError("503 service unavailable")
        fn = AsyncMock(side_effect=[err, err, "ok"])
        sleep_fn = AsyncMock()
        on_retry = MagicMock()
        outcome = asyncio.run(with_retry(fn, on_retry=on_retry, sleep_fn=sleep_fn))

        assert outcome.result == "ok"
        assert outcome.attempts == 3
        assert [c.args[0] for c in fn.await_args_list] == [0, 1, 2]
        assert [c.args[0] for c in sleep_fn.await_args_list] == [1.0, 4.0]
        assert [c.args[:2] for c in on_retry.call_args_list] == [(0, 1000), (1, 4000)]
        assert on_retry.call_args_list[0].args[2] is err

    def test_fatal_stops_immediately(self):
        fn = AsyncMock(side_effect=RuntimeError("invalid api key"))
        sleep_fn = AsyncMock()
        outcome = asyncio.run(with_retry(fn, sleep_fn=sleep_fn))
        assert not outcome.ok
        assert outcome.attempts == 1
        assert outcome.classification == FailureClass.FATAL
        sleep_fn.assert_not_awaited()

    def test_exhausted_retries(self):
        fn = AsyncMock(side_effect=RuntimeError("overloaded"))
        sleep_fn = AsyncMock()
        outcome = asyncio.run(with_retry(fn, max_retries=3, sleep_fn=sleep_fn))
        assert outcome.attempts == 4
        assert outcome.classification == FailureClass.TRANSIENT
        assert str(outcome.error) == "overloaded"
        assert [c.args[0] for c in sleep_fn.await_args_list] == [1.0, 4.0, 16.0]

    def test_zero_retries_means_one_attempt(self):
        fn = AsyncMock(side_effect=RuntimeError("overloaded"))
        sleep_fn = AsyncMock()
        outcome = asyncio.run(with_retry(fn, max_retries=0, sleep_fn=sleep_fn))
        assert outcome.attempts == 1
        fn.assert_awaited_once()
        sleep_fn.assert_not_awaited()
