"""Failure classification and retry policy for task executors.

Handles two error surfaces:

1. Raised errors (timeouts, process exits, spawn failures, API errors).
2. In-band errors reported inside an agent's result payload, either as an
   assistant ``error`` code or as a result ``subtype``.

Graph-level scheduling never retries; everything here runs inside a task
executor before the engine sees the failure.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import re
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class FailureClass(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"
    LIMIT = "limit"  # benign stop condition, not an error


_FATAL_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"authentication",
        r"unauthorized",
        r"invalid.?api.?key",
        r"invalid.?model",
        r"model.?not.?found",
        r"billing",
        r"quota.?exceeded",
        r"executable not found",
        r"failed to spawn",
        r"cannot write to terminated",
        r"aborted by user",
        r"operation aborted",
    )
)
_TRANSIENT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"rate.?limit",
        r"429",
        r"overloaded",
        r"timeout",
        r"timed?\s*out",
        r"ECONNRESET",
        r"ECONNREFUSED",
        r"ENOTFOUND",
        r"ETIMEDOUT",
        r"EPIPE",
        r"socket hang up",
        r"connection (?:reset|refused|aborted)",
        r"network",
        r"50[234]",
        r"fetch failed",
        r"server error",
        r"service unavailable",
        r"bad gateway",
        r"gateway timeout",
        r"exited with code [12]\b",
        r"non-zero exit status [12]\b",
    )
)

# SDK assistant message ``error`` values
ASSISTANT_ERROR_MAP: dict[str, FailureClass] = {
    "rate_limit": FailureClass.TRANSIENT,
    "server_error": FailureClass.TRANSIENT,
    "unknown": FailureClass.TRANSIENT,
    "max_output_tokens": FailureClass.TRANSIENT,
    "authentication_failed": FailureClass.FATAL,
    "billing_error": FailureClass.FATAL,
    "invalid_request": FailureClass.FATAL,
}

# SDK result ``subtype`` values
RESULT_ERROR_MAP: dict[str, FailureClass] = {
    "error_max_turns": FailureClass.LIMIT,
    "error_during_execution": FailureClass.TRANSIENT,
    "error_max_budget_usd": FailureClass.FATAL,
    "error_max_structured_output_retries": FailureClass.FATAL,
}

BACKOFF_DELAYS_MS: tuple[int, ...] = (1000, 4000, 16000)
MAX_RETRIES = 3
CIRCUIT_BREAKER_THRESHOLD = 3


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _error_text(err: Any) -> str:
    if err is None:
        return ""
    if isinstance(err, str):
        return err
    if isinstance(err, Mapping):
        return f"{err.get('message') or ''} {err.get('code') or ''}".strip()
    parts = [str(err)]
    code = getattr(err, "code", None)
    if code is not None:
        parts.append(str(code))
    if isinstance(err, OSError) and err.errno is not None:
        parts.append(errno.errorcode.get(err.errno, ""))
    return " ".join(p for p in parts if p)


def classify_error(err: Any) -> FailureClass:
    """Classify a raised error as transient or fatal.

    Fatal patterns win over transient ones. Anything unrecognised is treated
    as transient: retrying is safer than aborting.
    """
    explicit = getattr(err, "classification", None)
    if explicit in (FailureClass.TRANSIENT, FailureClass.FATAL):
        return FailureClass(explicit)

    text = _error_text(err)
    for pattern in _FATAL_PATTERNS:
        if pattern.search(text):
            return FailureClass.FATAL
    for pattern in _TRANSIENT_PATTERNS:
        if pattern.search(text):
            return FailureClass.TRANSIENT
    return FailureClass.TRANSIENT


def classify_assistant_error(code: str | None) -> FailureClass | None:
    """Classify an in-band assistant error code; None if unknown."""
    return ASSISTANT_ERROR_MAP.get(code or "")


def classify_result_error(subtype: str | None) -> FailureClass | None:
    """Classify a result error subtype; None if unknown."""
    return RESULT_ERROR_MAP.get(subtype or "")


# ---------------------------------------------------------------------------
# Retry driver
# ---------------------------------------------------------------------------


def get_retry_delay(retry_index: int) -> int:
    """Backoff delay in milliseconds before retry number ``retry_index`` (0-based)."""
    index = min(max(retry_index, 0), len(BACKOFF_DELAYS_MS) - 1)
    return BACKOFF_DELAYS_MS[index]


@dataclass(slots=True)
class RetryOutcome:
    """Result of :func:`with_retry`. Exactly one of result/error is meaningful."""

    result: Any = None
    error: BaseException | None = None
    attempts: int = 0
    classification: FailureClass | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


OnRetry = Callable[[int, int, BaseException], Any]


async def with_retry(
    fn: Callable[[int], Awaitable[Any]],
    *,
    max_retries: int = MAX_RETRIES,
    on_retry: OnRetry | None = None,
    sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    label: str = "",
) -> RetryOutcome:
    """Await ``fn(retry_index)`` until it succeeds, fails fatally, or runs out of retries.

    ``max_retries=0`` still performs exactly one attempt. ``on_retry`` is called
    with ``(retry_index, delay_ms, error)`` before each backoff sleep.
    """
    max_retries = max(max_retries, 0)
    prefix = f"[{label}] " if label else ""
    for retry_index in range(max_retries + 1):
        attempts = retry_index + 1
        try:
            result = await fn(retry_index)
        except Exception as err:
            classification = classify_error(err)
            if classification == FailureClass.FATAL:
                logger.warning("%sFatal error (attempt %d): %s", prefix, attempts, err)
                return RetryOutcome(error=err, attempts=attempts, classification=FailureClass.FATAL)

            if retry_index >= max_retries:
                logger.warning("%sAll %d attempts exhausted: %s", prefix, attempts, err)
                return RetryOutcome(error=err, attempts=attempts, classification=FailureClass.TRANSIENT)

            delay_ms = get_retry_delay(retry_index)
            logger.info(
                "%sTransient error (attempt %d/%d): %s; retrying in %.1fs",
                prefix, attempts, max_retries + 1, err, delay_ms / 1000,
            )
            if on_retry is not None:
                on_retry(retry_index, delay_ms, err)
            await sleep_fn(delay_ms / 1000)
        else:
            return RetryOutcome(result=result, attempts=attempts)

    # unreachable: the loop always returns
    raise AssertionError("with_retry loop exited without an outcome")


def should_trip_circuit_breaker(consecutive_failures: int) -> bool:
    """True once ``consecutive_failures`` reaches the breaker threshold."""
    return consecutive_failures >= CIRCUIT_BREAKER_THRESHOLD
