"""Reference task executor: adaptive timeouts, classified retries, circuit breaker.

Wraps a caller-supplied ``run_fn(node, attempt)`` coroutine function so it can
be handed straight to :meth:`ExecutionEngine.execute`. Everything about how an
agent actually runs (process spawning, prompts, cost accounting) stays inside
``run_fn``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from mission_engine.execution.errors import CircuitOpenError, InBandError, TaskExecutionError
from mission_engine.execution.retry import (
    MAX_RETRIES,
    FailureClass,
    OnRetry,
    classify_assistant_error,
    classify_result_error,
    should_trip_circuit_breaker,
    with_retry,
)
from mission_engine.execution.schemas import AgentDescriptor, TaskNode
from mission_engine.execution.timing import AdaptiveTimingModel

logger = logging.getLogger(__name__)

RunFn = Callable[[TaskNode, int], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Timeout wrapper
# ---------------------------------------------------------------------------


async def _call_with_timeout(coro, timeout: float, label: str = ""):
    """Wrap a coroutine with asyncio.wait_for timeout.

    Args:
        coro: An awaitable coroutine (already called, e.g. ``run_fn(...)``).
        timeout: Seconds before raising TimeoutError.
        label: Human-readable label for error messages.
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout)
    except asyncio.TimeoutError:
        raise TimeoutError(
            f"Agent call '{label}' timed out after {timeout:g}s"
        ) from None


def check_in_band(result: Any) -> FailureClass | None:
    """Inspect a result payload for an in-band error.

    Returns ``FailureClass.LIMIT`` for benign stop conditions, None when the
    result carries no known error. Raises :class:`InBandError` for transient
    and fatal in-band errors so the retry driver sees them.
    """
    if not isinstance(result, Mapping):
        return None
    subtype = result.get("subtype")
    classification = classify_result_error(subtype)
    code = subtype
    if classification is None and result.get("error"):
        code = result.get("error")
        classification = classify_assistant_error(code if isinstance(code, str) else None)
    if classification is None:
        return None
    if classification == FailureClass.LIMIT:
        return classification
    raise InBandError(
        f"Agent reported {classification.value} error: {code}",
        classification=classification.value,
        code=str(code),
    )


class AgentTaskExecutor:
    """Callable task executor for :meth:`ExecutionEngine.execute`."""

    def __init__(
        self,
        run_fn: RunFn,
        *,
        timing: AdaptiveTimingModel,
        agents: Mapping[str, AgentDescriptor] | None = None,
        max_retries: int = MAX_RETRIES,
        on_retry: OnRetry | None = None,
        sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        note_fn: Callable | None = None,
    ) -> None:
        self.run_fn = run_fn
        self.timing = timing
        self.agents: dict[str, AgentDescriptor] = dict(agents or {})
        self.max_retries = max_retries
        self.on_retry = on_retry
        self.sleep_fn = sleep_fn
        self.note_fn = note_fn
        self.consecutive_failures: dict[str, int] = {}

    def circuit_open(self, agent_id: str) -> bool:
        return should_trip_circuit_breaker(self.consecutive_failures.get(agent_id, 0))

    def agent_for(self, node: TaskNode) -> AgentDescriptor:
        return self.agents.get(node.agent_id) or AgentDescriptor(id=node.agent_id)

    async def __call__(self, node: TaskNode) -> Any:
        agent_id = node.agent_id
        if self.circuit_open(agent_id):
            raise CircuitOpenError(
                node.id,
                f"Circuit open for agent '{agent_id}' after "
                f"{self.consecutive_failures[agent_id]} consecutive failures",
                classification=FailureClass.FATAL.value,
            )

        timeout_s = self.timing.get_adaptive_timeout(self.agent_for(node)) / 1000

        async def _attempt(attempt: int) -> Any:
            started = time.monotonic()
            try:
                result = await _call_with_timeout(self.run_fn(node, attempt), timeout_s, label=node.id)
            finally:
                self.timing.record_agent_runtime(agent_id, time.monotonic() - started)
            if check_in_band(result) == FailureClass.LIMIT:
                logger.info("Node %s stopped at a run limit; treating result as final", node.id)
            return result

        outcome = await with_retry(
            _attempt,
            max_retries=self.max_retries,
            on_retry=self.on_retry,
            sleep_fn=self.sleep_fn,
            label=node.id,
        )

        if outcome.error is not None:
            self.consecutive_failures[agent_id] = self.consecutive_failures.get(agent_id, 0) + 1
            if self.note_fn:
                self.note_fn(
                    f"Node {node.id} failed after {outcome.attempts} attempt(s) "
                    f"({outcome.classification.value}): {outcome.error}",
                    tags=["execution", "executor", "failed"],
                )
            raise TaskExecutionError(
                node.id,
                f"{outcome.error}",
                attempts=outcome.attempts,
                classification=outcome.classification.value,
            ) from outcome.error

        self.consecutive_failures[agent_id] = 0
        return outcome.result
