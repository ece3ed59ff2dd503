"""Tests for mission_engine.execution.executor.AgentTaskExecutor.

Covers:
- check_in_band: limit / transient / fatal / unknown payloads
- retries on transient errors with backoff, no retry on fatal errors
- adaptive timeout applied per attempt, runtime recorded even on failure
- per-agent circuit breaker
- end-to-end through ExecutionEngine via ExecutionConfig.build_executor
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mission_engine.execution.engine import ExecutionEngine
from mission_engine.execution.errors import CircuitOpenError, InBandError, TaskExecutionError
from mission_engine.execution.executor import AgentTaskExecutor, check_in_band
from mission_engine.execution.graph import TaskGraph
from mission_engine.execution.retry import FailureClass
from mission_engine.execution.schemas import AgentDescriptor, ExecutionConfig, TaskNode
from mission_engine.execution.timing import AdaptiveTimingModel


def _node(node_id: str = "n1", agent_id: str = "coder") -> TaskNode:
    return TaskNode(id=node_id, agent_id=agent_id, task="work")


def _executor(run_fn, **kwargs) -> AgentTaskExecutor:
    kwargs.setdefault("timing", AdaptiveTimingModel())
    kwargs.setdefault("sleep_fn", AsyncMock())
    return AgentTaskExecutor(run_fn, **kwargs)


# ---------------------------------------------------------------------------
# check_in_band
# ---------------------------------------------------------------------------


class TestCheckInBand:
    def test_plain_results_pass(self):
        assert check_in_band("done") is None
        assert check_in_band({"subtype": "success", "files": 2}) is None

    def test_limit_is_not_an_error(self):
        assert check_in_band({"subtype": "error_max_turns"}) == FailureClass.LIMIT

    def test_transient_result_subtype_raises(self):
        with pytest.raises(InBandError) as exc_info:
            check_in_band({"subtype": "error_during_execution"})
        assert exc_info.value.classification == "transient"
        assert exc_info.value.code == "error_during_execution"

    def test_fatal_assistant_error_raises(self):
        with pytest.raises(InBandError) as exc_info:
            check_in_band({"error": "billing_error"})
        assert exc_info.value.classification == "fatal"

    def test_unknown_assistant_error_passes(self):
        assert check_in_band({"error": "something_new"}) is None


# ---------------------------------------------------------------------------
# Retry behaviour
# ---------------------------------------------------------------------------


class TestRetries:
    def test_success_returns_result_and_records_runtime(self):
        timing = AdaptiveTimingModel()
        run_fn = AsyncMock(return_value={"ok": True})
        executor = _executor(run_fn, timing=timing)
        assert asyncio.run(executor(_node())) == {"ok": True}
        run_fn.assert_awaited_once()
        assert run_fn.await_args.args[1] == 0
        assert len(timing.runtime_history["coder"]) == 1

    def test_transient_error_is_retried(self):
        run_fn = AsyncMock(side_effect=[RuntimeError("429 rate limit"), "ok"])
        on_retry = MagicMock()
        sleep_fn = AsyncMock()
        executor = _executor(run_fn, on_retry=on_retry, sleep_fn=sleep_fn)
        assert asyncio.run(executor(_node())) == "ok"
        assert [c.args[1] for c in run_fn.await_args_list] == [0, 1]
        assert on_retry.call_args.args[:2] == (0, 1000)
        sleep_fn.assert_awaited_once_with(1.0)

    def test_in_band_transient_is_retried(self):
        run_fn = AsyncMock(side_effect=[{"subtype": "error_during_execution"}, {"subtype": "success"}])
        executor = _executor(run_fn)
        assert asyncio.run(executor(_node())) == {"subtype": "success"}
        assert run_fn.await_count == 2

    def test_limit_result_is_returned(self):
        run_fn = AsyncMock(return_value={"subtype": "error_max_turns", "partial": True})
        executor = _executor(run_fn)
        assert asyncio.run(executor(_node()))["partial"] is True
        run_fn.assert_awaited_once()

    def test_fatal_error_not_retried(self):
        run_fn = AsyncMock(side_effect=RuntimeError("Authentication failed"))
        note_fn = MagicMock()
        executor = _executor(run_fn, note_fn=note_fn)
        with pytest.raises(TaskExecutionError) as exc_info:
            asyncio.run(executor(_node()))
        err = exc_info.value
        assert err.node_id == "n1"
        assert err.attempts == 1
        assert err.classification == "fatal"
        assert isinstance(err.__cause__, RuntimeError)
        run_fn.assert_awaited_once()
        note_fn.assert_called_once()
        assert note_fn.call_args.kwargs["tags"] == ["execution", "executor", "failed"]

    def test_exhausted_retries_raise(self):
        run_fn = AsyncMock(side_effect=RuntimeError("overloaded"))
        executor = _executor(run_fn, max_retries=2)
        with pytest.raises(TaskExecutionError) as exc_info:
            asyncio.run(executor(_node()))
        assert exc_info.value.attempts == 3
        assert exc_info.value.classification == "transient"


# ---------------------------------------------------------------------------
# Timeouts
# ---------------------------------------------------------------------------


class TestTimeouts:
    def test_slow_attempt_times_out(self):
        async def _slow(node, attempt):
            await asyncio.sleep(5)

        timing = AdaptiveTimingModel()
        executor = _executor(
            _slow,
            timing=timing,
            agents={"coder": AgentDescriptor(id="coder", timeout_ms=50)},
            max_retries=0,
        )
        with pytest.raises(TaskExecutionError, match="timed out"):
            asyncio.run(executor(_node()))
        assert len(timing.runtime_history["coder"]) == 1

    def test_agent_for_falls_back_to_bare_descriptor(self):
        executor = _executor(AsyncMock())
        descriptor = executor.agent_for(_node(agent_id="unknown"))
        assert descriptor.id == "unknown"
        assert descriptor.timeout_ms is None


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------


class TestCircuitBreaker:
    def test_opens_after_three_consecutive_failures(self):
        run_fn = AsyncMock(side_effect=RuntimeError("invalid model"))
        executor = _executor(run_fn)

        async def _drive():
            for i in range(3):
                with pytest.raises(TaskExecutionError):
                    await executor(_node(f"n{i}"))
            with pytest.raises(CircuitOpenError):
                await executor(_node("n3"))

        asyncio.run(_drive())
        assert run_fn.await_count == 3
        assert executor.circuit_open("coder") is True
        assert executor.circuit_open("qa") is False

    def test_success_resets_failure_count(self):
        run_fn = AsyncMock(side_effect=[RuntimeError("invalid model"), RuntimeError("invalid model"), "ok"])
        executor = _executor(run_fn)

        async def _drive():
            for _ in range(2):
                with pytest.raises(TaskExecutionError):
                    await executor(_node())
            return await executor(_node())

        assert asyncio.run(_drive()) == "ok"
        assert executor.consecutive_failures["coder"] == 0


# ---------------------------------------------------------------------------
# Engine integration
# ---------------------------------------------------------------------------


class TestEngineIntegration:
    def test_engine_with_configured_executor(self):
        graph = TaskGraph(max_concurrency=2)
        graph.add_node("plan", "architect")
        graph.add_node("build", "coder", dependencies=["plan"])
        graph.add_node("docs", "writer", dependencies=["plan"])

        async def _run(node, attempt):
            if node.id == "build" and attempt == 0:
                raise RuntimeError("socket hang up")
            if node.id == "docs":
                raise RuntimeError("billing error")
            return f"{node.id}@{attempt}"

        config = ExecutionConfig(max_retries=1)
        engine = ExecutionEngine.from_config(graph, config)
        executor = config.build_executor(_run, engine.timing, sleep_fn=AsyncMock())
        result = asyncio.run(engine.execute(executor))

        assert result.results == {"plan": "plan@0", "build": "build@1"}
        assert result.failed == ["docs"]
        assert engine.last_failure_details["docs"]["error_type"] == "TaskExecutionError"
