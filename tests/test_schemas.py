"""Tests for mission_engine.execution.schemas."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from mission_engine.execution.schemas import (
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    AgentDescriptor,
    ExecutionConfig,
    NodeStatus,
    TaskNode,
    resolve_timeout_ms,
)


class TestTaskNode:
    def test_defaults(self):
        node = TaskNode(id="a", agent_id="coder")
        assert node.status == NodeStatus.PENDING
        assert node.dependencies == []
        assert node.duration is None
        assert node.is_terminal is False

    def test_is_ready_requires_pending_and_completed_deps(self):
        node = TaskNode(id="b", agent_id="coder", dependencies=["a"])
        assert node.is_ready(set()) is False
        assert node.is_ready({"a"}) is True
        node.status = NodeStatus.RUNNING
        assert node.is_ready({"a"}) is False

    def test_to_json_keeps_arbitrary_results(self):
        marker = object()
        node = TaskNode(id="a", agent_id="coder", status=NodeStatus.COMPLETED, result=marker)
        data = node.to_json()
        assert data["status"] == "completed"
        assert data["result"] is marker


class TestExecutionConfig:
    def test_defaults(self):
        cfg = ExecutionConfig()
        assert cfg.agent_timeout_seconds == DEFAULT_AGENT_TIMEOUT_SECONDS
        assert cfg.agent_timeout_ms == DEFAULT_AGENT_TIMEOUT_SECONDS * 1000
        assert cfg.max_retries == 3
        assert cfg.dynamic_concurrency is False

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValidationError):
            ExecutionConfig(max_concurrency=2)

    @pytest.mark.parametrize("field,value", [
        ("max_retries", -1),
        ("min_timeout_ms", -5),
        ("agent_timeout_seconds", 0),
    ])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ValidationError):
            ExecutionConfig(**{field: value})

    def test_agents_parsed_from_dicts(self):
        cfg = ExecutionConfig(agents={"coder": {"id": "coder", "timeout_ms": 60_000}})
        assert isinstance(cfg.agents["coder"], AgentDescriptor)
        assert cfg.agents["coder"].timeout_ms == 60_000

    def test_build_timing_model_uses_config(self):
        timing = ExecutionConfig(agent_timeout_seconds=600, min_timeout_ms=1000).build_timing_model()
        assert timing.default_timeout_ms == 600_000
        assert timing.min_timeout_ms == 1000

    def test_build_executor_uses_retry_budget(self):
        cfg = ExecutionConfig(max_retries=5, agents={"qa": {"id": "qa"}})
        executor = cfg.build_executor(lambda node, attempt: None, cfg.build_timing_model())
        assert executor.max_retries == 5
        assert "qa" in executor.agents


def test_resolve_timeout_prefers_agent_override():
    assert resolve_timeout_ms(AgentDescriptor(id="a", timeout_ms=10), 99) == 10
    assert resolve_timeout_ms(AgentDescriptor(id="a"), 99) == 99
    assert resolve_timeout_ms(None, 99) == 99
