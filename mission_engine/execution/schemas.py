"""Pydantic schemas for DAG execution state, results and configuration."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Global default for the agent timeout ceiling. Change this one value to adjust everywhere.
DEFAULT_AGENT_TIMEOUT_SECONDS: int = 2700  # 45 min
DEFAULT_MIN_TIMEOUT_MS: int = 120_000
DEFAULT_MAX_CONCURRENCY: int = 4


class NodeStatus(str, Enum):
    """Lifecycle status of a task node."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED})


# ---------------------------------------------------------------------------
# Graph nodes
# ---------------------------------------------------------------------------


class TaskNode(BaseModel):
    """One unit of dependency-graph work assigned to an agent kind."""

    id: str
    agent_id: str
    task: str = ""
    dependencies: list[str] = []
    metadata: dict[str, Any] = {}
    status: NodeStatus = NodeStatus.PENDING
    start_time: float | None = None  # epoch seconds
    end_time: float | None = None
    result: Any = None
    skip_reason: str | None = None

    def is_ready(self, completed_ids: set[str] | frozenset[str]) -> bool:
        if self.status != NodeStatus.PENDING:
            return False
        return all(dep in completed_ids for dep in self.dependencies)

    @property
    def duration(self) -> float | None:
        if self.start_time is None or self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_json(self) -> dict[str, Any]:
        # ``result`` is whatever the executor returned; leave it for json.dump(default=str).
        data = self.model_dump()
        data["status"] = self.status.value
        return data


# ---------------------------------------------------------------------------
# Graph analysis results
# ---------------------------------------------------------------------------


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = []


class CriticalPath(BaseModel):
    path: list[str] = []
    length: int = 0


class GraphProgress(BaseModel):
    """Per-status node counts; skipped nodes count toward completion."""

    total: int = 0
    completed: int = 0
    running: int = 0
    pending: int = 0
    failed: int = 0
    skipped: int = 0
    percent_complete: int = 100


# ---------------------------------------------------------------------------
# Execution results
# ---------------------------------------------------------------------------


class RoundSummary(BaseModel):
    """What happened during one scheduling round of the engine."""

    round: int
    dispatched: list[str] = []
    completed: list[str] = []
    failed: list[str] = []
    skipped: list[str] = []
    concurrency_limit: int = 0
    started_at: float | None = None
    finished_at: float | None = None


class ExecutionResult(BaseModel):
    """Outcome of draining a TaskGraph."""

    success: bool
    results: dict[str, Any] = {}
    failed: list[str] = []
    skipped: list[str] = []
    rounds: int = 0


class CheckpointValidation(BaseModel):
    valid: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Agents and configuration
# ---------------------------------------------------------------------------


class AgentDescriptor(BaseModel):
    """Per-agent-kind overrides; unset fields fall back to the global config."""

    id: str
    timeout_ms: int | None = None


def resolve_timeout_ms(agent: AgentDescriptor | None, default_timeout_ms: int) -> int:
    """Return the agent's own timeout when set, else the global default."""
    if agent is not None and agent.timeout_ms:
        return agent.timeout_ms
    return default_timeout_ms


class ExecutionConfig(BaseModel):
    """Configuration for the execution engine and its collaborators."""

    model_config = ConfigDict(extra="forbid")

    agent_timeout_seconds: int = DEFAULT_AGENT_TIMEOUT_SECONDS
    min_timeout_ms: int = DEFAULT_MIN_TIMEOUT_MS
    max_retries: int = 3
    dynamic_concurrency: bool = False
    checkpoint_dir: str = ""
    agents: dict[str, AgentDescriptor] = Field(default_factory=dict)

    @field_validator("max_retries", "min_timeout_ms")
    @classmethod
    def _non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError(f"must be >= 0, got {v}")
        return v

    @field_validator("agent_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"agent_timeout_seconds must be > 0, got {v}")
        return v

    @property
    def agent_timeout_ms(self) -> int:
        return self.agent_timeout_seconds * 1000

    def build_timing_model(self):
        from mission_engine.execution.timing import AdaptiveTimingModel

        return AdaptiveTimingModel(
            default_timeout_ms=self.agent_timeout_ms,
            min_timeout_ms=self.min_timeout_ms,
        )

    def build_executor(self, run_fn, timing, **kwargs):
        """Wrap ``run_fn`` in an AgentTaskExecutor using this config's retry budget and agents."""
        from mission_engine.execution.executor import AgentTaskExecutor

        return AgentTaskExecutor(
            run_fn,
            timing=timing,
            agents=self.agents,
            max_retries=self.max_retries,
            **kwargs,
        )

    def build_checkpoint_store(self):
        """Return a CheckpointStore rooted at ``checkpoint_dir``, or None if unset."""
        if not self.checkpoint_dir:
            return None
        from mission_engine.execution.checkpoint import CheckpointStore

        return CheckpointStore(self.checkpoint_dir)
