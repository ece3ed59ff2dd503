"""mission_engine.execution: DAG scheduling and task execution.

Exports
-------
TaskGraph, ExecutionEngine
    The dependency graph and the loop that drains it.
AgentTaskExecutor
    Reference task executor with adaptive timeouts, classified retries and a
    per-agent circuit breaker.
AdaptiveTimingModel, CheckpointStore
    Runtime statistics and crash-recovery persistence shared by the above.
"""

from __future__ import annotations

from mission_engine.execution.checkpoint import (
    CheckpointStore,
    collect_checkpoint_state,
    restore_checkpoint_state,
    validate_checkpoint,
)
from mission_engine.execution.engine import ExecutionEngine
from mission_engine.execution.errors import (
    CircuitOpenError,
    CyclicGraphError,
    DuplicateNodeError,
    GraphError,
    InBandError,
    InvalidGraphError,
    InvalidStateError,
    MissionEngineError,
    NodeNotFoundError,
    TaskExecutionError,
)
from mission_engine.execution.executor import AgentTaskExecutor
from mission_engine.execution.graph import (
    TaskGraph,
    create_graph_from_config,
    create_graph_from_workflow,
)
from mission_engine.execution.retry import (
    FailureClass,
    classify_assistant_error,
    classify_error,
    classify_result_error,
    get_retry_delay,
    should_trip_circuit_breaker,
    with_retry,
)
from mission_engine.execution.schemas import (
    AgentDescriptor,
    ExecutionConfig,
    ExecutionResult,
    NodeStatus,
    TaskNode,
)
from mission_engine.execution.timing import AdaptiveTimingModel

__all__ = [
    "AdaptiveTimingModel",
    "AgentDescriptor",
    "AgentTaskExecutor",
    "CheckpointStore",
    "CircuitOpenError",
    "CyclicGraphError",
    "DuplicateNodeError",
    "ExecutionConfig",
    "ExecutionEngine",
    "ExecutionResult",
    "FailureClass",
    "GraphError",
    "InBandError",
    "InvalidGraphError",
    "InvalidStateError",
    "MissionEngineError",
    "NodeNotFoundError",
    "NodeStatus",
    "TaskExecutionError",
    "TaskGraph",
    "TaskNode",
    "classify_assistant_error",
    "classify_error",
    "classify_result_error",
    "collect_checkpoint_state",
    "create_graph_from_config",
    "create_graph_from_workflow",
    "get_retry_delay",
    "restore_checkpoint_state",
    "should_trip_circuit_breaker",
    "validate_checkpoint",
    "with_retry",
]
