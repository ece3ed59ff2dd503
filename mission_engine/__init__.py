"""Dependency-graph scheduler for multi-agent missions."""

from mission_engine.execution import (  # noqa: F401
    AgentTaskExecutor,
    ExecutionConfig,
    ExecutionEngine,
    TaskGraph,
)

__version__ = "0.1.0"
