"""Exception taxonomy for graph construction, scheduling and task execution."""

from __future__ import annotations


class MissionEngineError(Exception):
    """Base class for every error raised by mission_engine."""


# ---------------------------------------------------------------------------
# Graph errors
# ---------------------------------------------------------------------------


class GraphError(MissionEngineError):
    """Structural or state error on a TaskGraph."""


class DuplicateNodeError(GraphError, ValueError):
    def __init__(self, node_id: str) -> None:
        super().__init__(f'Node "{node_id}" already exists')
        self.node_id = node_id


class NodeNotFoundError(GraphError, LookupError):
    def __init__(self, node_id: str, role: str = "Node") -> None:
        super().__init__(f'{role} "{node_id}" not found')
        self.node_id = node_id

    def __str__(self) -> str:
        # LookupError.__str__ would repr() the message
        return self.args[0]


class InvalidStateError(GraphError, RuntimeError):
    """A status transition was requested that the node's lifecycle forbids."""


class CyclicGraphError(GraphError, ValueError):
    """The dependency relation contains a cycle."""


class InvalidGraphError(GraphError, ValueError):
    """Graph failed validation; ``errors`` lists every problem found."""

    def __init__(self, errors: list[str], prefix: str = "Invalid DAG") -> None:
        self.errors = list(errors)
        super().__init__(f"{prefix}: {'; '.join(self.errors)}")


# ---------------------------------------------------------------------------
# Execution errors
# ---------------------------------------------------------------------------


class TaskExecutionError(MissionEngineError):
    """A task executor gave up on a node after its retry budget."""

    def __init__(
        self,
        node_id: str,
        message: str,
        *,
        attempts: int = 0,
        classification: str | None = None,
    ) -> None:
        super().__init__(message)
        self.node_id = node_id
        self.attempts = attempts
        self.classification = classification


class CircuitOpenError(TaskExecutionError):
    """Dispatch refused because the agent kind tripped its circuit breaker."""


class InBandError(MissionEngineError):
    """Error reported inside a successful-looking agent result payload.

    ``classification`` is consulted by :func:`classify_error` before any
    message pattern, so the retry driver treats it exactly as reported.
    """

    def __init__(self, message: str, *, classification: str, code: str = "") -> None:
        super().__init__(message)
        self.classification = classification
        self.code = code
