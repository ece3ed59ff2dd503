"""In-memory task dependency graph.

Usage::

    graph = TaskGraph(max_concurrency=3)
    graph.add_node("design", "architect", "Design API schema")
    graph.add_node("backend", "engine-dev", "Implement API", ["design"])
    graph.add_node("frontend", "ui-dev", "Build UI", ["design"])
    graph.add_node("tests", "qa", "Integration tests", ["backend", "frontend"])
    assert graph.validate().valid
    result = await ExecutionEngine(graph).execute(run_node)
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator, Mapping
from types import MappingProxyType
from typing import Any

from mission_engine.execution.dag_utils import (
    compute_levels,
    find_cycle_edges,
    find_downstream,
    kahn_order,
)
from mission_engine.execution.errors import (
    CyclicGraphError,
    DuplicateNodeError,
    InvalidGraphError,
    InvalidStateError,
    NodeNotFoundError,
)
from mission_engine.execution.schemas import (
    DEFAULT_MAX_CONCURRENCY,
    TERMINAL_STATUSES,
    CriticalPath,
    GraphProgress,
    NodeStatus,
    TaskNode,
    ValidationResult,
)

logger = logging.getLogger(__name__)

NodeHook = Callable[[TaskNode], None]
NodeErrorHook = Callable[[TaskNode, BaseException], None]


class TaskGraph:
    """DAG of :class:`TaskNode` keyed by id, in insertion order.

    Structure (nodes and edges) may only change before or between calls to
    ``ExecutionEngine.execute``; status transitions happen on the scheduling
    coroutine only.
    """

    def __init__(
        self,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        *,
        on_node_start: NodeHook | None = None,
        on_node_complete: NodeHook | None = None,
        on_node_error: NodeErrorHook | None = None,
    ) -> None:
        self.max_concurrency = max_concurrency
        self.on_node_start = on_node_start
        self.on_node_complete = on_node_complete
        self.on_node_error = on_node_error
        self._nodes: dict[str, TaskNode] = {}

    # ------------------------------------------------------------------
    # Container protocol
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[TaskNode]:
        return iter(self._nodes.values())

    @property
    def nodes(self) -> Mapping[str, TaskNode]:
        return MappingProxyType(self._nodes)

    def get_node(self, node_id: str) -> TaskNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NodeNotFoundError(node_id) from None

    def _deps_by_id(self) -> dict[str, list[str]]:
        return {node_id: node.dependencies for node_id, node in self._nodes.items()}

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_node(
        self,
        node_id: str,
        agent_id: str,
        task: str = "",
        dependencies: Iterable[str] = (),
        metadata: Mapping[str, Any] | None = None,
    ) -> TaskNode:
        if node_id in self._nodes:
            raise DuplicateNodeError(node_id)
        node = TaskNode(
            id=node_id,
            agent_id=agent_id,
            task=task,
            dependencies=list(dependencies),
            metadata=dict(metadata or {}),
        )
        self._nodes[node_id] = node
        return node

    def add_edge(self, from_id: str, to_id: str) -> None:
        """Make ``to_id`` depend on ``from_id``. Idempotent."""
        to_node = self._nodes.get(to_id)
        if to_node is None:
            raise NodeNotFoundError(to_id, role="Target node")
        if from_id not in self._nodes:
            raise NodeNotFoundError(from_id, role="Source node")
        if from_id not in to_node.dependencies:
            to_node.dependencies.append(from_id)

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def validate(self) -> ValidationResult:
        """Check for unknown dependencies, then for cycles. Never raises."""
        errors: list[str] = []
        for node_id, node in self._nodes.items():
            for dep in node.dependencies:
                if dep not in self._nodes:
                    errors.append(f'Node "{node_id}" depends on unknown node "{dep}"')
        if errors:
            return ValidationResult(valid=False, errors=errors)

        for node_id, dep in find_cycle_edges(self._deps_by_id()):
            errors.append(f'Cycle detected: "{node_id}" -> "{dep}"')
        return ValidationResult(valid=not errors, errors=errors)

    def topological_sort(self) -> list[str]:
        order, unresolved = kahn_order(self._deps_by_id())
        if unresolved:
            raise CyclicGraphError(
                f"Cannot topologically sort a graph with cycles (involving: {', '.join(unresolved)})"
            )
        return order

    def get_levels(self) -> list[list[str]]:
        """Group node ids into execution levels (longest-path layering)."""
        if not self._nodes:
            return []
        deps_by_id = self._deps_by_id()
        return compute_levels(deps_by_id, self.topological_sort())

    def get_critical_path(self) -> CriticalPath:
        """Longest dependency chain, measured in nodes."""
        if not self._nodes:
            return CriticalPath(path=[], length=0)
        order = self.topological_sort()
        dist: dict[str, int] = {}
        parent: dict[str, str | None] = {}
        for node_id in order:
            dist[node_id] = 1
            parent[node_id] = None
            for dep in self._nodes[node_id].dependencies:
                if dep in dist and dist[dep] + 1 > dist[node_id]:
                    dist[node_id] = dist[dep] + 1
                    parent[node_id] = dep

        tail = order[0]
        for node_id in order:
            if dist[node_id] > dist[tail]:
                tail = node_id

        path: list[str] = []
        current: str | None = tail
        while current is not None:
            path.append(current)
            current = parent[current]
        path.reverse()
        return CriticalPath(path=path, length=len(path))

    def completed_ids(self) -> set[str]:
        return {n.id for n in self._nodes.values() if n.status == NodeStatus.COMPLETED}

    def get_ready_nodes(self) -> list[TaskNode]:
        completed = self.completed_ids()
        return [n for n in self._nodes.values() if n.is_ready(completed)]

    def get_progress(self) -> GraphProgress:
        counts = {status: 0 for status in NodeStatus}
        for node in self._nodes.values():
            counts[node.status] += 1
        total = len(self._nodes)
        done = counts[NodeStatus.COMPLETED] + counts[NodeStatus.SKIPPED]
        return GraphProgress(
            total=total,
            completed=counts[NodeStatus.COMPLETED],
            running=counts[NodeStatus.RUNNING],
            pending=counts[NodeStatus.PENDING],
            failed=counts[NodeStatus.FAILED],
            skipped=counts[NodeStatus.SKIPPED],
            percent_complete=100 if total == 0 else round(100 * done / total),
        )

    def all_terminal(self) -> bool:
        return all(n.status in TERMINAL_STATUSES for n in self._nodes.values())

    def get_execution_plan(self) -> str:
        """Render levels and the critical path as a human-readable plan."""
        if not self._nodes:
            return "(empty DAG)"
        levels = self.get_levels()
        critical = self.get_critical_path()
        on_path = set(critical.path)
        concurrency = self.max_concurrency or "unlimited"
        lines = [
            f"DAG Execution Plan ({len(self._nodes)} tasks, {len(levels)} levels, "
            f"max concurrency: {concurrency})",
            f"Critical path: {' -> '.join(critical.path)} (length: {critical.length})",
            "",
        ]
        for index, level in enumerate(levels):
            parallel = f" [parallel x{len(level)}]" if len(level) > 1 else ""
            lines.append(f"Level {index}{parallel}:")
            for node_id in level:
                node = self._nodes[node_id]
                after = f" (after: {', '.join(node.dependencies)})" if node.dependencies else ""
                marker = " *" if node_id in on_path else ""
                lines.append(f"  {node_id} [{node.agent_id}]: {node.task}{after}{marker}")
        lines.extend(["", "* = critical path"])
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    def mark_running(self, node_id: str) -> TaskNode:
        node = self.get_node(node_id)
        if node.status != NodeStatus.PENDING:
            raise InvalidStateError(f'Cannot start node "{node_id}" in status {node.status.value}')
        node.status = NodeStatus.RUNNING
        node.start_time = time.time()
        self._fire(self.on_node_start, node)
        return node

    def complete(self, node_id: str, result: Any = None) -> TaskNode:
        node = self.get_node(node_id)
        if node.status != NodeStatus.RUNNING:
            raise InvalidStateError(f'Cannot complete node "{node_id}" in status {node.status.value}')
        node.status = NodeStatus.COMPLETED
        node.end_time = time.time()
        node.result = result
        self._fire(self.on_node_complete, node)
        return node

    def fail(self, node_id: str, error: BaseException | str) -> list[str]:
        """Mark a node failed and skip every pending node downstream of it.

        Returns:
            Ids of the dependents that were skipped by the cascade.
        """
        node = self.get_node(node_id)
        if node.status != NodeStatus.RUNNING:
            raise InvalidStateError(f'Cannot fail node "{node_id}" in status {node.status.value}')
        node.status = NodeStatus.FAILED
        node.end_time = time.time()
        node.result = {"error": str(error) or type(error).__name__}
        if self.on_node_error is not None:
            exc = error if isinstance(error, BaseException) else RuntimeError(error)
            try:
                self.on_node_error(node, exc)
            except Exception:
                logger.exception("on_node_error hook raised for node %s", node_id)
        return self._skip_dependents(node_id, f'Dependency "{node_id}" failed')

    def skip(self, node_id: str, reason: str = "Manually skipped") -> list[str]:
        """Skip a node and, transitively, every pending node that depends on it.

        Returns:
            Ids of every node this call moved to ``skipped`` (the node first).
        """
        node = self.get_node(node_id)
        if node.status == NodeStatus.RUNNING:
            raise InvalidStateError(f'Cannot skip running node "{node_id}"')
        if node.status in TERMINAL_STATUSES:
            return []
        node.status = NodeStatus.SKIPPED
        node.skip_reason = reason
        cascaded = self._skip_dependents(node_id, f'Dependency "{node_id}" was skipped: {reason}')
        return [node_id, *cascaded]

    def _skip_dependents(self, node_id: str, reason: str) -> list[str]:
        skipped: list[str] = []
        for dep_id in find_downstream(node_id, self._deps_by_id()):
            dependent = self._nodes[dep_id]
            if dependent.status == NodeStatus.PENDING:
                dependent.status = NodeStatus.SKIPPED
                dependent.skip_reason = reason
                skipped.append(dep_id)
        return skipped

    def reset(self) -> None:
        for node in self._nodes.values():
            node.status = NodeStatus.PENDING
            node.result = None
            node.start_time = None
            node.end_time = None
            node.skip_reason = None

    def recover_in_flight(self) -> list[str]:
        """Return nodes left ``running`` by a crashed process to ``pending``."""
        recovered: list[str] = []
        for node in self._nodes.values():
            if node.status == NodeStatus.RUNNING:
                node.status = NodeStatus.PENDING
                node.start_time = None
                node.end_time = None
                recovered.append(node.id)
        return recovered

    def _fire(self, hook: NodeHook | None, node: TaskNode) -> None:
        if hook is None:
            return
        try:
            hook(node)
        except Exception:
            logger.exception("Node hook %s raised for node %s", getattr(hook, "__name__", hook), node.id)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_json(self) -> dict[str, Any]:
        return {
            "max_concurrency": self.max_concurrency,
            "nodes": [node.to_json() for node in self._nodes.values()],
        }

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> TaskGraph:
        max_concurrency = data.get("max_concurrency", data.get("maxConcurrency"))
        graph = cls(max_concurrency=DEFAULT_MAX_CONCURRENCY if max_concurrency is None else max_concurrency)
        for raw in data.get("nodes") or []:
            node = graph.add_node(
                raw["id"],
                _first(raw, "agent_id", "agentId", "agent", default=""),
                raw.get("task", ""),
                raw.get("dependencies") or [],
                raw.get("metadata") or {},
            )
            node.status = NodeStatus(raw.get("status") or NodeStatus.PENDING)
            node.result = raw.get("result")
            node.start_time = _first(raw, "start_time", "startTime")
            node.end_time = _first(raw, "end_time", "endTime")
            node.skip_reason = _first(raw, "skip_reason", "skipReason")
        return graph


def _first(raw: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return default


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def create_graph_from_config(config: Mapping[str, Any]) -> TaskGraph:
    """Build and validate a graph from a mission config with a ``dag`` section.

    Raises:
        InvalidGraphError: If the configured nodes do not form a valid DAG.
    """
    dag_config = config.get("dag") or config
    max_concurrency = _first(dag_config, "max_concurrency", "maxConcurrency", default=DEFAULT_MAX_CONCURRENCY)
    graph = TaskGraph(max_concurrency=max_concurrency)
    for entry in dag_config.get("nodes") or []:
        graph.add_node(
            entry["id"],
            _first(entry, "agent_id", "agentId", "agent", "agent_kind", default=""),
            entry.get("task", ""),
            _first(entry, "depends_on", "dependsOn", "dependencies", default=[]),
            entry.get("metadata") or {},
        )
    validation = graph.validate()
    if not validation.valid:
        raise InvalidGraphError(validation.errors, prefix="Invalid DAG config")
    return graph


def create_graph_from_workflow(workflow: Mapping[str, Any]) -> TaskGraph:
    """Convert one of the fixed workflow patterns into an equivalent graph.

    Supported ``type`` values: ``sequential``, ``parallel``, ``fan-out-in``,
    ``generator-critic`` and ``pipeline``.
    """
    graph = TaskGraph(
        max_concurrency=_first(workflow, "max_concurrency", "maxConcurrency", default=DEFAULT_MAX_CONCURRENCY)
    )
    kind = workflow.get("type")
    stages = workflow.get("stages") or {}

    if kind == "sequential":
        previous: str | None = None
        for agent in workflow.get("agents") or []:
            graph.add_node(agent, agent, f"Sequential: {agent}", [previous] if previous else [])
            previous = agent
    elif kind == "parallel":
        for agent in workflow.get("agents") or []:
            graph.add_node(agent, agent, f"Parallel: {agent}")
    elif kind == "fan-out-in":
        fan_out: list[str] = []
        for agent in _stage_agents(stages, "fanOut", "fan_out"):
            graph.add_node(f"fanout-{agent}", agent, f"Fan-out: {agent}")
            fan_out.append(f"fanout-{agent}")
        workers: list[str] = []
        for agent in _stage_agents(stages, "parallel"):
            graph.add_node(f"parallel-{agent}", agent, f"Worker: {agent}", fan_out)
            workers.append(f"parallel-{agent}")
        for agent in _stage_agents(stages, "fanIn", "fan_in"):
            graph.add_node(f"fanin-{agent}", agent, f"Fan-in: {agent}", workers)
    elif kind == "generator-critic":
        generators = _stage_agents(stages, "generator")
        critics = _stage_agents(stages, "critic")
        if generators and critics:
            iterations = _first(workflow, "max_iterations", "maxIterations", default=3)
            previous = None
            for i in range(1, iterations + 1):
                graph.add_node(f"gen-{i}", generators[0], f"Generate iteration {i}", [previous] if previous else [])
                graph.add_node(f"crit-{i}", critics[0], f"Critique iteration {i}", [f"gen-{i}"])
                previous = f"crit-{i}"
    elif kind == "pipeline":
        previous_stage: list[str] = []
        for index, stage in enumerate(workflow.get("pipeline") or []):
            current: list[str] = []
            for agent in stage.get("agents") or []:
                node_id = f"stage{index}-{agent}"
                graph.add_node(
                    node_id, agent, f"Pipeline stage {index} ({stage.get('stage', '')}): {agent}", previous_stage,
                )
                current.append(node_id)
            previous_stage = current
    else:
        raise ValueError(f"Unknown workflow type: {kind}")
    return graph


def _stage_agents(stages: Mapping[str, Any], *keys: str) -> list[str]:
    for key in keys:
        stage = stages.get(key)
        if stage:
            return list(stage.get("agents") or [])
    return []
