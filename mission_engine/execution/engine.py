"""Core DAG execution loop with bounded parallelism and crash-safe checkpoints."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from mission_engine.execution.checkpoint import (
    MARKER_KEY,
    CheckpointStore,
    collect_checkpoint_state,
    restore_checkpoint_state,
)
from mission_engine.execution.errors import InvalidGraphError
from mission_engine.execution.graph import TaskGraph
from mission_engine.execution.schemas import (
    ExecutionConfig,
    ExecutionResult,
    NodeStatus,
    RoundSummary,
    TaskNode,
)
from mission_engine.execution.timing import AdaptiveTimingModel

logger = logging.getLogger(__name__)

TaskExecutor = Callable[[TaskNode], Awaitable[Any]]

UNREACHABLE_REASON = "Unreachable: dependencies can never complete"


async def _invoke(task_executor: TaskExecutor, node: TaskNode) -> Any:
    # Funnel synchronous raises from the executor into the task's exception.
    return await task_executor(node)


class ExecutionEngine:
    """Drains a :class:`TaskGraph` through an injected task executor.

    All graph mutations happen on the coroutine running :meth:`execute`,
    between awaits; executor calls are the only suspension points.
    """

    def __init__(
        self,
        graph: TaskGraph,
        *,
        timing: AdaptiveTimingModel | None = None,
        checkpoint_store: CheckpointStore | None = None,
        external_state_marker: str | None = None,
        note_fn: Callable | None = None,
        dynamic_concurrency: bool = False,
    ) -> None:
        self.graph = graph
        self.timing = timing
        self.checkpoint_store = checkpoint_store
        self.external_state_marker = external_state_marker
        self.note_fn = note_fn
        self.dynamic_concurrency = dynamic_concurrency
        self.round = 0
        self.round_log: list[dict[str, Any]] = []
        self.last_run_round: dict[str, int] = {}
        self.last_failure_details: dict[str, dict[str, Any]] = {}

    @classmethod
    def from_config(
        cls,
        graph: TaskGraph,
        config: ExecutionConfig,
        *,
        external_state_marker: str | None = None,
        note_fn: Callable | None = None,
    ) -> ExecutionEngine:
        return cls(
            graph,
            timing=config.build_timing_model(),
            checkpoint_store=config.build_checkpoint_store(),
            external_state_marker=external_state_marker,
            note_fn=note_fn,
            dynamic_concurrency=config.dynamic_concurrency,
        )

    def _note(self, msg: str, tags: list[str]) -> None:
        if self.note_fn:
            self.note_fn(msg, tags=tags)
        else:
            logger.debug("%s (tags=%s)", msg, tags)

    def concurrency_limit(self) -> int:
        """In-flight cap for the next round; 0 means unlimited."""
        configured = self.graph.max_concurrency or 0
        if self.dynamic_concurrency and self.timing is not None:
            agent_count = len({node.agent_id for node in self.graph})
            return self.timing.get_dynamic_concurrency(configured, agent_count=agent_count)
        return configured

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, task_executor: TaskExecutor) -> ExecutionResult:
        """Run every node in dependency order until the graph is terminal.

        Raises:
            InvalidGraphError: If the graph does not validate. No node is
                started in that case.
        """
        validation = self.graph.validate()
        if not validation.valid:
            raise InvalidGraphError(validation.errors)

        failed = [n.id for n in self.graph if n.status == NodeStatus.FAILED]
        if len(self.graph) == 0:
            return ExecutionResult(success=True, rounds=self.round)

        self._note(
            f"DAG execution starting: {len(self.graph)} nodes, "
            f"{self.graph.get_progress().pending} pending, "
            f"max concurrency {self.graph.max_concurrency or 'unlimited'}",
            tags=["execution", "start"],
        )

        in_flight: dict[asyncio.Task, str] = {}
        try:
            while True:
                limit = self.concurrency_limit()
                summary = RoundSummary(
                    round=self.round + 1, concurrency_limit=limit, started_at=time.time(),
                )

                for node in self.graph.get_ready_nodes():
                    if limit and len(in_flight) >= limit:
                        break
                    self.graph.mark_running(node.id)
                    task = asyncio.ensure_future(_invoke(task_executor, node))
                    in_flight[task] = node.id
                    summary.dispatched.append(node.id)

                if not in_flight:
                    stranded = [n.id for n in self.graph if n.status == NodeStatus.PENDING]
                    if not stranded:
                        break
                    for node_id in stranded:
                        self.graph.skip(node_id, UNREACHABLE_REASON)
                    summary.skipped.extend(stranded)
                    logger.warning("Skipped %d unreachable node(s): %s", len(stranded), stranded)
                    self._finish_round(summary)
                    break

                done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                # Apply in dispatch order so the post-round state is deterministic.
                for task in [t for t in in_flight if t in done]:
                    node_id = in_flight.pop(task)
                    node = self.graph.get_node(node_id)
                    self.last_run_round[node.agent_id] = summary.round
                    error = _task_error(task)
                    if error is None:
                        self.graph.complete(node_id, task.result())
                        summary.completed.append(node_id)
                        continue
                    cascaded = self.graph.fail(node_id, error)
                    failed.append(node_id)
                    summary.failed.append(node_id)
                    summary.skipped.extend(cascaded)
                    self.last_failure_details[node_id] = {
                        "round": summary.round,
                        "agent_id": node.agent_id,
                        "error": str(error),
                        "error_type": type(error).__name__,
                        "skipped_dependents": cascaded,
                    }
                    logger.warning(
                        "Node %s failed: %s (skipped %d dependent(s))", node_id, error, len(cascaded),
                    )

                self._finish_round(summary)
        except BaseException:
            for task in in_flight:
                task.cancel()
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            raise

        progress = self.graph.get_progress()
        result = ExecutionResult(
            success=not failed,
            results={n.id: n.result for n in self.graph if n.status == NodeStatus.COMPLETED},
            failed=failed,
            skipped=[n.id for n in self.graph if n.status == NodeStatus.SKIPPED],
            rounds=self.round,
        )
        self._note(
            f"DAG execution complete: completed={progress.completed}, "
            f"failed={progress.failed}, skipped={progress.skipped}, rounds={self.round}",
            tags=["execution", "complete"],
        )
        return result

    def _finish_round(self, summary: RoundSummary) -> None:
        summary.finished_at = time.time()
        self.round = summary.round
        self.round_log.append(summary.model_dump())
        self._note(
            f"Round {summary.round} complete: dispatched={summary.dispatched}, "
            f"completed={summary.completed}, failed={summary.failed}, skipped={summary.skipped}",
            tags=["execution", "round", "complete"],
        )
        self.checkpoint()

    # ------------------------------------------------------------------
    # Checkpointing
    # ------------------------------------------------------------------

    def _live_state(self) -> dict[str, Any]:
        live: dict[str, Any] = {
            "round_log": self.round_log,
            "last_run_round": self.last_run_round,
            "last_failure_details": self.last_failure_details,
        }
        if self.timing is not None:
            live.update(self.timing.state_containers())
        return live

    def collect_state(self) -> dict[str, Any]:
        """Snapshot engine state for :meth:`CheckpointStore.write_checkpoint`."""
        return collect_checkpoint_state({
            "round": self.round,
            "graph": self.graph.to_json(),
            **self._live_state(),
            MARKER_KEY: self.external_state_marker,
        })

    def checkpoint(self) -> bool:
        if self.checkpoint_store is None:
            return False
        written = self.checkpoint_store.write_checkpoint(self.collect_state())
        if written:
            self._note(f"Checkpoint saved: round={self.round}", tags=["execution", "checkpoint"])
        return written

    def resume(self, checkpoint: dict[str, Any]) -> list[str]:
        """Restore a loaded checkpoint into this engine and its graph.

        Nodes that were running when the checkpoint was taken are returned to
        pending so they run again.

        Returns:
            Ids of the nodes re-queued that way.
        """
        for raw in (checkpoint.get("graph") or {}).get("nodes") or []:
            node = self.graph.nodes.get(raw.get("id"))
            if node is None:
                logger.warning("Checkpoint node %s not in graph; ignoring", raw.get("id"))
                continue
            node.status = NodeStatus(raw.get("status") or NodeStatus.PENDING)
            node.result = raw.get("result")
            node.start_time = raw.get("start_time")
            node.end_time = raw.get("end_time")
            node.skip_reason = raw.get("skip_reason")

        restore_checkpoint_state(checkpoint, self._live_state())
        self.round = int(checkpoint.get("round") or 0)
        requeued = self.graph.recover_in_flight()
        progress = self.graph.get_progress()
        self._note(
            f"Resumed from checkpoint: round={self.round}, completed={progress.completed}, "
            f"failed={progress.failed}, requeued={requeued}",
            tags=["execution", "resume"],
        )
        return requeued


def _task_error(task: asyncio.Task) -> BaseException | None:
    if task.cancelled():
        return asyncio.CancelledError("task executor was cancelled")
    return task.exception()
