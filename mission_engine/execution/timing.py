"""Adaptive timing: runtime history, timeouts, concurrency and session tracking.

All state lives in plain dicts/lists owned by one :class:`AdaptiveTimingModel`
instance so it can be checkpointed as JSON and restored in place.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from mission_engine.execution.schemas import (
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_MIN_TIMEOUT_MS,
    AgentDescriptor,
    resolve_timeout_ms,
)

logger = logging.getLogger(__name__)

RUNTIME_HISTORY_SIZE = 5
SPEED_RATIO_THRESHOLD = 3.0
STALE_EMPTY_ROUNDS_THRESHOLD = 5
STALE_SESSION_AGE_ROUNDS = 10


def _new_effectiveness() -> dict[str, Any]:
    return {
        "tasks_completed": 0,
        "total_items": 0,
        "total_cost": 0.0,
        "total_seconds": 0.0,
        "rounds": 0,
        "total_continuations": 0,
    }


class AdaptiveTimingModel:
    """Per-agent-kind runtime statistics consulted by executors and the engine."""

    def __init__(
        self,
        default_timeout_ms: int = DEFAULT_AGENT_TIMEOUT_SECONDS * 1000,
        *,
        min_timeout_ms: int = DEFAULT_MIN_TIMEOUT_MS,
        history_size: int = RUNTIME_HISTORY_SIZE,
    ) -> None:
        self.default_timeout_ms = default_timeout_ms
        self.min_timeout_ms = min_timeout_ms
        self.history_size = history_size
        # agent kind -> elapsed seconds of the last ``history_size`` runs
        self.runtime_history: dict[str, list[float]] = {}
        self.effectiveness: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, dict[str, Any]] = {}
        self.invalidation_counts: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Runtime history and timeouts
    # ------------------------------------------------------------------

    def record_agent_runtime(self, agent_kind: str, elapsed_seconds: float) -> None:
        history = self.runtime_history.setdefault(agent_kind, [])
        history.append(elapsed_seconds)
        if len(history) > self.history_size:
            del history[: len(history) - self.history_size]

    def average_runtime(self, agent_kind: str) -> float | None:
        history = self.runtime_history.get(agent_kind)
        if not history:
            return None
        return sum(history) / len(history)

    def get_adaptive_timeout(self, agent: AgentDescriptor | str) -> int:
        """Timeout in milliseconds for the next run of ``agent``.

        Without history this is the applicable configured timeout (the agent
        override, else the global default). With history it is twice the
        average runtime, never below ``max(25% of the configured timeout,
        min_timeout_ms)`` and never above the configured timeout.
        """
        if isinstance(agent, str):
            agent = AgentDescriptor(id=agent)
        configured = resolve_timeout_ms(agent, self.default_timeout_ms)
        avg_seconds = self.average_runtime(agent.id)
        if avg_seconds is None:
            return configured

        floor = max(configured * 0.25, self.min_timeout_ms)
        adapted = max(2 * avg_seconds * 1000, floor)
        return int(min(adapted, configured))

    def get_dynamic_concurrency(self, configured: int, *, agent_count: int | None = None) -> int:
        """Suggest a concurrency limit from the observed speed mix.

        When the slowest agent kind averages at least 3x the fastest, one extra
        slot keeps fast agents from queueing behind slow ones. The extra slot is
        only granted while ``configured`` is below ``agent_count`` (default:
        number of kinds observed); the result never drops below ``configured``.
        """
        if configured <= 0:
            return configured  # unlimited

        averages = [sum(h) / len(h) for h in self.runtime_history.values() if h]
        if len(averages) < 2:
            return configured
        fastest, slowest = min(averages), max(averages)
        if fastest <= 0 or slowest < fastest * SPEED_RATIO_THRESHOLD:
            return configured

        cap = agent_count if agent_count is not None else len(averages)
        bumped = max(min(configured + 1, cap), configured)
        if bumped != configured:
            logger.info(
                "Dynamic concurrency: %d -> %d (speed ratio %.1fx)",
                configured, bumped, slowest / fastest,
            )
        return bumped

    # ------------------------------------------------------------------
    # Effectiveness
    # ------------------------------------------------------------------

    def record_agent_effectiveness(
        self,
        agent_kind: str,
        *,
        items_produced: int = 0,
        cost: float = 0.0,
        elapsed_seconds: float = 0.0,
        is_empty_work: bool = False,
    ) -> dict[str, Any]:
        eff = self.effectiveness.setdefault(agent_kind, _new_effectiveness())
        eff["rounds"] += 1
        eff["total_seconds"] += elapsed_seconds or 0.0
        eff["total_items"] += items_produced or 0
        eff["total_cost"] += cost or 0.0
        if not is_empty_work and items_produced > 0:
            eff["tasks_completed"] += 1
        return eff

    # ------------------------------------------------------------------
    # Session continuity
    # ------------------------------------------------------------------

    def record_session(self, agent_kind: str, session_id: str, round_number: int, *, resumed: bool = False) -> None:
        session = self.sessions.setdefault(
            agent_kind,
            {"session_id": session_id, "last_round": round_number, "resume_count": 0, "fresh_count": 0},
        )
        session["session_id"] = session_id
        session["last_round"] = round_number
        if resumed:
            session["resume_count"] += 1
        else:
            session["fresh_count"] += 1

    def get_session(self, agent_kind: str) -> str | None:
        session = self.sessions.get(agent_kind)
        return session["session_id"] if session else None

    def record_continuation(self, agent_kind: str, chain_length: int) -> None:
        """Track how often an agent chains extra sessions to finish one task."""
        session = self.sessions.get(agent_kind)
        if session is not None:
            session["last_continuations"] = chain_length
            session["total_continuations"] = session.get("total_continuations", 0) + chain_length
        eff = self.effectiveness.setdefault(agent_kind, _new_effectiveness())
        eff["total_continuations"] = eff.get("total_continuations", 0) + chain_length

    def invalidate_agent_session(self, agent_kind: str, reason: str = "") -> bool:
        """Drop the cached session so the agent starts fresh next run."""
        if agent_kind not in self.sessions:
            return False
        del self.sessions[agent_kind]
        self.invalidation_counts[agent_kind] = self.invalidation_counts.get(agent_kind, 0) + 1
        logger.info("Session invalidated for %s (%s)", agent_kind, reason or "requested")
        return True

    def invalidate_stale_sessions(
        self,
        current_round: int,
        consecutive_empty_rounds: Mapping[str, int],
    ) -> list[str]:
        """Invalidate sessions that went unproductive or grew too old.

        Returns:
            Agent kinds whose sessions were dropped.
        """
        dropped: list[str] = []
        for agent_kind, session in list(self.sessions.items()):
            empty = consecutive_empty_rounds.get(agent_kind, 0)
            if empty >= STALE_EMPTY_ROUNDS_THRESHOLD:
                self.invalidate_agent_session(agent_kind, f"stale: {empty} consecutive empty rounds")
                dropped.append(agent_kind)
                continue
            age = current_round - (session.get("last_round") or 0)
            if age >= STALE_SESSION_AGE_ROUNDS:
                self.invalidate_agent_session(
                    agent_kind,
                    f"stale: session {age} rounds old (last active round {session.get('last_round')})",
                )
                dropped.append(agent_kind)
        return dropped

    # ------------------------------------------------------------------
    # Checkpoint integration
    # ------------------------------------------------------------------

    def state_containers(self) -> dict[str, Any]:
        """Live containers keyed the way checkpoints store them."""
        return {
            "agent_runtime_history": self.runtime_history,
            "agent_effectiveness": self.effectiveness,
            "agent_sessions": self.sessions,
            "session_invalidations": self.invalidation_counts,
        }
