"""Pure DAG manipulation helpers for the execution engine.

Every helper takes ``deps_by_id``: an insertion-ordered mapping of node id to
the list of ids it depends on. Nothing here mutates its input.
"""

from __future__ import annotations

from collections import defaultdict, deque
from collections.abc import Mapping, Sequence

_WHITE, _GRAY, _BLACK = 0, 1, 2


def build_dependents(deps_by_id: Mapping[str, Sequence[str]]) -> dict[str, list[str]]:
    """Invert the dependency relation: id -> ids that depend on it."""
    dependents: dict[str, list[str]] = defaultdict(list)
    for name, deps in deps_by_id.items():
        for dep in deps:
            if name not in dependents[dep]:
                dependents[dep].append(name)
    return dependents


def kahn_order(deps_by_id: Mapping[str, Sequence[str]]) -> tuple[list[str], list[str]]:
    """Topological order via Kahn's algorithm.

    Dependencies on ids outside ``deps_by_id`` are ignored. Ties are broken by
    insertion order so the result is deterministic.

    Returns:
        ``(order, unresolved)`` where ``unresolved`` lists the ids that could not
        be ordered because they sit on or behind a cycle.
    """
    in_degree: dict[str, int] = {}
    for name, deps in deps_by_id.items():
        in_degree[name] = len({d for d in deps if d in deps_by_id})
    dependents = build_dependents(deps_by_id)

    queue: deque[str] = deque(n for n, d in in_degree.items() if d == 0)
    order: list[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for dep_name in dependents.get(current, []):
            in_degree[dep_name] -= 1
            if in_degree[dep_name] == 0:
                queue.append(dep_name)

    unresolved = [n for n, d in in_degree.items() if d > 0]
    return order, unresolved


def compute_levels(deps_by_id: Mapping[str, Sequence[str]], order: Sequence[str]) -> list[list[str]]:
    """Longest-path layering over a precomputed topological ``order``.

    A node with no dependencies sits on level 0; any other node sits one level
    below the deepest of its dependencies.
    """
    level_of: dict[str, int] = {}
    for name in order:
        dep_levels = [level_of[d] for d in deps_by_id[name] if d in level_of]
        level_of[name] = (max(dep_levels) + 1) if dep_levels else 0

    if not level_of:
        return []
    levels: list[list[str]] = [[] for _ in range(max(level_of.values()) + 1)]
    for name in deps_by_id:
        if name in level_of:
            levels[level_of[name]].append(name)
    return [level for level in levels if level]


def find_downstream(node_id: str, deps_by_id: Mapping[str, Sequence[str]]) -> list[str]:
    """Find all ids transitively dependent on ``node_id``.

    Returns:
        Dependent ids in breadth-first order. Does NOT include ``node_id`` itself.
    """
    dependents = build_dependents(deps_by_id)

    visited: set[str] = set()
    found: list[str] = []
    queue = deque(dependents.get(node_id, []))
    while queue:
        name = queue.popleft()
        if name in visited or name == node_id:
            continue
        visited.add(name)
        found.append(name)
        queue.extend(dependents.get(name, []))
    return found


def find_cycle_edges(deps_by_id: Mapping[str, Sequence[str]]) -> list[tuple[str, str]]:
    """Return every back edge ``(node, dep)`` found by a white/gray/black DFS.

    The walk uses an explicit stack so deep graphs never hit the recursion
    limit. A back edge means ``node`` depends (transitively) on itself via
    ``dep``. Dependencies on unknown ids are ignored.
    """
    color: dict[str, int] = {name: _WHITE for name in deps_by_id}
    back_edges: list[tuple[str, str]] = []

    for root in deps_by_id:
        if color[root] != _WHITE:
            continue
        color[root] = _GRAY
        stack: list[tuple[str, int]] = [(root, 0)]
        while stack:
            name, idx = stack[-1]
            deps = deps_by_id[name]
            if idx >= len(deps):
                color[name] = _BLACK
                stack.pop()
                continue
            stack[-1] = (name, idx + 1)
            dep = deps[idx]
            state = color.get(dep)
            if state is None:
                continue
            if state == _GRAY:
                back_edges.append((name, dep))
            elif state == _WHITE:
                color[dep] = _GRAY
                stack.append((dep, 0))

    return back_edges
