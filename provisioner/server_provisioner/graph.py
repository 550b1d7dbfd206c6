from __future__ import annotations

import heapq
from typing import Dict, Iterable, List, Optional, Set

from .errors import CycleDetected, DuplicateStep, UnknownDependency
from .step import Step


class DependencyGraph:
    """
    Immutable dependency graph over a fixed set of steps.

    Edges point from a prerequisite to its dependents. The topological order
    is computed once with Kahn's algorithm; among ready steps the one declared
    first wins, so the same step set always yields the same order.
    """

    def __init__(self, steps: List[Step], adj: Dict[str, List[str]], order: List[str]):
        self._steps = {s.id: s for s in steps}
        self._adj = adj
        self._order = order

    @classmethod
    def build(cls, steps: Iterable[Step]) -> "DependencyGraph":
        steps = list(steps)

        seen: Set[str] = set()
        for s in steps:
            if s.id in seen:
                raise DuplicateStep(s.id)
            seen.add(s.id)

        index = {s.id: i for i, s in enumerate(steps)}
        adj: Dict[str, List[str]] = {s.id: [] for s in steps}   # dep -> dependents
        indeg: Dict[str, int] = {s.id: 0 for s in steps}

        for s in steps:
            for dep in dict.fromkeys(s.depends_on):
                if dep not in index:
                    raise UnknownDependency(s.id, dep)
                adj[dep].append(s.id)
                indeg[s.id] += 1

        heap = [index[sid] for sid, d in indeg.items() if d == 0]
        heapq.heapify(heap)
        order: List[str] = []
        while heap:
            sid = steps[heapq.heappop(heap)].id
            order.append(sid)
            for child in adj[sid]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    heapq.heappush(heap, index[child])

        if len(order) != len(steps):
            stuck = [s for s in steps if indeg[s.id] > 0]
            raise CycleDetected(_find_cycle(stuck))

        return cls(steps, adj, order)

    def order(self) -> List[str]:
        return list(self._order)

    def step(self, step_id: str) -> Step:
        return self._steps[step_id]

    def __contains__(self, step_id: str) -> bool:
        return step_id in self._steps

    def __len__(self) -> int:
        return len(self._steps)

    def dependencies_of(self, step_id: str) -> tuple:
        return self._steps[step_id].depends_on

    def dependents_of(self, step_id: str) -> Set[str]:
        """All steps that transitively depend on `step_id`."""
        out: Set[str] = set()
        stack = list(self._adj[step_id])
        while stack:
            sid = stack.pop()
            if sid in out:
                continue
            out.add(sid)
            stack.extend(self._adj[sid])
        return out


def _find_cycle(stuck: List[Step]) -> List[str]:
    """Return one cycle among the steps Kahn's algorithm could not release, e.g. [a, b, a]."""
    deps = {s.id: [d for d in s.depends_on] for s in stuck}
    state: Dict[str, int] = {}  # 1 on stack, 2 done
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        state[node] = 1
        path.append(node)
        for nxt in deps.get(node, ()):
            if nxt not in deps:
                continue
            if state.get(nxt) == 1:
                cycle = path[path.index(nxt):] + [nxt]
                # report in prerequisite -> dependent direction
                return list(reversed(cycle))
            if state.get(nxt) is None:
                found = visit(nxt)
                if found:
                    return found
        path.pop()
        state[node] = 2
        return None

    for s in stuck:
        if state.get(s.id) is None:
            found = visit(s.id)
            if found:
                return found
    return [s.id for s in stuck]
