# priorities/engine/dependencies.py
"""
Dependency Resolver
===================

Turns a candidate order plus directed "source must precede target" edges into
a topologically valid order with Kahn's algorithm.

- Duplicate ids keep their first occurrence.
- Self-edges, duplicate edges and edges with an endpoint outside the
  candidate order are ignored.
- Ties in the ready queue are broken by original index, so the output is
  deterministic and an already-valid order is returned unchanged.
- Tasks caught in a cycle are appended in their original relative order.
  Cycles are tolerated, not rejected: resolve_dependencies() reports them
  as a PartiallyResolved result carrying a CycleDetected.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Set, Tuple, Union

from .contracts import DependencyEdge
from .exceptions import CycleDetected

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolved:
    order: Tuple[str, ...]

    @property
    def has_cycle(self) -> bool:
        return False


@dataclass(frozen=True)
class PartiallyResolved:
    order: Tuple[str, ...]
    remainder: Tuple[str, ...]
    cycle: CycleDetected

    @property
    def has_cycle(self) -> bool:
        return True


Resolution = Union[Resolved, PartiallyResolved]


def _unique(ids: Iterable[str]) -> List[str]:
    seen: Set[str] = set()
    unique: List[str] = []
    for task_id in ids:
        if task_id not in seen:
            seen.add(task_id)
            unique.append(task_id)
    return unique


def _kahn(order: List[str], edges: Sequence[DependencyEdge]) -> Tuple[List[str], List[str]]:
    index = {task_id: position for position, task_id in enumerate(order)}
    adjacency: Dict[str, List[str]] = {}
    indegree = {task_id: 0 for task_id in order}
    seen_edges: Set[Tuple[str, str]] = set()

    for edge in edges:
        source, target = edge.source_task_id, edge.target_task_id
        if source not in index or target not in index or source == target:
            continue
        if (source, target) in seen_edges:
            continue
        seen_edges.add((source, target))
        adjacency.setdefault(source, []).append(target)
        indegree[target] += 1

    ready = [task_id for task_id in order if indegree[task_id] == 0]
    result: List[str] = []

    while ready:
        current = ready.pop(0)
        result.append(current)
        released = False
        for neighbour in adjacency.get(current, ()):
            indegree[neighbour] -= 1
            if indegree[neighbour] == 0:
                ready.append(neighbour)
                released = True
        if released:
            ready.sort(key=index.__getitem__)

    placed = set(result)
    remainder = [task_id for task_id in order if task_id not in placed]
    return result, remainder


def resolve_dependencies(initial_order: Sequence[str], edges: Sequence[DependencyEdge]) -> Resolution:
    order = _unique(initial_order)
    if not edges:
        return Resolved(order=tuple(order))

    result, remainder = _kahn(order, edges)
    if not remainder:
        return Resolved(order=tuple(result))

    cycle = CycleDetected(remainder)
    logger.warning(
        f"DependencyResolver: cycle among {len(remainder)} task(s) {remainder}; "
        f"appending them in original order"
    )
    return PartiallyResolved(order=tuple(result + remainder), remainder=tuple(remainder), cycle=cycle)


def sanitize_order(initial_order: Sequence[str], edges: Sequence[DependencyEdge]) -> List[str]:
    """Dependency-respecting order of the candidate ids. Never raises on cycles."""
    return list(resolve_dependencies(initial_order, edges).order)


def find_blocked_tasks(
    order: Sequence[str],
    edges: Sequence[DependencyEdge],
    finished_ids: Iterable[str] = (),
) -> Dict[str, List[str]]:
    """
    Unfinished prerequisites still blocking each task.

    Only tasks with at least one blocker appear in the result, in the given
    order; blockers are listed in the same order.
    """
    finished = set(finished_ids)
    position = {task_id: index for index, task_id in enumerate(_unique(order))}
    blockers: Dict[str, Set[str]] = {}

    for edge in edges:
        source, target = edge.source_task_id, edge.target_task_id
        if source == target or source not in position or target not in position:
            continue
        if source in finished or target in finished:
            continue
        blockers.setdefault(target, set()).add(source)

    return {
        task_id: sorted(blockers[task_id], key=position.__getitem__)
        for task_id in sorted(blockers, key=position.__getitem__)
    }
