# priorities/tests/test_dependencies.py
"""
Dependency Resolver Tests
=========================

Kahn ordering of candidate tasks: edge filtering, stable tie-breaks,
cycle tolerance and idempotence.
"""

from __future__ import annotations

from typing import List, Sequence, Tuple

from django.test import SimpleTestCase

from priorities.engine.contracts import DependencyEdge, RelationshipType
from priorities.engine.dependencies import (
    PartiallyResolved,
    Resolved,
    find_blocked_tasks,
    resolve_dependencies,
    sanitize_order,
)
from priorities.engine.exceptions import CycleDetected


def edges(*pairs: Tuple[str, str]) -> List[DependencyEdge]:
    return [DependencyEdge(source, target) for source, target in pairs]


class TestSanitizeOrder(SimpleTestCase):
    def assertRespectsEdges(self, order: Sequence[str], edge_list: Sequence[DependencyEdge]) -> None:
        position = {task_id: index for index, task_id in enumerate(order)}
        for edge in edge_list:
            self.assertLess(
                position[edge.source_task_id],
                position[edge.target_task_id],
                f"{edge.source_task_id} must precede {edge.target_task_id} in {order}",
            )

    def test_without_edges_only_duplicates_are_removed(self) -> None:
        self.assertEqual(sanitize_order(["b", "a", "b", "c"], []), ["b", "a", "c"])

    def test_chain_is_reordered(self) -> None:
        chain = edges(("a", "b"), ("b", "c"))
        result = sanitize_order(["c", "b", "a"], chain)
        self.assertEqual(result, ["a", "b", "c"])
        self.assertRespectsEdges(result, chain)

    def test_ready_queue_keeps_original_index_order(self) -> None:
        result = sanitize_order(["x", "a", "y", "b"], edges(("b", "a")))
        self.assertEqual(result, ["x", "y", "b", "a"])

    def test_all_relationship_types_order_tasks(self) -> None:
        edge_list = [
            DependencyEdge("b", "a", relationship_type=RelationshipType.BLOCKS),
            DependencyEdge("c", "b", relationship_type=RelationshipType.RELATED),
        ]
        self.assertEqual(sanitize_order(["a", "b", "c"], edge_list), ["c", "b", "a"])

    def test_self_unknown_and_duplicate_edges_are_ignored(self) -> None:
        edge_list = edges(("a", "a"), ("a", "zzz"), ("zzz", "b"), ("b", "a"), ("b", "a"))

        result = resolve_dependencies(["a", "b"], edge_list)

        self.assertIsInstance(result, Resolved)
        self.assertEqual(result.order, ("b", "a"))
        self.assertFalse(result.has_cycle)

    def test_cycle_remainder_is_appended_in_original_order(self) -> None:
        edge_list = edges(("a", "b"), ("b", "a"), ("c", "d"))

        result = resolve_dependencies(["a", "b", "c", "d"], edge_list)

        self.assertIsInstance(result, PartiallyResolved)
        self.assertEqual(result.order, ("c", "d", "a", "b"))
        self.assertEqual(result.remainder, ("a", "b"))
        self.assertIsInstance(result.cycle, CycleDetected)
        self.assertEqual(result.cycle.remainder, ("a", "b"))

    def test_cycle_never_raises_and_keeps_every_task(self) -> None:
        edge_list = edges(("a", "b"), ("b", "c"), ("c", "a"))
        result = sanitize_order(["c", "a", "b", "d"], edge_list)
        self.assertEqual(sorted(result), ["a", "b", "c", "d"])
        self.assertEqual(result, ["d", "c", "a", "b"])

    def test_acyclic_edges_are_respected(self) -> None:
        edge_list = edges(("e", "a"), ("d", "a"), ("c", "b"), ("a", "b"), ("f", "e"))
        result = sanitize_order(["a", "b", "c", "d", "e", "f"], edge_list)
        self.assertRespectsEdges(result, edge_list)
        self.assertEqual(len(result), 6)

    def test_sanitize_is_idempotent(self) -> None:
        cases = [
            (["a", "b", "c"], []),
            (["c", "b", "a"], edges(("a", "b"), ("b", "c"))),
            (["x", "a", "y", "b"], edges(("b", "a"))),
            (["a", "b", "c", "d"], edges(("a", "b"), ("b", "a"), ("c", "d"))),
            (["a", "b", "c", "d", "e", "f"], edges(("e", "a"), ("d", "a"), ("c", "b"), ("a", "b"))),
        ]
        for order, edge_list in cases:
            once = sanitize_order(order, edge_list)
            self.assertEqual(sanitize_order(once, edge_list), once, order)


class TestFindBlockedTasks(SimpleTestCase):
    def test_lists_unfinished_prerequisites(self) -> None:
        edge_list = edges(("a", "c"), ("b", "c"), ("c", "d"))
        blocked = find_blocked_tasks(["a", "b", "c", "d"], edge_list, finished_ids={"a"})
        self.assertEqual(blocked, {"c": ["b"], "d": ["c"]})

    def test_nothing_blocked_once_prerequisites_finish(self) -> None:
        edge_list = edges(("a", "b"))
        self.assertEqual(find_blocked_tasks(["a", "b"], edge_list, finished_ids=["a"]), {})

    def test_ignores_edges_outside_the_order(self) -> None:
        edge_list = edges(("ghost", "a"), ("a", "a"))
        self.assertEqual(find_blocked_tasks(["a"], edge_list), {})
