import random
import threading
import unittest
from collections import deque

from docgraph.documents import connect
from docgraph.errors import NotFound
from docgraph.graph.models import EdgeEvidence
from docgraph.graph.store import SqliteGraphStore
from docgraph.graph.traverse import (
    Deadline,
    GraphPath,
    PathNotFound,
    TraversalEngine,
    connected_components,
)


class CountingStore:
    """Wraps a store and counts adjacency lookups."""

    def __init__(self, inner):
        self.inner = inner
        self.out_edge_calls = 0

    def out_edges(self, node_ids):
        self.out_edge_calls += 1
        return self.inner.out_edges(node_ids)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class TraversalTestCase(unittest.TestCase):
    def setUp(self):
        self.store = SqliteGraphStore(connect(":memory:"))
        self.ids = {}

    def tearDown(self):
        self.store.close()

    def node(self, name, project="p1"):
        if name not in self.ids:
            self.ids[name] = self.store.upsert_node(project, "entity", name).node_id
        return self.ids[name]

    def edge(self, a, b, rel="links", weight=1.0):
        return self.store.upsert_edge("p1", self.node(a), self.node(b), rel, EdgeEvidence(weight=weight))


class TestNeighbors(TraversalTestCase):
    def test_chain_depths(self):
        self.edge("A", "B")
        self.edge("B", "C")
        engine = TraversalEngine(self.store)

        one = engine.get_neighbors(self.node("A"), 1)
        self.assertEqual([(n.node.name, n.distance) for n in one], [("B", 1)])

        two = engine.get_neighbors(self.node("A"), 2)
        self.assertEqual([(n.node.name, n.distance) for n in two], [("B", 1), ("C", 2)])
        self.assertFalse(two.truncated)

    def test_isolated_node_and_depth_zero(self):
        engine = TraversalEngine(self.store)
        self.assertEqual(len(engine.get_neighbors(self.node("Lonely"), 3)), 0)
        self.edge("A", "B")
        self.assertEqual(len(engine.get_neighbors(self.node("A"), 0)), 0)

    def test_directed_only(self):
        self.edge("A", "B")
        engine = TraversalEngine(self.store)
        self.assertEqual(len(engine.get_neighbors(self.node("B"), 2)), 0)

    def test_each_neighbor_once_at_min_distance_and_start_excluded(self):
        self.edge("A", "B")
        self.edge("A", "C")
        self.edge("B", "C")
        self.edge("C", "A")
        engine = TraversalEngine(self.store)
        res = engine.get_neighbors(self.node("A"), 3)
        self.assertEqual(sorted((n.node.name, n.distance) for n in res), [("B", 1), ("C", 1)])

    def test_ordering_by_distance_weight_then_edge_id(self):
        self.edge("A", "B", weight=1.0)
        self.edge("A", "C", weight=5.0)
        self.edge("A", "D", weight=1.0)
        self.edge("C", "E", weight=1.0)
        engine = TraversalEngine(self.store)
        res = engine.get_neighbors(self.node("A"), 2)
        self.assertEqual([n.node.name for n in res], ["C", "B", "D", "E"])
        again = engine.get_neighbors(self.node("A"), 2)
        self.assertEqual([n.edge.edge_id for n in res], [n.edge.edge_id for n in again])

    def test_invalid_depth(self):
        engine = TraversalEngine(self.store)
        a = self.node("A")
        with self.assertRaises(ValueError):
            engine.get_neighbors(a, -1)
        with self.assertRaises(ValueError):
            engine.get_neighbors(a, 1.5)

    def test_missing_node_and_project_scope(self):
        engine = TraversalEngine(self.store)
        with self.assertRaises(NotFound):
            engine.get_neighbors(424242, 1)
        with self.assertRaises(NotFound):
            engine.get_neighbors(self.node("A"), 1, project_id="other")

    def test_one_adjacency_query_per_level(self):
        for i in range(10):
            self.edge("Root", f"L1-{i}")
            self.edge(f"L1-{i}", f"L2-{i}")
        counting = CountingStore(self.store)
        res = TraversalEngine(counting).get_neighbors(self.node("Root"), 2)
        self.assertEqual(len(res), 20)
        self.assertEqual(counting.out_edge_calls, 2)

    def test_budget_truncates_with_partial_results(self):
        for i in range(10):
            self.edge("Hub", f"Spoke-{i}")
        engine = TraversalEngine(self.store, visited_budget=4)
        res = engine.get_neighbors(self.node("Hub"), 1)
        self.assertTrue(res.truncated)
        self.assertEqual(len(res), 3)

    def test_cancelled_deadline_truncates(self):
        self.edge("A", "B")
        cancel = threading.Event()
        cancel.set()
        res = TraversalEngine(self.store).get_neighbors(self.node("A"), 2, deadline=Deadline(cancel_event=cancel))
        self.assertTrue(res.truncated)
        self.assertEqual(len(res), 0)


def _reference_bfs(adj, start, end, max_depth):
    dist = {start: 0}
    q = deque([start])
    while q:
        cur = q.popleft()
        if cur == end:
            return dist[cur]
        if dist[cur] >= max_depth:
            continue
        for nxt in adj.get(cur, ()):
            if nxt not in dist:
                dist[nxt] = dist[cur] + 1
                q.append(nxt)
    return None


class TestFindPath(TraversalTestCase):
    def test_chain_path(self):
        self.edge("A", "B", rel="funds")
        self.edge("B", "C", rel="owns")
        path = TraversalEngine(self.store).find_path(self.node("A"), self.node("C"))
        self.assertIsInstance(path, GraphPath)
        self.assertEqual([n.name for n in path.nodes], ["A", "B", "C"])
        self.assertEqual([e.relationship_type for e in path.edges], ["funds", "owns"])
        self.assertEqual(path.length, 2)

    def test_path_to_self(self):
        path = TraversalEngine(self.store).find_path(self.node("A"), self.node("A"))
        self.assertEqual(path.node_ids, [self.node("A")])
        self.assertEqual(path.length, 0)

    def test_unreachable_is_a_value(self):
        self.edge("A", "B")
        res = TraversalEngine(self.store).find_path(self.node("B"), self.node("A"))
        self.assertIsInstance(res, PathNotFound)
        self.assertFalse(res)
        self.assertEqual(res.reason, "unreachable")

    def test_max_depth_counts_hops(self):
        for a, b in (("A", "B"), ("B", "C"), ("C", "D")):
            self.edge(a, b)
        engine = TraversalEngine(self.store)
        self.assertFalse(engine.find_path(self.node("A"), self.node("D"), max_depth=2))
        self.assertEqual(engine.find_path(self.node("A"), self.node("D"), max_depth=3).length, 3)

    def test_cycles_terminate(self):
        self.edge("A", "B")
        self.edge("B", "A")
        self.edge("B", "C")
        self.edge("C", "A")
        self.node("Z")
        res = TraversalEngine(self.store).find_path(self.node("A"), self.node("Z"), max_depth=10)
        self.assertEqual(res.reason, "unreachable")

    def test_budget_and_cancel_reasons(self):
        for i in range(6):
            self.edge("S", f"M{i}")
        self.edge("M5", "T")
        res = TraversalEngine(self.store, visited_budget=2).find_path(self.node("S"), self.node("T"))
        self.assertEqual(res.reason, "budget")

        cancel = threading.Event()
        cancel.set()
        res = TraversalEngine(self.store).find_path(
            self.node("S"), self.node("T"), deadline=Deadline(cancel_event=cancel)
        )
        self.assertEqual(res.reason, "cancelled")

    def test_length_matches_reference_bfs_on_random_graphs(self):
        rng = random.Random(7)
        names = [f"N{i}" for i in range(25)]
        adj = {}
        for _ in range(60):
            a, b = rng.sample(names, 2)
            self.edge(a, b)
            adj.setdefault(self.node(a), set()).add(self.node(b))

        engine = TraversalEngine(self.store)
        for _ in range(40):
            a, b = rng.sample(names, 2)
            expected = _reference_bfs(adj, self.node(a), self.node(b), 5)
            got = engine.find_path(self.node(a), self.node(b), max_depth=5)
            if expected is None:
                self.assertFalse(got)
            else:
                self.assertEqual(got.length, expected)
                # Consecutive hops really are stored edges.
                for e, (u, v) in zip(got.edges, zip(got.node_ids, got.node_ids[1:])):
                    self.assertEqual((e.source_node_id, e.target_node_id), (u, v))


class TestComponents(unittest.TestCase):
    def test_undirected_components(self):
        class E:
            def __init__(self, s, t):
                self.source_node_id, self.target_node_id = s, t

        label = connected_components([1, 2, 3, 4, 5], [E(2, 1), E(3, 2), E(5, 4)])
        self.assertEqual(label, {1: 1, 2: 1, 3: 1, 4: 4, 5: 4})


if __name__ == "__main__":
    unittest.main()
