"""Breadth-first traversal over the stored graph.

Two modes with different direction semantics:

- directed (`TraversalEngine.get_neighbors`, `TraversalEngine.find_path`):
  follows outgoing edges only, one batched adjacency lookup per BFS level;
- undirected (`connected_components`, `undirected_adjacency`): treats every
  edge as a two-way link, used to reason about clusters.

A truncated neighbor expansion and a missing path are results, not errors.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Iterable

from ..errors import NotFound
from .models import Edge, Node
from .store import GraphStore


DEFAULT_VISITED_BUDGET = 5000


class Deadline:
    """Caller-supplied cancellation: a time limit, an event, or both."""

    def __init__(self, timeout_s: float | None = None, cancel_event: threading.Event | None = None):
        self.expires_at = (time.monotonic() + float(timeout_s)) if timeout_s is not None else None
        self.cancel_event = cancel_event

    def expired(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return True
        return self.expires_at is not None and time.monotonic() >= self.expires_at


@dataclass(frozen=True)
class Neighbor:
    node: Node
    edge: Edge
    distance: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node.node_id,
            "nodeName": self.node.name,
            "nodeType": self.node.entity_type,
            "edgeId": self.edge.edge_id,
            "viaNodeId": self.edge.source_node_id,
            "relationship": self.edge.relationship_type,
            "weight": self.edge.weight,
            "distance": self.distance,
        }


@dataclass(frozen=True)
class NeighborResult:
    items: list[Neighbor] = field(default_factory=list)
    # Budget or deadline cut the expansion short; `items` is what was found.
    truncated: bool = False

    def __iter__(self):
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True)
class GraphPath:
    nodes: list[Node]
    edges: list[Edge]

    @property
    def length(self) -> int:
        return len(self.edges)

    @property
    def node_ids(self) -> list[int]:
        return [n.node_id for n in self.nodes]

    def to_dict(self) -> dict[str, Any]:
        return {
            "pathNodes": [{"id": n.node_id, "name": n.name, "entity_type": n.entity_type} for n in self.nodes],
            "pathEdges": [
                {
                    "id": e.edge_id,
                    "relationship_type": e.relationship_type,
                    "source_node_id": e.source_node_id,
                    "target_node_id": e.target_node_id,
                }
                for e in self.edges
            ],
            "pathLength": self.length,
        }


@dataclass(frozen=True)
class PathNotFound:
    start_id: int
    end_id: int
    reason: str = "unreachable"  # unreachable | cancelled | budget

    def __bool__(self) -> bool:
        return False


class TraversalEngine:
    def __init__(self, store: GraphStore, *, visited_budget: int = DEFAULT_VISITED_BUDGET):
        if visited_budget < 1:
            raise ValueError("visited_budget must be >= 1")
        self.store = store
        self.visited_budget = int(visited_budget)

    def _start_node(self, node_id: int, project_id: str | None) -> Node:
        node = self.store.get_node(node_id)
        if node is None or (project_id is not None and node.project_id != project_id):
            raise NotFound("node", node_id, project_id)
        return node

    def get_neighbors(
        self,
        node_id: int,
        depth: int = 1,
        *,
        project_id: str | None = None,
        deadline: Deadline | None = None,
    ) -> NeighborResult:
        """Nodes reachable over outgoing edges within `depth` hops.

        Each neighbor appears once, at its minimum distance, reached through
        the heaviest edge of that level (ties broken by edge id). Output is
        ordered by distance, then edge weight desc, then edge id.
        """
        if isinstance(depth, bool) or not isinstance(depth, int):
            raise ValueError(f"depth must be an integer, got {depth!r}")
        if depth < 0:
            raise ValueError(f"depth must be >= 0, got {depth}")

        start = self._start_node(node_id, project_id)
        if depth == 0:
            return NeighborResult()

        visited = {start.node_id}
        frontier = [start.node_id]
        found: list[tuple[int, Edge]] = []

        for distance in range(1, depth + 1):
            if not frontier:
                break
            if deadline is not None and deadline.expired():
                return NeighborResult(items=self._materialize(found), truncated=True)

            adjacency = self.store.out_edges(frontier)
            level_edges = sorted(
                (e for src in frontier for e in adjacency.get(src, [])),
                key=lambda e: (-e.weight, e.edge_id),
            )

            next_frontier: list[int] = []
            for e in level_edges:
                if e.target_node_id in visited:
                    continue
                if len(visited) >= self.visited_budget:
                    return NeighborResult(items=self._materialize(found), truncated=True)
                visited.add(e.target_node_id)
                next_frontier.append(e.target_node_id)
                found.append((distance, e))
            frontier = next_frontier

        return NeighborResult(items=self._materialize(found))

    def _materialize(self, found: list[tuple[int, Edge]]) -> list[Neighbor]:
        nodes = self.store.get_nodes([e.target_node_id for _, e in found])
        return [Neighbor(node=nodes[e.target_node_id], edge=e, distance=d) for d, e in found if e.target_node_id in nodes]

    def find_path(
        self,
        start_id: int,
        end_id: int,
        max_depth: int = 5,
        *,
        project_id: str | None = None,
        deadline: Deadline | None = None,
    ) -> GraphPath | PathNotFound:
        """Hop-count shortest path over outgoing edges, at most `max_depth` hops.

        Classic BFS carrying (node, node path, edge path). A node is marked
        visited the first time it is dequeued, so the first arrival at
        `end_id` is optimal and cycles terminate. Dequeues happen a whole
        level at a time so each level costs one adjacency lookup.
        """
        if isinstance(max_depth, bool) or not isinstance(max_depth, int) or max_depth < 0:
            raise ValueError(f"max_depth must be a non-negative integer, got {max_depth!r}")

        start = self._start_node(start_id, project_id)
        end = self._start_node(end_id, project_id)
        if start.node_id == end.node_id:
            return GraphPath(nodes=[start], edges=[])

        visited: set[int] = set()
        level: list[tuple[int, list[int], list[Edge]]] = [(start.node_id, [start.node_id], [])]

        while level:
            if deadline is not None and deadline.expired():
                return PathNotFound(start.node_id, end.node_id, reason="cancelled")

            expand: list[tuple[int, list[int], list[Edge]]] = []
            for node_id, node_path, edge_path in level:
                if node_id == end.node_id:
                    return self._path(node_path, edge_path)
                if node_id in visited:
                    continue
                if len(visited) >= self.visited_budget:
                    return PathNotFound(start.node_id, end.node_id, reason="budget")
                visited.add(node_id)
                if len(edge_path) < max_depth:
                    expand.append((node_id, node_path, edge_path))

            if not expand:
                break

            adjacency = self.store.out_edges([node_id for node_id, _, _ in expand])
            next_level: list[tuple[int, list[int], list[Edge]]] = []
            for node_id, node_path, edge_path in expand:
                for e in adjacency.get(node_id, []):
                    if e.target_node_id not in visited:
                        next_level.append((e.target_node_id, node_path + [e.target_node_id], edge_path + [e]))
            level = next_level

        return PathNotFound(start.node_id, end.node_id)

    def _path(self, node_path: list[int], edge_path: list[Edge]) -> GraphPath:
        nodes = self.store.get_nodes(node_path)
        return GraphPath(nodes=[nodes[n] for n in node_path], edges=list(edge_path))


# --- undirected mode -----------------------------------------------------


def undirected_adjacency(edges: Iterable[Edge]) -> dict[int, set[int]]:
    adj: dict[int, set[int]] = defaultdict(set)
    for e in edges:
        adj[e.source_node_id].add(e.target_node_id)
        adj[e.target_node_id].add(e.source_node_id)
    return adj


def connected_components(node_ids: Iterable[int], edges: Iterable[Edge]) -> dict[int, int]:
    """Map every node id to a component label, ignoring edge direction.

    Labels are the smallest node id in the component, so they are stable
    across calls on the same graph.
    """
    adj = undirected_adjacency(edges)
    all_ids = sorted(set(node_ids) | set(adj))
    label: dict[int, int] = {}
    for root in all_ids:
        if root in label:
            continue
        label[root] = root
        queue = [root]
        while queue:
            cur = queue.pop()
            for nxt in adj.get(cur, ()):
                if nxt not in label:
                    label[nxt] = root
                    queue.append(nxt)
    return label
