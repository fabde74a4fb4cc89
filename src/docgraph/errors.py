"""Error taxonomy shared by the graph store, traversal and search layers.

Truncated traversals and missing paths are not errors: they are reported as
values (`NeighborResult.truncated`, `PathNotFound`) by `docgraph.graph.traverse`.
"""

from __future__ import annotations


class GraphError(Exception):
    """Base class for graph-engine errors."""

    retryable = False


class NotFound(GraphError):
    """A referenced node, edge, insight or job is absent or out of project scope."""

    def __init__(self, kind: str, ident: object, project_id: str | None = None):
        self.kind = kind
        self.ident = ident
        self.project_id = project_id
        scope = f" in project {project_id!r}" if project_id is not None else ""
        super().__init__(f"{kind} {ident!r} not found{scope}")


class InvalidEdgeEndpoint(GraphError):
    """Self loop, missing endpoint, or endpoint belonging to another project."""


class UpstreamCollaboratorFailure(GraphError):
    """An extraction, reasoning or answer-generation collaborator failed."""

    retryable = True


class JobStateError(GraphError):
    """Attempt to move an extraction job out of a terminal state."""
