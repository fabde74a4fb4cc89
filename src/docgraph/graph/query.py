"""Graph-contextual search: query -> seed entities -> traversal -> answer.

Missing seeds, vanished nodes and unreachable pairs only shrink the context;
they never fail the search. Answer-generator failures propagate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any

from ..chat.answer import Answerer
from ..chat.llm import ChatMessage, LLMError, OllamaChatClient, parse_json_reply
from ..config import Settings
from ..documents import DocumentRef, DocumentSource
from ..errors import NotFound
from .extract import extract_entities, extract_query_terms, norm_entity
from .models import Node
from .store import GraphStore
from .traverse import Deadline, GraphPath, Neighbor, TraversalEngine


logger = logging.getLogger(__name__)

NO_CONTEXT_ANSWER = "No graph context found for this question. Try naming an entity from your documents."
MAX_CONTEXT_NEIGHBORS = 20
MAX_SOURCES = 10


@dataclass(frozen=True)
class GraphContext:
    entities: list[Node] = field(default_factory=list)
    neighbors: list[Neighbor] = field(default_factory=list)
    paths: list[GraphPath] = field(default_factory=list)
    truncated: bool = False

    def document_ids(self) -> list[str]:
        out: list[str] = []
        docs = [n.source_document_ids for n in self.entities]
        docs += [nb.edge.source_document_ids for nb in self.neighbors]
        docs += [e.source_document_ids for p in self.paths for e in p.edges]
        for ids in docs:
            for d in ids:
                if d not in out:
                    out.append(d)
        return out

    def to_dict(self) -> dict[str, Any]:
        return {
            "entities": [
                {"id": n.node_id, "name": n.name, "entity_type": n.entity_type, "normalized_name": n.name_norm}
                for n in self.entities
            ],
            "neighbors": [nb.to_dict() for nb in self.neighbors],
            "paths": [p.to_dict() for p in self.paths],
            "truncated": self.truncated,
        }


@dataclass(frozen=True)
class SearchResult:
    answer: str
    graph_context: GraphContext
    sources: list[DocumentRef]

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "graphContext": self.graph_context.to_dict(),
            "sources": [s.to_dict() for s in self.sources],
        }


RESOLVE_SYSTEM_PROMPT = (
    "Identify which entities from the provided list are mentioned or relevant to the user's question.\n"
    "Return a JSON array of entity names that are relevant. "
    "Be inclusive - include entities that might be indirectly related.\n"
    'Example: ["Entity A", "Entity B"]'
)


class LLMEntityResolver:
    """Picks seed entities for a question from the project's top nodes."""

    def __init__(self, llm: OllamaChatClient, *, candidate_limit: int = 100):
        self.llm = llm
        self.candidate_limit = int(candidate_limit)

    def resolve(self, store: GraphStore, project_id: str, query: str) -> list[Node]:
        nodes = store.project_nodes(project_id, limit=self.candidate_limit)
        if not nodes:
            return []
        msgs = [
            ChatMessage(role="system", content=RESOLVE_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=(
                    f'Question: "{query}"\n\n'
                    f"Available entities: {', '.join(n.name for n in nodes)}\n\n"
                    "Which entities are relevant to this question?"
                ),
            ),
        ]
        names = [norm_entity(x) for x in parse_json_reply(self.llm.chat(msgs), expect=list) if isinstance(x, str)]
        names = [x for x in names if x]
        return [n for n in nodes if any(x in n.name_norm or n.name_norm in x for x in names)]


class GraphSearch:
    def __init__(
        self,
        store: GraphStore,
        *,
        documents: DocumentSource,
        answerer: Answerer,
        engine: TraversalEngine | None = None,
        resolver: LLMEntityResolver | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or Settings()
        self.store = store
        self.documents = documents
        self.answerer = answerer
        self.engine = engine or TraversalEngine(store, visited_budget=settings.visited_budget)
        self.resolver = resolver
        self.max_seeds = int(settings.max_seeds)
        self.path_max_depth = int(settings.path_max_depth)

    def resolve_seeds(self, project_id: str, query: str) -> list[Node]:
        """Exact normalized-name matches first, then substring matches by mention count."""
        by_id: dict[int, tuple[bool, Node]] = {}
        for t in extract_entities(query, max_per_chunk=self.max_seeds):
            # "Explain Acme Corp" -> "acme corp" -> "corp" until something matches.
            words = t.split()
            while words and not self._add_matches(by_id, project_id, " ".join(words)):
                words.pop(0)
        if not by_id:
            for t in extract_query_terms(query, max_terms=self.max_seeds):
                self._add_matches(by_id, project_id, norm_entity(t))

        ranked = sorted(by_id.values(), key=lambda x: (not x[0], -x[1].mention_count, x[1].node_id))
        seeds = [n for _, n in ranked]

        if self.resolver is not None:
            try:
                picked = self.resolver.resolve(self.store, project_id, query)
            except LLMError as e:
                logger.warning(f"Entity resolver failed, using name matches only: {e}")
                picked = []
            known = {n.node_id for n in seeds}
            seeds.extend(n for n in picked if n.node_id not in known)

        return seeds[: self.max_seeds]

    def _add_matches(self, by_id: dict[int, tuple[bool, Node]], project_id: str, term: str) -> bool:
        matches = self.store.match_nodes(project_id, term, limit=self.max_seeds)
        for n in matches:
            exact = n.name_norm == term
            prev = by_id.get(n.node_id)
            if prev is None or (exact and not prev[0]):
                by_id[n.node_id] = (exact, n)
        return bool(matches)

    def graph_search(
        self,
        project_id: str,
        query: str,
        *,
        use_graph_context: bool = True,
        max_neighbor_depth: int = 2,
        deadline: Deadline | None = None,
    ) -> SearchResult:
        query = (query or "").strip()
        if not query:
            raise ValueError("query is required")
        if max_neighbor_depth < 0:
            raise ValueError(f"max_neighbor_depth must be >= 0, got {max_neighbor_depth}")

        seeds = self.resolve_seeds(project_id, query)
        context = self.build_context(
            project_id,
            seeds,
            expand=use_graph_context,
            depth=max_neighbor_depth,
            deadline=deadline,
        )
        if not context.entities:
            logger.info(f"No graph context for query {query!r} in project {project_id!r}")
            return SearchResult(answer=NO_CONTEXT_ANSWER, graph_context=context, sources=[])

        sources = self.documents.get_documents(context.document_ids()[:MAX_SOURCES])
        excerpts = self.documents.get_excerpts([d.id for d in sources])
        answer = self.answerer.answer(question=query, context=context, documents=sources, excerpts=excerpts)
        return SearchResult(answer=answer, graph_context=context, sources=sources)

    def build_context(
        self,
        project_id: str,
        seeds: list[Node],
        *,
        expand: bool = True,
        depth: int = 2,
        deadline: Deadline | None = None,
    ) -> GraphContext:
        entities: list[Node] = []
        neighbors: list[Neighbor] = []
        truncated = False
        seen = {n.node_id for n in seeds}

        for seed in seeds:
            if not expand:
                entities.append(seed)
                continue
            try:
                res = self.engine.get_neighbors(seed.node_id, depth, project_id=project_id, deadline=deadline)
            except NotFound:
                # Deleted between resolution and expansion.
                continue
            entities.append(seed)
            truncated = truncated or res.truncated
            for nb in res:
                if nb.node.node_id not in seen:
                    seen.add(nb.node.node_id)
                    neighbors.append(nb)

        paths: list[GraphPath] = []
        if expand and len(entities) >= 2:
            for a, b in combinations(entities, 2):
                path = self._connect(project_id, a.node_id, b.node_id, deadline)
                if isinstance(path, GraphPath):
                    paths.append(path)
                elif path is not None and path.reason != "unreachable":
                    truncated = True

        return GraphContext(
            entities=entities,
            neighbors=neighbors[:MAX_CONTEXT_NEIGHBORS],
            paths=paths,
            truncated=truncated or len(neighbors) > MAX_CONTEXT_NEIGHBORS,
        )

    def _connect(self, project_id: str, a: int, b: int, deadline: Deadline | None):
        """Path a -> b, else b -> a; None when an endpoint vanished."""
        result = None
        for start, end in ((a, b), (b, a)):
            try:
                result = self.engine.find_path(
                    start, end, self.path_max_depth, project_id=project_id, deadline=deadline
                )
            except NotFound:
                return None
            if result:
                return result
        return result
