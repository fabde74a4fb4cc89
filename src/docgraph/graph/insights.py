"""Incremental insight discovery.

Each run looks only at what changed since the previous successful run (the
per-project scan watermark), turns structural signals into candidates, asks a
proposer to phrase them as insights, and lets the store persist whatever is
not already covered by an active insight. The watermark moves only when the
run succeeds, so a failed run is simply repeated by the next one.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from ..chat.llm import ChatMessage, OllamaChatClient, parse_json_reply
from ..config import Settings
from .extract import norm_entity
from .models import Edge, Insight, Node, ProposedInsight
from .store import ScanState, SqliteGraphStore
from .traverse import connected_components, undirected_adjacency


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    kind: str  # cluster_bridge | hub_entity | unexpected_relationship
    node_ids: tuple[int, ...]
    edge_ids: tuple[int, ...] = ()
    facts: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DiscoveryContext:
    project_id: str
    candidates: list[Candidate]
    nodes: dict[int, Node]
    edges: list[Edge]
    # Anything new since the previous run (new edges or touched nodes).
    changed: bool = True


class InsightProposer(Protocol):
    def propose(self, ctx: DiscoveryContext) -> list[ProposedInsight]: ...


class StructuralProposer:
    """Phrases each structural candidate as one insight, no model involved."""

    def propose(self, ctx: DiscoveryContext) -> list[ProposedInsight]:
        out: list[ProposedInsight] = []
        for c in ctx.candidates:
            names = [ctx.nodes[n].name for n in c.node_ids if n in ctx.nodes]
            docs = _documents_of(ctx, c)
            if c.kind == "cluster_bridge":
                a, b = names[0], names[1]
                out.append(
                    ProposedInsight(
                        insight_type="cluster_bridge",
                        title=f"{a} now connects two clusters",
                        description=(
                            f"A new '{c.facts['relationship']}' relationship between {a} and {b} links a group of "
                            f"{c.facts['left_size']} entities with a previously separate group of "
                            f"{c.facts['right_size']} entities."
                        ),
                        confidence=c.facts.get("confidence", 0.7),
                        node_ids=c.node_ids,
                        edge_ids=c.edge_ids,
                        document_ids=docs,
                    )
                )
            elif c.kind == "hub_entity":
                out.append(
                    ProposedInsight(
                        insight_type="hub_entity",
                        title=f"{names[0]} is a hub entity",
                        description=(
                            f"{names[0]} is connected to {c.facts['degree']} entities and mentioned "
                            f"{c.facts['mentions']} times across the collection."
                        ),
                        confidence=c.facts.get("confidence", 0.7),
                        node_ids=c.node_ids,
                        document_ids=docs,
                    )
                )
            elif c.kind == "unexpected_relationship":
                out.append(
                    ProposedInsight(
                        insight_type="unexpected_relationship",
                        title=f"Unusual '{c.facts['relationship']}' link: {names[0]} -> {names[1]}",
                        description=(
                            f"{names[0]} and {names[1]} are both high-confidence entities, and this is the only "
                            f"'{c.facts['relationship']}' relationship in the project."
                        ),
                        confidence=c.facts.get("confidence", 0.6),
                        node_ids=c.node_ids,
                        edge_ids=c.edge_ids,
                        document_ids=docs,
                    )
                )
        return out


def _documents_of(ctx: DiscoveryContext, c: Candidate) -> tuple[str, ...]:
    docs: list[str] = []
    for n in c.node_ids:
        node = ctx.nodes.get(n)
        for d in node.source_document_ids if node is not None else ():
            if d not in docs:
                docs.append(d)
    return tuple(docs)


DISCOVER_SYSTEM_PROMPT = (
    "You are a knowledge analyst expert at finding hidden connections and patterns across documents.\n"
    "\n"
    "Analyze the entities and relationships extracted from a document collection and identify:\n"
    "1. Hidden connections - entities that appear related but aren't explicitly linked\n"
    "2. Contradictions - entities or documents that present conflicting information\n"
    "3. Patterns - recurring themes, relationships, or structures\n"
    "4. Important clusters - groups of highly interconnected entities\n"
    "\n"
    "Return a JSON array of insights:\n"
    '[{"type": "hidden_connection" | "contradiction" | "pattern" | "cluster", "title": "Brief title", '
    '"description": "Detailed explanation", "confidence": 0.85, "involvedEntities": ["Entity Name 1"]}]'
)


class LLMInsightProposer:
    """Structural insights plus whatever the model finds in the graph summary."""

    def __init__(self, llm: OllamaChatClient, *, max_entities: int = 200, max_edges: int = 50):
        self.llm = llm
        self.max_entities = int(max_entities)
        self.max_edges = int(max_edges)
        self.structural = StructuralProposer()

    def propose(self, ctx: DiscoveryContext) -> list[ProposedInsight]:
        proposals = self.structural.propose(ctx)
        if len(ctx.nodes) < 2:
            return proposals

        nodes = sorted(ctx.nodes.values(), key=lambda n: (-n.mention_count, n.node_id))[: self.max_entities]
        entity_lines = "\n".join(f"- {n.name} ({n.entity_type})" for n in nodes)
        edge_lines = "\n".join(
            f"- {ctx.nodes[e.source_node_id].name} --[{e.relationship_type}]--> {ctx.nodes[e.target_node_id].name}"
            for e in sorted(ctx.edges, key=lambda e: (-e.weight, e.edge_id))[: self.max_edges]
            if e.source_node_id in ctx.nodes and e.target_node_id in ctx.nodes
        )
        signal_lines = "\n".join(f"- {p.title}" for p in proposals)
        msgs = [
            ChatMessage(role="system", content=DISCOVER_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=(
                    "Analyze this knowledge graph and discover hidden connections:\n\n"
                    f"ENTITIES:\n{entity_lines}\n\n"
                    f"KNOWN RELATIONSHIPS:\n{edge_lines or 'No relationships yet'}\n\n"
                    f"RECENT STRUCTURAL SIGNALS:\n{signal_lines or 'None'}\n\n"
                    "Find hidden connections, contradictions, and patterns."
                ),
            ),
        ]
        items = parse_json_reply(self.llm.chat(msgs), expect=list)

        by_name = {n.name_norm: n.node_id for n in ctx.nodes.values()}
        for it in items:
            if not isinstance(it, dict) or not it.get("title"):
                continue
            node_ids = tuple(
                by_name[norm_entity(name)]
                for name in (it.get("involvedEntities") or [])
                if isinstance(name, str) and norm_entity(name) in by_name
            )
            proposals.append(
                ProposedInsight(
                    insight_type=str(it.get("type") or "hidden_connection"),
                    title=str(it["title"]),
                    description=str(it.get("description") or ""),
                    confidence=float(it.get("confidence") or 0.8),
                    node_ids=node_ids,
                )
            )
        return proposals


class InsightDiscovery:
    def __init__(
        self,
        store: SqliteGraphStore,
        *,
        proposer: InsightProposer | None = None,
        settings: Settings | None = None,
    ):
        settings = settings or Settings()
        self.store = store
        self.proposer = proposer or StructuralProposer()
        self.hub_degree = int(settings.hub_degree)
        self.hub_mentions = int(settings.hub_mentions)
        self.high_confidence = float(settings.high_confidence)
        self.overlap = float(settings.insight_overlap)

    def discover_connections(self, project_id: str, user_id: str) -> list[Insight]:
        """Scan changes since the last run and persist new, non-duplicate insights."""
        state = self.store.scan_state(project_id)
        started = time.time()
        max_edge_id, max_node_id = self.store.max_ids(project_id)

        ctx = self.scan(project_id, state, max_edge_id=max_edge_id)
        proposals = self.proposer.propose(ctx) if ctx.changed else []

        created = self.store.record_discovery(
            project_id,
            user_id,
            proposals,
            watermark=ScanState(
                project_id=project_id,
                last_edge_id=max_edge_id,
                last_node_id=max_node_id,
                scanned_at=started,
            ),
            overlap=self.overlap,
        )
        logger.info(
            f"Discovery for {project_id!r}: {len(ctx.candidates)} candidates, "
            f"{len(proposals)} proposals, {len(created)} new insights"
        )
        return created

    def scan(self, project_id: str, state: ScanState, *, max_edge_id: int) -> DiscoveryContext:
        edges = [e for e in self.store.project_edges(project_id) if e.edge_id <= max_edge_id]
        nodes = {n.node_id: n for n in self.store.project_nodes(project_id)}

        # Edges the discovery itself adds are not new evidence.
        new_edges = [e for e in edges if e.edge_id > state.last_edge_id and not e.is_ai_discovered]
        old_edges = [e for e in edges if e.edge_id <= state.last_edge_id]
        touched = {n.node_id for n in self.store.nodes_touched_since(project_id, state.scanned_at)}
        for e in new_edges:
            touched.update((e.source_node_id, e.target_node_id))

        candidates: list[Candidate] = []
        candidates.extend(self._bridges(nodes, old_edges, new_edges))
        candidates.extend(self._hubs(nodes, edges, touched))
        candidates.extend(self._unexpected(project_id, nodes, new_edges))
        return DiscoveryContext(
            project_id=project_id,
            candidates=candidates,
            nodes=nodes,
            edges=edges,
            changed=bool(touched),
        )

    def _bridges(self, nodes: dict[int, Node], old_edges: list[Edge], new_edges: list[Edge]) -> list[Candidate]:
        label = connected_components(nodes, old_edges)
        sizes: dict[int, int] = {}
        for lab in label.values():
            sizes[lab] = sizes.get(lab, 0) + 1

        out: list[Candidate] = []
        bridged: set[frozenset[int]] = set()
        for e in new_edges:
            a = label.get(e.source_node_id, e.source_node_id)
            b = label.get(e.target_node_id, e.target_node_id)
            if a == b or sizes.get(a, 1) < 2 or sizes.get(b, 1) < 2:
                continue
            pair = frozenset((a, b))
            if pair in bridged:
                continue
            bridged.add(pair)
            out.append(
                Candidate(
                    kind="cluster_bridge",
                    node_ids=(e.source_node_id, e.target_node_id),
                    edge_ids=(e.edge_id,),
                    facts={
                        "relationship": e.relationship_type,
                        "left_size": sizes[a],
                        "right_size": sizes[b],
                        "confidence": round(0.5 + 0.5 * e.confidence, 3),
                    },
                )
            )
        return out

    def _hubs(self, nodes: dict[int, Node], edges: list[Edge], touched: set[int]) -> list[Candidate]:
        adj = undirected_adjacency(edges)
        out: list[Candidate] = []
        for nid in sorted(touched):
            node = nodes.get(nid)
            if node is None or node.entity_type == "document":
                continue
            degree = len(adj.get(nid, ()))
            if degree >= self.hub_degree or node.mention_count >= self.hub_mentions:
                out.append(
                    Candidate(
                        kind="hub_entity",
                        node_ids=(nid,),
                        facts={"degree": degree, "mentions": node.mention_count, "confidence": node.confidence},
                    )
                )
        return out

    def _unexpected(self, project_id: str, nodes: dict[int, Node], new_edges: list[Edge]) -> list[Candidate]:
        out: list[Candidate] = []
        for e in new_edges:
            src = nodes.get(e.source_node_id)
            dst = nodes.get(e.target_node_id)
            if src is None or dst is None:
                continue
            if src.confidence < self.high_confidence or dst.confidence < self.high_confidence:
                continue
            if self.store.relationship_type_count(project_id, e.relationship_type) > 1:
                continue
            out.append(
                Candidate(
                    kind="unexpected_relationship",
                    node_ids=(e.source_node_id, e.target_node_id),
                    edge_ids=(e.edge_id,),
                    facts={"relationship": e.relationship_type, "confidence": round(min(src.confidence, dst.confidence) * 0.75, 3)},
                )
            )
        return out


class BackgroundDiscovery:
    """Runs discovery off the request path.

    Each run opens its own store through `store_factory`, so it never shares
    a connection (or a lock) with ingestion or search. Failures are logged
    and left for the next scheduled run.
    """

    def __init__(
        self,
        store_factory: Callable[[], SqliteGraphStore],
        *,
        proposer_factory: Callable[[], InsightProposer] | None = None,
        settings: Settings | None = None,
        max_workers: int = 1,
    ):
        self.store_factory = store_factory
        self.proposer_factory = proposer_factory
        self.settings = settings or Settings()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="insights")
        self._lock = threading.Lock()
        self._pending: dict[str, Future] = {}

    def submit(self, project_id: str, user_id: str) -> Future:
        """Schedule a run; a run already queued for the project is reused."""
        with self._lock:
            fut = self._pending.get(project_id)
            if fut is not None and not fut.done():
                return fut
            fut = self._executor.submit(self._run, project_id, user_id)
            self._pending[project_id] = fut
            return fut

    def _run(self, project_id: str, user_id: str) -> list[Insight]:
        try:
            store = self.store_factory()
        except Exception as e:
            logger.error(f"Discovery for {project_id!r} could not open the store: {e}")
            return []
        try:
            proposer = self.proposer_factory() if self.proposer_factory is not None else None
            discovery = InsightDiscovery(store, proposer=proposer, settings=self.settings)
            return discovery.discover_connections(project_id, user_id)
        except Exception:
            logger.exception(f"Discovery for {project_id!r} failed; will retry on the next run")
            return []
        finally:
            store.close()

    def shutdown(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
