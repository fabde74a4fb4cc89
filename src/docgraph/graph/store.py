"""Project-scoped graph persistence with merge-on-duplicate upserts.

`SqliteGraphStore` is the only writer of nodes, edges and insights. Every
write runs inside a `BEGIN IMMEDIATE` transaction, so two extraction jobs
merging the same entity serialize on the database write lock instead of
losing each other's increments. Lock contention surfaces as
`sqlite3.OperationalError("database is locked")`, which is retried.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Protocol

from tenacity import before_sleep_log, retry, retry_if_exception, stop_after_attempt, wait_random_exponential

from ..config import Settings
from ..documents import connect
from ..errors import InvalidEdgeEndpoint, JobStateError, NotFound
from . import sqlite_graph as sg
from .extract import norm_entity, norm_type
from .models import (
    BatchResult,
    Edge,
    EdgeEvidence,
    ExtractionBatch,
    ExtractionJob,
    Insight,
    Node,
    NodeEvidence,
    ProposedInsight,
)


logger = logging.getLogger(__name__)


class GraphStore(Protocol):
    """Read capability the traversal engine, discovery and search depend on."""

    def get_node(self, node_id: int) -> Node | None: ...

    def get_nodes(self, node_ids: list[int]) -> dict[int, Node]: ...

    def get_edges(self, edge_ids: list[int]) -> dict[int, Edge]: ...

    def out_edges(self, node_ids: list[int]) -> dict[int, list[Edge]]: ...

    def project_nodes(self, project_id: str, *, limit: int | None = None) -> list[Node]: ...

    def project_edges(self, project_id: str) -> list[Edge]: ...

    def match_nodes(self, project_id: str, term_norm: str, *, limit: int = 10) -> list[Node]: ...


@dataclass(frozen=True)
class GraphData:
    nodes: list[Node]
    edges: list[Edge]
    insights: list[Insight]

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
            "insights": [i.to_dict() for i in self.insights],
        }


@dataclass(frozen=True)
class InsightPage:
    items: list[Insight]
    total: int
    limit: int
    offset: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [i.to_dict() for i in self.items],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
        }


@dataclass(frozen=True)
class ScanState:
    project_id: str
    last_edge_id: int = 0
    last_node_id: int = 0
    scanned_at: float = 0.0


@dataclass
class _RefMap:
    by_name: dict[str, int] = field(default_factory=dict)
    by_typed: dict[str, int] = field(default_factory=dict)

    def add(self, entity_type: str, name_norm: str, node_id: int) -> None:
        # First node merged under a name wins untyped refs.
        self.by_name.setdefault(name_norm, node_id)
        self.by_typed.setdefault(f"{entity_type}:{name_norm}", node_id)

    def resolve(self, ref: str) -> int | None:
        if ":" in ref:
            etype, _, name = ref.partition(":")
            hit = self.by_typed.get(f"{norm_type(etype)}:{norm_entity(name)}")
            if hit is not None:
                return hit
        return self.by_name.get(norm_entity(ref))


def merge_confidence(current: float, evidence: float, rate: float) -> float:
    """Corroboration update: never lowers confidence, never exceeds 1.

    merged = current + (1 - current) * evidence * rate
    """
    current = min(max(float(current), 0.0), 1.0)
    evidence = min(max(float(evidence), 0.0), 1.0)
    return min(1.0, current + (1.0 - current) * evidence * float(rate))


def _is_lock_error(exc: BaseException) -> bool:
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


_write_retry = retry(
    reraise=True,
    stop=stop_after_attempt(8),
    wait=wait_random_exponential(multiplier=0.05, max=2.0),
    retry=retry_if_exception(_is_lock_error),
    before_sleep=before_sleep_log(logger, logging.WARNING),
)


def _check_confidence(value: float) -> float:
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"confidence must be within [0, 1], got {value}")
    return value


def _append_unique(values: list[str], value: str | None) -> list[str]:
    if value is not None and value not in values:
        values.append(value)
    return values


class SqliteGraphStore:
    def __init__(self, conn: sqlite3.Connection, *, settings: Settings | None = None):
        settings = settings or Settings()
        self.conn = conn
        self.max_evidence_snippets = int(settings.max_evidence_snippets)
        self.corroboration_rate = float(settings.corroboration_rate)
        self.max_snapshot_nodes = int(settings.max_snapshot_nodes)
        self.max_snapshot_edges = int(settings.max_snapshot_edges)
        self.max_snapshot_insights = int(settings.max_snapshot_insights)
        if not 0.0 < self.corroboration_rate <= 1.0:
            raise ValueError("corroboration_rate must be within (0, 1]")
        self._tx_depth = 0
        sg.init_graph(conn)

    @classmethod
    def open(
        cls,
        db_path: str | os.PathLike[str],
        *,
        settings: Settings | None = None,
        check_same_thread: bool = True,
    ) -> SqliteGraphStore:
        conn = connect(db_path, check_same_thread=check_same_thread)
        return cls(conn, settings=settings)

    def close(self) -> None:
        self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Serializable write transaction; nested use joins the outer one."""
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield
            finally:
                self._tx_depth -= 1
            return

        if self.conn.in_transaction:
            self.conn.commit()
        self.conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()
        finally:
            self._tx_depth = 0

    # --- nodes -----------------------------------------------------------

    @_write_retry
    def upsert_node(
        self,
        project_id: str,
        entity_type: str,
        name: str,
        evidence: NodeEvidence | None = None,
    ) -> Node:
        with self.transaction():
            node_id, _ = self._upsert_node(project_id, entity_type, name, evidence or NodeEvidence(), time.time())
        return self._require_node(node_id)

    def _upsert_node(
        self,
        project_id: str,
        entity_type: str,
        name: str,
        ev: NodeEvidence,
        now: float,
    ) -> tuple[int, bool]:
        etype = norm_type(entity_type)
        display = " ".join(str(name).split())
        name_norm = norm_entity(name)
        if not project_id or not etype or not name_norm:
            raise ValueError("project_id, entity_type and name are required")
        confidence = _check_confidence(ev.confidence)

        row = sg.find_node_by_key(self.conn, project_id=project_id, entity_type=etype, name_norm=name_norm)
        if row is None:
            try:
                node_id = sg.insert_node(
                    self.conn,
                    project_id=project_id,
                    entity_type=etype,
                    name=display,
                    name_norm=name_norm,
                    description=ev.description,
                    properties_json=ev.properties.to_json(),
                    confidence=confidence,
                    source_document_ids=_append_unique([], ev.source_document_id),
                    now=now,
                )
                return node_id, True
            except sqlite3.IntegrityError:
                # Lost the create race on the unique key: merge into the winner.
                row = sg.find_node_by_key(self.conn, project_id=project_id, entity_type=etype, name_norm=name_norm)
                if row is None:
                    raise

        current = sg.row_to_node(row)
        description = current.description
        if ev.description and (not description or ev.override):
            description = ev.description
        sg.update_node_merge(
            self.conn,
            node_id=current.node_id,
            description=description,
            properties_json=current.properties.merge(ev.properties, override=ev.override).to_json(),
            confidence=merge_confidence(current.confidence, confidence, self.corroboration_rate),
            source_document_ids=_append_unique(list(current.source_document_ids), ev.source_document_id),
            now=now,
        )
        return current.node_id, False

    # --- edges -----------------------------------------------------------

    @_write_retry
    def upsert_edge(
        self,
        project_id: str,
        source_node_id: int,
        target_node_id: int,
        relationship_type: str,
        evidence: EdgeEvidence | None = None,
    ) -> Edge:
        with self.transaction():
            edge_id, _ = self._upsert_edge(
                project_id,
                source_node_id,
                target_node_id,
                relationship_type,
                evidence or EdgeEvidence(),
                time.time(),
            )
        edge = self.get_edge(edge_id)
        if edge is None:
            raise NotFound("edge", edge_id, project_id)
        return edge

    def _upsert_edge(
        self,
        project_id: str,
        source_node_id: int,
        target_node_id: int,
        relationship_type: str,
        ev: EdgeEvidence,
        now: float,
    ) -> tuple[int, bool]:
        source_node_id = int(source_node_id)
        target_node_id = int(target_node_id)
        if source_node_id == target_node_id:
            raise InvalidEdgeEndpoint(f"Self loop on node {source_node_id} is not allowed")

        found = {int(r["node_id"]): str(r["project_id"]) for r in sg.get_node_rows(self.conn, [source_node_id, target_node_id])}
        for nid in (source_node_id, target_node_id):
            if nid not in found:
                raise InvalidEdgeEndpoint(f"Edge endpoint {nid} does not exist")
            if found[nid] != project_id:
                raise InvalidEdgeEndpoint(f"Edge endpoint {nid} belongs to another project")

        rtype = norm_type(relationship_type)
        if not rtype:
            raise ValueError("relationship_type is required")
        confidence = _check_confidence(ev.confidence)
        if float(ev.weight) < 0:
            raise ValueError(f"edge weight increment must be >= 0, got {ev.weight}")

        key = dict(
            project_id=project_id,
            source_node_id=source_node_id,
            target_node_id=target_node_id,
            relationship_type=rtype,
        )
        row = sg.find_edge_by_key(self.conn, **key)
        if row is None:
            try:
                edge_id = sg.insert_edge(
                    self.conn,
                    **key,
                    weight=float(ev.weight),
                    properties_json=ev.properties.to_json(),
                    evidence=self._push_snippet([], ev.snippet),
                    source_document_ids=_append_unique([], ev.source_document_id),
                    is_ai_discovered=ev.is_ai_discovered,
                    confidence=confidence,
                    now=now,
                )
                return edge_id, True
            except sqlite3.IntegrityError:
                row = sg.find_edge_by_key(self.conn, **key)
                if row is None:
                    raise

        current = sg.row_to_edge(row)
        sg.update_edge_merge(
            self.conn,
            edge_id=current.edge_id,
            weight_inc=float(ev.weight),
            properties_json=current.properties.merge(ev.properties, override=ev.override).to_json(),
            evidence=self._push_snippet(list(current.evidence_snippets), ev.snippet),
            source_document_ids=_append_unique(list(current.source_document_ids), ev.source_document_id),
            is_ai_discovered=ev.is_ai_discovered,
            confidence=merge_confidence(current.confidence, confidence, self.corroboration_rate),
            now=now,
        )
        return current.edge_id, False

    def _push_snippet(self, snippets: list[str], snippet: str | None) -> list[str]:
        if not snippet or not snippet.strip():
            return snippets
        snippet = snippet.strip()
        if snippet in snippets:
            return snippets
        snippets.append(snippet)
        # FIFO: evict the oldest evidence first.
        while len(snippets) > self.max_evidence_snippets:
            snippets.pop(0)
        return snippets

    # --- batches ---------------------------------------------------------

    @_write_retry
    def ingest_batch(
        self,
        project_id: str,
        batch: ExtractionBatch,
        *,
        document_id: str | None = None,
        strict: bool = False,
    ) -> BatchResult:
        """Merge one extraction batch atomically.

        Edge refs resolve against nodes merged earlier in the same batch.
        Unresolvable refs and self loops are skipped, or raise
        `InvalidEdgeEndpoint` (rolling back the whole batch) when `strict`.
        """
        batch = batch.with_document(document_id)
        now = time.time()
        refs = _RefMap()
        created_nodes = merged_nodes = 0
        created_edges = merged_edges = skipped = 0
        node_ids: list[int] = []
        edge_ids: list[int] = []

        with self.transaction():
            entity_confidence: dict[int, float] = {}
            # Per-candidate documents, for batches without a batch-level document.
            candidate_docs: dict[int, str] = {}
            for cand in batch.nodes:
                ev = NodeEvidence(
                    confidence=cand.confidence,
                    source_document_id=cand.source_document_id,
                    description=cand.description,
                    properties=cand.properties,
                )
                nid, created = self._upsert_node(project_id, cand.entity_type, cand.name, ev, now)
                refs.add(norm_type(cand.entity_type), norm_entity(cand.name), nid)
                entity_confidence.setdefault(nid, float(cand.confidence))
                if cand.source_document_id is not None:
                    candidate_docs.setdefault(nid, cand.source_document_id)
                if nid not in node_ids:
                    node_ids.append(nid)
                if created:
                    created_nodes += 1
                else:
                    merged_nodes += 1

            if batch.document_name:
                doc_nid, _ = self._upsert_node(
                    project_id,
                    "document",
                    batch.document_name,
                    NodeEvidence(confidence=1.0, source_document_id=document_id),
                    now,
                )
                if doc_nid not in node_ids:
                    node_ids.append(doc_nid)
                for nid, conf in entity_confidence.items():
                    if nid == doc_nid:
                        continue
                    eid, created = self._upsert_edge(
                        project_id,
                        nid,
                        doc_nid,
                        "mentioned_in",
                        EdgeEvidence(confidence=conf, source_document_id=document_id),
                        now,
                    )
                    edge_ids.append(eid)
                    created_edges += int(created)
                    merged_edges += int(not created)

            for cand in batch.edges:
                src = refs.resolve(cand.source_ref)
                dst = refs.resolve(cand.target_ref)
                if src is None or dst is None or src == dst:
                    reason = "self loop" if src is not None and src == dst else "unresolved entity ref"
                    if strict:
                        raise InvalidEdgeEndpoint(
                            f"{reason}: {cand.source_ref!r} -[{cand.relationship_type}]-> {cand.target_ref!r}"
                        )
                    logger.warning(
                        f"Skipping edge {cand.source_ref!r} -[{cand.relationship_type}]-> {cand.target_ref!r}: {reason}"
                    )
                    skipped += 1
                    continue
                ev = EdgeEvidence(
                    confidence=cand.confidence,
                    weight=cand.weight,
                    snippet=cand.evidence_snippet,
                    source_document_id=document_id or candidate_docs.get(src) or candidate_docs.get(dst),
                    properties=cand.properties,
                )
                eid, created = self._upsert_edge(project_id, src, dst, cand.relationship_type, ev, now)
                if eid not in edge_ids:
                    edge_ids.append(eid)
                created_edges += int(created)
                merged_edges += int(not created)

        return BatchResult(
            entities_extracted=created_nodes,
            entities_merged=merged_nodes,
            relationships_created=created_edges,
            relationships_merged=merged_edges,
            relationships_skipped=skipped,
            node_ids=tuple(node_ids),
            edge_ids=tuple(edge_ids),
        )

    # --- reads -----------------------------------------------------------

    def get_node(self, node_id: int) -> Node | None:
        row = sg.get_node_row(self.conn, node_id)
        return sg.row_to_node(row) if row is not None else None

    def _require_node(self, node_id: int, project_id: str | None = None) -> Node:
        node = self.get_node(node_id)
        if node is None or (project_id is not None and node.project_id != project_id):
            raise NotFound("node", node_id, project_id)
        return node

    def get_nodes(self, node_ids: list[int]) -> dict[int, Node]:
        return {int(r["node_id"]): sg.row_to_node(r) for r in sg.get_node_rows(self.conn, list(node_ids))}

    def get_edge(self, edge_id: int) -> Edge | None:
        row = sg.get_edge_row(self.conn, edge_id)
        return sg.row_to_edge(row) if row is not None else None

    def get_edges(self, edge_ids: list[int]) -> dict[int, Edge]:
        return {int(r["edge_id"]): sg.row_to_edge(r) for r in sg.get_edge_rows(self.conn, list(edge_ids))}

    def out_edges(self, node_ids: list[int]) -> dict[int, list[Edge]]:
        out: dict[int, list[Edge]] = {int(n): [] for n in node_ids}
        for r in sg.out_edge_rows(self.conn, list(node_ids)):
            e = sg.row_to_edge(r)
            out.setdefault(e.source_node_id, []).append(e)
        return out

    def project_nodes(self, project_id: str, *, limit: int | None = None) -> list[Node]:
        lim = limit if limit is not None else -1
        return [sg.row_to_node(r) for r in sg.top_nodes(self.conn, project_id, limit=lim)]

    def project_edges(self, project_id: str) -> list[Edge]:
        return [sg.row_to_edge(r) for r in sg.project_edge_rows(self.conn, project_id)]

    def match_nodes(self, project_id: str, term_norm: str, *, limit: int = 10) -> list[Node]:
        if not term_norm:
            return []
        return [sg.row_to_node(r) for r in sg.get_node_matches(self.conn, project_id, term_norm, limit=limit)]

    def nodes_touched_since(self, project_id: str, since: float) -> list[Node]:
        return [sg.row_to_node(r) for r in sg.nodes_touched_since(self.conn, project_id, since=since)]

    def relationship_type_count(self, project_id: str, relationship_type: str) -> int:
        return sg.count_relationship_type(self.conn, project_id, norm_type(relationship_type))

    def get_graph_data(self, project_id: str) -> GraphData:
        nodes = [sg.row_to_node(r) for r in sg.top_nodes(self.conn, project_id, limit=self.max_snapshot_nodes)]
        edges = [sg.row_to_edge(r) for r in sg.top_edges(self.conn, project_id, limit=self.max_snapshot_edges)]
        rows, _ = sg.list_insight_rows(self.conn, project_id, limit=self.max_snapshot_insights)
        return GraphData(nodes=nodes, edges=edges, insights=[sg.row_to_insight(r) for r in rows])

    # --- insights --------------------------------------------------------

    def get_insight(self, project_id: str, insight_id: int) -> Insight:
        row = sg.get_insight_row(self.conn, insight_id)
        if row is None or str(row["project_id"]) != project_id:
            raise NotFound("insight", insight_id, project_id)
        return sg.row_to_insight(row)

    def list_insights(
        self,
        project_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
        include_dismissed: bool = False,
    ) -> InsightPage:
        if limit < 1 or offset < 0:
            raise ValueError("limit must be >= 1 and offset >= 0")
        rows, total = sg.list_insight_rows(
            self.conn, project_id, limit=limit, offset=offset, include_dismissed=include_dismissed
        )
        return InsightPage(items=[sg.row_to_insight(r) for r in rows], total=total, limit=limit, offset=offset)

    def active_insights(self, project_id: str) -> list[Insight]:
        return [sg.row_to_insight(r) for r in sg.active_insight_rows(self.conn, project_id)]

    @_write_retry
    def dismiss_insight(self, project_id: str, insight_id: int) -> Insight:
        return self._flag_insight(project_id, insight_id, "is_dismissed")

    @_write_retry
    def confirm_insight(self, project_id: str, insight_id: int) -> Insight:
        return self._flag_insight(project_id, insight_id, "is_confirmed")

    def _flag_insight(self, project_id: str, insight_id: int, column: str) -> Insight:
        with self.transaction():
            self.get_insight(project_id, insight_id)
            sg.set_insight_flag(self.conn, insight_id, column=column)
        return self.get_insight(project_id, insight_id)

    def scan_state(self, project_id: str) -> ScanState:
        row = sg.get_scan_state(self.conn, project_id)
        if row is None:
            return ScanState(project_id=project_id)
        return ScanState(
            project_id=project_id,
            last_edge_id=int(row["last_edge_id"]),
            last_node_id=int(row["last_node_id"]),
            scanned_at=float(row["scanned_at"]),
        )

    def max_ids(self, project_id: str) -> tuple[int, int]:
        """(max edge_id, max node_id) currently stored for the project."""
        return sg.max_ids(self.conn, project_id)

    @_write_retry
    def record_discovery(
        self,
        project_id: str,
        user_id: str,
        proposals: list[ProposedInsight],
        *,
        watermark: ScanState,
        overlap: float = 0.8,
    ) -> list[Insight]:
        """Persist proposals not already covered by an active insight and
        advance the scan watermark, in one transaction."""
        created: list[int] = []
        now = time.time()
        with self.transaction():
            known_nodes = set(self.get_nodes(sorted({n for p in proposals for n in p.node_ids})))
            known_edges = set(self.get_edges(sorted({e for p in proposals for e in p.edge_ids})))
            seen = [(i.signature(), i.title.casefold()) for i in self.active_insights(project_id)]

            for p in proposals:
                node_ids = tuple(n for n in dict.fromkeys(p.node_ids) if n in known_nodes)
                edge_ids = tuple(e for e in dict.fromkeys(p.edge_ids) if e in known_edges)
                p = ProposedInsight(
                    insight_type=p.insight_type,
                    title=p.title,
                    description=p.description,
                    confidence=min(max(float(p.confidence), 0.0), 1.0),
                    node_ids=node_ids,
                    edge_ids=edge_ids,
                    document_ids=p.document_ids,
                )
                if _is_duplicate(p, seen, overlap):
                    logger.debug(f"Skipping duplicate insight {p.title!r}")
                    continue
                iid = sg.insert_insight(
                    self.conn,
                    project_id=project_id,
                    user_id=user_id,
                    insight_type=p.insight_type,
                    title=p.title,
                    description=p.description,
                    node_ids=p.node_ids,
                    edge_ids=p.edge_ids,
                    document_ids=p.document_ids,
                    confidence=p.confidence,
                    now=now,
                )
                created.append(iid)
                seen.append((p.signature(), p.title.casefold()))

                if p.insight_type == "hidden_connection" and len(p.node_ids) >= 2:
                    try:
                        self._upsert_edge(
                            project_id,
                            p.node_ids[0],
                            p.node_ids[1],
                            "related_to",
                            EdgeEvidence(
                                confidence=p.confidence,
                                weight=p.confidence,
                                snippet=p.description,
                                is_ai_discovered=True,
                            ),
                            now,
                        )
                    except InvalidEdgeEndpoint as e:
                        logger.warning(f"Not linking hidden connection {p.title!r}: {e}")

            sg.set_scan_state(
                self.conn,
                project_id,
                last_edge_id=watermark.last_edge_id,
                last_node_id=watermark.last_node_id,
                scanned_at=watermark.scanned_at,
            )

        return [self.get_insight(project_id, iid) for iid in created]

    # --- extraction jobs -------------------------------------------------

    @_write_retry
    def create_job(self, project_id: str, *, document_id: str | None, user_id: str) -> ExtractionJob:
        with self.transaction():
            job_id = sg.insert_job(
                self.conn,
                project_id=project_id,
                document_id=document_id,
                user_id=user_id,
                status="pending",
                now=time.time(),
            )
        return self.get_job(project_id, job_id)

    def get_job(self, project_id: str, job_id: int) -> ExtractionJob:
        row = sg.get_job_row(self.conn, job_id)
        if row is None or str(row["project_id"]) != project_id:
            raise NotFound("extraction job", job_id, project_id)
        return sg.row_to_job(row)

    def list_jobs(self, project_id: str, *, limit: int = 20) -> list[ExtractionJob]:
        return [sg.row_to_job(r) for r in sg.list_job_rows(self.conn, project_id, limit=limit)]

    @_write_retry
    def begin_job(self, project_id: str, job_id: int) -> ExtractionJob:
        return self._transition_job(project_id, job_id, status="processing", started_at=time.time())

    @_write_retry
    def complete_job(
        self,
        project_id: str,
        job_id: int,
        *,
        entities_extracted: int,
        relationships_created: int,
    ) -> ExtractionJob:
        return self._transition_job(
            project_id,
            job_id,
            status="completed",
            entities_extracted=int(entities_extracted),
            relationships_created=int(relationships_created),
            completed_at=time.time(),
        )

    @_write_retry
    def fail_job(self, project_id: str, job_id: int, *, error_message: str) -> ExtractionJob:
        return self._transition_job(
            project_id,
            job_id,
            status="failed",
            error_message=str(error_message)[:2000],
            completed_at=time.time(),
        )

    def _transition_job(self, project_id: str, job_id: int, **fields: Any) -> ExtractionJob:
        with self.transaction():
            job = self.get_job(project_id, job_id)
            if job.is_terminal or sg.update_job(self.conn, job_id, **fields) == 0:
                raise JobStateError(f"Extraction job {job_id} is already {job.status}")
        return self.get_job(project_id, job_id)


def _jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def _is_duplicate(p: ProposedInsight, seen: list[tuple[frozenset[str], str]], overlap: float) -> bool:
    sig = p.signature()
    title = p.title.casefold()
    for other_sig, other_title in seen:
        if not sig or not other_sig:
            if not sig and not other_sig and title == other_title:
                return True
            continue
        if _jaccard(sig, other_sig) >= overlap:
            return True
    return False
