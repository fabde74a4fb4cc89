"""Extraction jobs: run an extractor over a document and merge the result.

One document produces one `ExtractionBatch`, merged by the store in a single
transaction, so a failed job never leaves a half-merged graph behind. The job
log records every attempt.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import replace
from itertools import combinations
from typing import Any, Protocol

from ..chat.llm import ChatMessage, OllamaChatClient, parse_json_reply
from ..documents import DocumentSource
from .extract import extract_entities, norm_type
from .models import EdgeCandidate, ExtractionBatch, ExtractionJob, NodeCandidate, Properties
from .store import SqliteGraphStore


logger = logging.getLogger(__name__)


class EntityExtractor(Protocol):
    def extract(self, *, title: str | None, chunks: list[str]) -> ExtractionBatch: ...


class HeuristicExtractor:
    """Offline extractor: proper nouns per chunk plus co-occurrence edges.

    Every chunk an entity appears in counts as one mention. Pairs of entities
    in the same chunk get a `co_occurs_with` edge pointing from the earlier
    to the later mention.
    """

    def __init__(self, *, min_chars: int = 3, max_per_chunk: int = 25, confidence: float = 0.5):
        self.min_chars = int(min_chars)
        self.max_per_chunk = int(max_per_chunk)
        self.confidence = float(confidence)

    def extract(self, *, title: str | None, chunks: list[str]) -> ExtractionBatch:
        nodes: list[NodeCandidate] = []
        pair_counts: dict[tuple[str, str], int] = defaultdict(int)
        pair_snippet: dict[tuple[str, str], str] = {}

        for text in chunks:
            ents = extract_entities(text, min_chars=self.min_chars, max_per_chunk=self.max_per_chunk)
            if not ents:
                continue

            names: list[str] = []
            for _, (display, _count) in ents.items():
                etype = "acronym" if display.isupper() else "entity"
                nodes.append(NodeCandidate(entity_type=etype, name=display, confidence=self.confidence))
                names.append(f"{etype}:{display}")

            snippet = " ".join(text.split())[:240]
            for a, b in combinations(names, 2):
                pair_counts[(a, b)] += 1
                pair_snippet.setdefault((a, b), snippet)

        edges = [
            EdgeCandidate(
                source_ref=a,
                target_ref=b,
                relationship_type="co_occurs_with",
                confidence=self.confidence,
                evidence_snippet=pair_snippet[(a, b)],
                weight=float(n),
            )
            for (a, b), n in pair_counts.items()
        ]
        return ExtractionBatch(nodes=nodes, edges=edges)


EXTRACT_SYSTEM_PROMPT = (
    "You are an entity extraction expert. Extract entities and their relationships from documents.\n"
    "\n"
    "Return a JSON object with this structure:\n"
    '{"entities": [{"type": "person|organization|location|date|concept|event|product|money|law|other", '
    '"name": "Entity Name", "confidence": 0.9, "description": "optional"}],\n'
    ' "relationships": [{"source": "Entity Name 1", "target": "Entity Name 2", '
    '"type": "related_to|contradicts|supports|references|authored_by|owned_by|located_in|occurred_on|'
    'involves|similar_to|part_of", "confidence": 0.85, "evidence": "brief quote"}]}\n'
    "\n"
    "Only extract entities and relationships you are confident about. "
    "Relationship sources and targets must be names from the entities list."
)


class LLMEntityExtractor:
    """Extractor backed by a local chat model (Ollama)."""

    def __init__(self, llm: OllamaChatClient, *, max_chars: int = 8000):
        self.llm = llm
        self.max_chars = int(max_chars)

    def extract(self, *, title: str | None, chunks: list[str]) -> ExtractionBatch:
        text = "\n\n".join(chunks)[: self.max_chars]
        msgs = [
            ChatMessage(role="system", content=EXTRACT_SYSTEM_PROMPT),
            ChatMessage(
                role="user",
                content=f'Extract entities and relationships from this document titled "{title or "untitled"}":\n\n{text}',
            ),
        ]
        data = parse_json_reply(self.llm.chat(msgs, json_mode=True), expect=dict)
        return _batch_from_reply(data)


def _batch_from_reply(data: dict[str, Any]) -> ExtractionBatch:
    nodes: list[NodeCandidate] = []
    for e in data.get("entities") or []:
        if not isinstance(e, dict) or not str(e.get("name") or "").strip():
            continue
        nodes.append(
            NodeCandidate(
                entity_type=norm_type(e.get("type") or "other"),
                name=str(e["name"]),
                confidence=_clamp(e.get("confidence", 0.5)),
                description=(str(e["description"]) if e.get("description") else None),
                properties=Properties(context=(str(e["context"]) if e.get("context") else None)),
            )
        )

    edges: list[EdgeCandidate] = []
    for r in data.get("relationships") or []:
        if not isinstance(r, dict):
            continue
        src = str(r.get("source") or r.get("sourceEntity") or "").strip()
        dst = str(r.get("target") or r.get("targetEntity") or "").strip()
        rtype = str(r.get("type") or r.get("relationshipType") or "related_to")
        if not src or not dst:
            continue
        edges.append(
            EdgeCandidate(
                source_ref=src,
                target_ref=dst,
                relationship_type=rtype,
                confidence=_clamp(r.get("confidence", 0.5)),
                evidence_snippet=(str(r["evidence"]) if r.get("evidence") else None),
            )
        )
    return ExtractionBatch(nodes=nodes, edges=edges)


def _clamp(v: Any) -> float:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return 0.5
    return min(max(f, 0.0), 1.0)


def extract_document(
    *,
    store: SqliteGraphStore,
    documents: DocumentSource,
    project_id: str,
    document_id: str,
    user_id: str,
    extractor: EntityExtractor,
    link_document: bool = True,
    strict: bool = False,
) -> ExtractionJob:
    """Run one extraction job. Re-raises the failure after marking the job failed."""
    job = store.create_job(project_id, document_id=document_id, user_id=user_id)
    job = store.begin_job(project_id, job.job_id)

    try:
        chunks = documents.get_chunk_texts(document_id)
        if not chunks:
            logger.info(f"Document {document_id} has no text; nothing to extract")
            return store.complete_job(project_id, job.job_id, entities_extracted=0, relationships_created=0)

        title = documents.get_title(document_id)
        batch = extractor.extract(title=title, chunks=chunks)
        if link_document and title:
            batch = replace(batch, document_name=title)
        res = store.ingest_batch(project_id, batch, document_id=document_id, strict=strict)
    except Exception as e:
        logger.error(f"Extraction job {job.job_id} for document {document_id} failed: {e}")
        store.fail_job(project_id, job.job_id, error_message=str(e))
        raise

    logger.info(
        f"Job {job.job_id}: {res.entities_extracted} new entities ({res.entities_merged} merged), "
        f"{res.relationships_created} new relationships ({res.relationships_skipped} skipped)"
    )
    return store.complete_job(
        project_id,
        job.job_id,
        entities_extracted=res.entities_extracted,
        relationships_created=res.relationships_created,
    )


def build_graph(
    *,
    store: SqliteGraphStore,
    documents: DocumentSource,
    project_id: str,
    user_id: str,
    extractor: EntityExtractor,
    document_ids: list[str] | None = None,
) -> dict[str, Any]:
    """Extract every (or the given) document of a project, one job each."""
    if document_ids is None:
        document_ids = list(documents.list_document_ids(project_id))

    jobs: list[int] = []
    failed = 0
    entities = 0
    relationships = 0

    for doc_id in document_ids:
        try:
            job = extract_document(
                store=store,
                documents=documents,
                project_id=project_id,
                document_id=doc_id,
                user_id=user_id,
                extractor=extractor,
            )
        except Exception:
            # Already logged and recorded on the job; keep going with the rest.
            failed += 1
            continue
        jobs.append(job.job_id)
        entities += job.entities_extracted
        relationships += job.relationships_created

    return {
        "documents_seen": len(document_ids),
        "documents_failed": failed,
        "entities_extracted": entities,
        "relationships_created": relationships,
        "jobs": jobs,
    }
