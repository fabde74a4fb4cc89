from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from typing import Any


JOB_STATUSES = ("pending", "processing", "completed", "failed")
TERMINAL_JOB_STATUSES = ("completed", "failed")


@dataclass(frozen=True)
class Properties:
    """Typed property bag for nodes and edges.

    `aliases`, `role` and `context` are the fields extractors actually emit;
    anything else goes to `extra`.
    """

    aliases: tuple[str, ...] = ()
    role: str | None = None
    context: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def merge(self, other: Properties, *, override: bool = False) -> Properties:
        aliases = list(self.aliases)
        for a in other.aliases:
            if a not in aliases:
                aliases.append(a)

        extra = dict(self.extra)
        for k, v in other.extra.items():
            if override or k not in extra:
                extra[k] = v

        return Properties(
            aliases=tuple(aliases),
            role=_pick(self.role, other.role, override),
            context=_pick(self.context, other.context, override),
            extra=extra,
        )

    def is_empty(self) -> bool:
        return not (self.aliases or self.role or self.context or self.extra)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.aliases:
            out["aliases"] = list(self.aliases)
        if self.role is not None:
            out["role"] = self.role
        if self.context is not None:
            out["context"] = self.context
        if self.extra:
            out["extra"] = dict(self.extra)
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=True, sort_keys=True)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Properties:
        """Build from a stored or user-supplied mapping.

        Unknown top-level keys are folded into `extra` so loose extractor
        output is never dropped.
        """
        if not data:
            return cls()
        data = dict(data)
        aliases = data.pop("aliases", None) or ()
        if isinstance(aliases, str):
            aliases = (aliases,)
        role = data.pop("role", None)
        context = data.pop("context", None)
        extra = dict(data.pop("extra", None) or {})
        for k, v in data.items():
            extra.setdefault(k, v)
        return cls(
            aliases=tuple(str(a) for a in aliases),
            role=(str(role) if role is not None else None),
            context=(str(context) if context is not None else None),
            extra=extra,
        )

    @classmethod
    def from_json(cls, raw: str | None) -> Properties:
        if not raw:
            return cls()
        return cls.from_dict(json.loads(raw))


def _pick(current: str | None, new: str | None, override: bool) -> str | None:
    if new is None:
        return current
    if current is None or override:
        return new
    return current


@dataclass(frozen=True)
class NodeEvidence:
    confidence: float = 0.5
    source_document_id: str | None = None
    description: str | None = None
    properties: Properties = field(default_factory=Properties)
    # Replace existing description/property values instead of keeping them.
    override: bool = False


@dataclass(frozen=True)
class EdgeEvidence:
    confidence: float = 0.5
    weight: float = 1.0
    snippet: str | None = None
    source_document_id: str | None = None
    properties: Properties = field(default_factory=Properties)
    is_ai_discovered: bool = False
    override: bool = False


@dataclass(frozen=True)
class Node:
    node_id: int
    project_id: str
    entity_type: str
    name: str
    name_norm: str
    description: str | None
    properties: Properties
    mention_count: int
    confidence: float
    source_document_ids: tuple[str, ...]
    created_at: float
    updated_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node_id,
            "projectId": self.project_id,
            "entityType": self.entity_type,
            "name": self.name,
            "normalizedName": self.name_norm,
            "description": self.description,
            "properties": self.properties.to_dict(),
            "mentionCount": self.mention_count,
            "confidenceScore": self.confidence,
            "sourceDocumentIds": list(self.source_document_ids),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class Edge:
    edge_id: int
    project_id: str
    source_node_id: int
    target_node_id: int
    relationship_type: str
    weight: float
    properties: Properties
    evidence_snippets: tuple[str, ...]
    source_document_ids: tuple[str, ...]
    is_ai_discovered: bool
    confidence: float
    created_at: float
    updated_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.edge_id,
            "projectId": self.project_id,
            "sourceNodeId": self.source_node_id,
            "targetNodeId": self.target_node_id,
            "relationshipType": self.relationship_type,
            "weight": self.weight,
            "properties": self.properties.to_dict(),
            "evidenceSnippets": list(self.evidence_snippets),
            "sourceDocumentIds": list(self.source_document_ids),
            "isAiDiscovered": self.is_ai_discovered,
            "confidenceScore": self.confidence,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class Insight:
    insight_id: int
    project_id: str
    user_id: str
    insight_type: str
    title: str
    description: str
    involved_node_ids: tuple[int, ...]
    involved_edge_ids: tuple[int, ...]
    involved_document_ids: tuple[str, ...]
    confidence: float
    is_dismissed: bool
    is_confirmed: bool
    created_at: float

    def signature(self) -> frozenset[str]:
        return insight_signature(self.involved_node_ids, self.involved_edge_ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.insight_id,
            "projectId": self.project_id,
            "userId": self.user_id,
            "insightType": self.insight_type,
            "title": self.title,
            "description": self.description,
            "involvedNodeIds": list(self.involved_node_ids),
            "involvedEdgeIds": list(self.involved_edge_ids),
            "involvedDocumentIds": list(self.involved_document_ids),
            "confidenceScore": self.confidence,
            "isDismissed": self.is_dismissed,
            "isConfirmed": self.is_confirmed,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class ProposedInsight:
    insight_type: str
    title: str
    description: str = ""
    confidence: float = 0.8
    node_ids: tuple[int, ...] = ()
    edge_ids: tuple[int, ...] = ()
    document_ids: tuple[str, ...] = ()

    def signature(self) -> frozenset[str]:
        return insight_signature(self.node_ids, self.edge_ids)


def insight_signature(node_ids, edge_ids) -> frozenset[str]:
    return frozenset([f"n{int(n)}" for n in node_ids] + [f"e{int(e)}" for e in edge_ids])


@dataclass(frozen=True)
class ExtractionJob:
    job_id: int
    project_id: str
    document_id: str | None
    user_id: str
    status: str
    entities_extracted: int
    relationships_created: int
    started_at: float | None
    completed_at: float | None
    error_message: str | None
    created_at: float

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.job_id,
            "projectId": self.project_id,
            "documentId": self.document_id,
            "userId": self.user_id,
            "status": self.status,
            "entitiesExtracted": self.entities_extracted,
            "relationshipsCreated": self.relationships_created,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "errorMessage": self.error_message,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class NodeCandidate:
    entity_type: str
    name: str
    confidence: float = 0.5
    description: str | None = None
    properties: Properties = field(default_factory=Properties)
    source_document_id: str | None = None
    evidence_snippet: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> NodeCandidate:
        return cls(
            entity_type=str(d.get("entityType") or d.get("entity_type") or d.get("type") or ""),
            name=str(d.get("name") or ""),
            confidence=float(d.get("confidence", 0.5)),
            description=d.get("description"),
            properties=Properties.from_dict(d.get("properties")),
            source_document_id=_opt_str(d.get("sourceDocumentId") or d.get("source_document_id")),
            evidence_snippet=d.get("evidenceSnippet") or d.get("evidence_snippet"),
        )


@dataclass(frozen=True)
class EdgeCandidate:
    # Refs are entity names, optionally "type:name", resolved within the batch.
    source_ref: str
    target_ref: str
    relationship_type: str
    confidence: float = 0.5
    evidence_snippet: str | None = None
    weight: float = 1.0
    properties: Properties = field(default_factory=Properties)

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> EdgeCandidate:
        return cls(
            source_ref=str(d.get("sourceEntityRef") or d.get("source_ref") or d.get("source") or ""),
            target_ref=str(d.get("targetEntityRef") or d.get("target_ref") or d.get("target") or ""),
            relationship_type=str(d.get("relationshipType") or d.get("relationship_type") or d.get("type") or ""),
            confidence=float(d.get("confidence", 0.5)),
            evidence_snippet=d.get("evidenceSnippet") or d.get("evidence_snippet") or d.get("evidence"),
            weight=float(d.get("weight", 1.0)),
            properties=Properties.from_dict(d.get("properties")),
        )


@dataclass(frozen=True)
class ExtractionBatch:
    nodes: list[NodeCandidate] = field(default_factory=list)
    edges: list[EdgeCandidate] = field(default_factory=list)
    # When set, a `document` node is merged and linked via `mentioned_in` edges.
    document_name: str | None = None

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ExtractionBatch:
        return cls(
            nodes=[NodeCandidate.from_dict(x) for x in (d.get("nodes") or d.get("entities") or [])],
            edges=[EdgeCandidate.from_dict(x) for x in (d.get("edges") or d.get("relationships") or [])],
            document_name=d.get("documentName") or d.get("document_name"),
        )

    def with_document(self, document_id: str | None) -> ExtractionBatch:
        """Fill in the batch's source document on candidates that lack one."""
        if document_id is None:
            return self
        nodes = [
            n if n.source_document_id is not None else replace(n, source_document_id=document_id)
            for n in self.nodes
        ]
        return replace(self, nodes=nodes)


@dataclass(frozen=True)
class BatchResult:
    entities_extracted: int
    entities_merged: int
    relationships_created: int
    relationships_merged: int
    relationships_skipped: int
    node_ids: tuple[int, ...] = ()
    edge_ids: tuple[int, ...] = ()


def _opt_str(v: Any) -> str | None:
    return str(v) if v is not None else None
