from __future__ import annotations

import re
from typing import TYPE_CHECKING, Protocol

from ..documents import DocumentRef, Excerpt
from .llm import ChatMessage, OllamaChatClient

if TYPE_CHECKING:
    from ..graph.query import GraphContext


NO_ANSWER = "I couldn't find that in the provided documents."

SYSTEM_PROMPT = (
    "You are a helpful assistant answering questions about a document collection.\n"
    "You have access to a knowledge graph that shows entities and their relationships across documents.\n"
    "\n"
    "Rules:\n"
    "- Use ONLY the provided KNOWLEDGE GRAPH and SOURCE blocks as ground truth.\n"
    "- If the graph shows connections between entities, explain those relationships.\n"
    "- Do not include URLs.\n"
    "- Every sentence must end with one or more citations in square brackets using the exact source id, e.g. [doc:12].\n"
    f'- If the answer is not in the sources, say: "{NO_ANSWER}"'
)


class Answerer(Protocol):
    def answer(
        self,
        *,
        question: str,
        context: GraphContext,
        documents: list[DocumentRef],
        excerpts: list[Excerpt],
    ) -> str: ...


def source_id(document_id: str) -> str:
    return f"doc:{document_id}"


def render_graph_context(context: GraphContext, *, max_neighbors: int = 10) -> str:
    entities = "\n".join(f"- {n.name} ({n.entity_type})" for n in context.entities)
    neighbors = "\n".join(
        f"- {nb.node.name} ({nb.node.entity_type}) - {nb.edge.relationship_type} - distance: {nb.distance}"
        for nb in context.neighbors[:max_neighbors]
    )
    paths = "\n".join(
        " -> ".join(n.name for n in p.nodes) + f" ({', '.join(e.relationship_type for e in p.edges)})"
        for p in context.paths
    )
    return (
        f"Relevant Entities:\n{entities or 'No directly relevant entities found'}\n\n"
        f"Connected Entities (neighbors):\n{neighbors or 'No connected entities'}\n\n"
        f"Connecting Paths:\n{paths or 'No paths between entities'}"
    )


def render_sources(documents: list[DocumentRef], excerpts: list[Excerpt]) -> str:
    blocks: list[str] = []
    for d in documents:
        text = [f"Document: {d.name}", f"Summary: {d.summary or 'No summary'}"]
        for x in excerpts:
            if x.document_id == d.id:
                text.append(" ".join(x.text.split())[:800])
        blocks.append(f"SOURCE {source_id(d.id)}\n" + "\n".join(text))
    return "\n\n---\n\n".join(blocks) if blocks else "(no sources retrieved)"


class GraphAnswerer:
    """Graph-grounded answers from a local chat model, with enforced citations."""

    def __init__(self, llm: OllamaChatClient):
        self.llm = llm

    def answer(
        self,
        *,
        question: str,
        context: GraphContext,
        documents: list[DocumentRef],
        excerpts: list[Excerpt],
    ) -> str:
        allowed_sources = [source_id(d.id) for d in documents]
        user_prompt = (
            f"Question:\n{question.strip()}\n\n"
            f"KNOWLEDGE GRAPH CONTEXT:\n{render_graph_context(context)}\n\n"
            f"DOCUMENT CONTEXT:\n{render_sources(documents, excerpts)}\n\n"
            "Write a concise answer in plain text.\n"
            "No headings. No 'Sources:' section. No links.\n"
            "Citations must be in square brackets, at the end of each sentence.\n"
            f"Allowed SOURCE_ID values: {', '.join(allowed_sources) if allowed_sources else '(none)'}"
        )
        msgs = [
            ChatMessage(role="system", content=SYSTEM_PROMPT),
            ChatMessage(role="user", content=user_prompt),
        ]

        msg = _strip_sources_section(self.llm.chat(msgs))
        if _is_grounded(msg, allowed_sources):
            return msg.strip()

        fix_prompt = (
            "Rewrite your answer to comply with the Rules exactly.\n"
            "- Use ONLY these SOURCE_ID citations: "
            f"{', '.join(allowed_sources) if allowed_sources else '(none)'}\n"
            "- Remove any URLs.\n"
            "- Do not add a bibliography.\n"
            "- Every sentence must end with citations like [SOURCE_ID]."
        )
        msg2 = _strip_sources_section(self.llm.chat(msgs + [ChatMessage(role="user", content=fix_prompt)]))
        if _is_grounded(msg2, allowed_sources):
            return msg2.strip()

        # Small local models often miss the citation format; quote instead.
        return extractive_answer(context, documents, excerpts)


class ExtractiveAnswerer:
    """Offline answerer: states the graph facts and quotes the sources."""

    def answer(
        self,
        *,
        question: str,
        context: GraphContext,
        documents: list[DocumentRef],
        excerpts: list[Excerpt],
    ) -> str:
        return extractive_answer(context, documents, excerpts)


def extractive_answer(context: GraphContext, documents: list[DocumentRef], excerpts: list[Excerpt]) -> str:
    lines: list[str] = []
    for p in context.paths[:3]:
        hops = [f"{a.name} {e.relationship_type} {b.name}" for a, e, b in zip(p.nodes, p.edges, p.nodes[1:])]
        cites = "".join(f"[{source_id(d)}]" for d in _path_documents(p))
        lines.append(f"- {'; '.join(hops)}. {cites}".rstrip())

    for x in excerpts[:3]:
        excerpt = " ".join(x.text.strip().split())
        if len(excerpt) > 360:
            excerpt = excerpt[:360].rstrip() + "..."
        lines.append(f"- {excerpt} [{source_id(x.document_id)}]")

    if not lines:
        for d in documents[:3]:
            if d.summary:
                lines.append(f"- {d.name}: {d.summary} [{source_id(d.id)}]")

    return "\n".join(lines) if lines else NO_ANSWER


def _path_documents(path) -> list[str]:
    docs: list[str] = []
    for e in path.edges:
        for d in e.source_document_ids:
            if d not in docs:
                docs.append(d)
    return docs


_CITATION_RE = re.compile(r"\[([^\[\]]+)\]")


def _is_grounded(text: str, allowed_sources: list[str]) -> bool:
    if "http://" in text or "https://" in text:
        return False
    cites = [c.strip() for m in _CITATION_RE.finditer(text) for c in m.group(1).split(",")]
    if not cites or not allowed_sources:
        return False
    allowed = set(allowed_sources)
    return all(c in allowed for c in cites)


def _strip_sources_section(text: str) -> str:
    """Remove a model-added trailing 'Sources:' block of bare ids."""
    lines = text.splitlines()
    last_idx = -1
    for i, line in enumerate(lines):
        if line.strip().lower() in {"sources:", "source:", "citations:", "references:"}:
            last_idx = i
    if last_idx == -1:
        return text

    for ln in (ln.strip() for ln in lines[last_idx + 1 :]):
        if ln and not ln.startswith("- ") and not ln.startswith("doc:") and not ln.startswith("[doc:"):
            return text
    return "\n".join(lines[:last_idx]).rstrip()
