"""Document tables shared with the surrounding platform.

Upload and chunking happen elsewhere; this module only stores what the graph
engine needs from documents: text to extract from, names/summaries to cite
as sources, and chunk excerpts to ground answers.
"""

from __future__ import annotations

import json
import os
import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Protocol


SCHEMA_VERSION = 2


@dataclass(frozen=True)
class DocumentRef:
    id: str
    name: str
    summary: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "summary": self.summary}


@dataclass(frozen=True)
class Excerpt:
    document_id: str
    source_ref: str
    text: str


class DocumentSource(Protocol):
    def get_documents(self, document_ids: list[str]) -> list[DocumentRef]: ...

    def get_excerpts(self, document_ids: list[str], *, per_document: int = 2) -> list[Excerpt]: ...

    def get_chunk_texts(self, document_id: str) -> list[str]: ...

    def get_title(self, document_id: str) -> str | None: ...

    def list_document_ids(self, project_id: str) -> list[str]: ...


def connect(
    db_path: str | os.PathLike[str],
    *,
    timeout_s: float = 30.0,
    check_same_thread: bool = True,
) -> sqlite3.Connection:
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), timeout=float(timeout_s), check_same_thread=check_same_thread)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
          key TEXT PRIMARY KEY,
          value TEXT NOT NULL
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
          doc_id INTEGER PRIMARY KEY,
          project_id TEXT NOT NULL,
          source_type TEXT NOT NULL,
          path TEXT NOT NULL,
          title TEXT NOT NULL,
          sha256 TEXT NOT NULL,
          metadata_json TEXT NOT NULL,
          created_at INTEGER NOT NULL,
          UNIQUE (project_id, path)
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chunks (
          chunk_id INTEGER PRIMARY KEY,
          doc_id INTEGER NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
          source_ref TEXT NOT NULL,
          heading TEXT,
          text TEXT NOT NULL,
          metadata_json TEXT NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_doc ON chunks(doc_id, chunk_id);")
    conn.execute(
        "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
        ("schema_version", str(SCHEMA_VERSION)),
    )
    conn.commit()


def upsert_document(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    source_type: str,
    path: str,
    title: str,
    sha256: str,
    metadata: dict[str, Any] | None = None,
) -> tuple[int, bool]:
    """Insert/update document.

    Returns: (doc_id, changed)
    """
    metadata = metadata or {}

    row = conn.execute(
        "SELECT doc_id, sha256 FROM documents WHERE project_id = ? AND path = ?",
        (project_id, path),
    ).fetchone()
    now = int(time.time())

    if row is None:
        cur = conn.execute(
            """
            INSERT INTO documents(project_id, source_type, path, title, sha256, metadata_json, created_at)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            """,
            (project_id, source_type, path, title, sha256, json.dumps(metadata, ensure_ascii=True), now),
        )
        return int(cur.lastrowid), True

    doc_id = int(row["doc_id"])
    if row["sha256"] == sha256:
        # No change
        return doc_id, False

    conn.execute(
        """
        UPDATE documents
        SET source_type=?, title=?, sha256=?, metadata_json=?
        WHERE doc_id=?
        """,
        (source_type, title, sha256, json.dumps(metadata, ensure_ascii=True), doc_id),
    )
    # Replace chunks
    conn.execute("DELETE FROM chunks WHERE doc_id = ?", (doc_id,))
    return doc_id, True


def insert_chunks(conn: sqlite3.Connection, chunks: Iterable[dict[str, Any]]) -> None:
    conn.executemany(
        """
        INSERT INTO chunks(doc_id, source_ref, heading, text, metadata_json)
        VALUES (?, ?, ?, ?, ?)
        """,
        [
            (
                int(c["doc_id"]),
                str(c["source_ref"]),
                c.get("heading"),
                str(c["text"]),
                json.dumps(c.get("metadata", {}), ensure_ascii=True),
            )
            for c in chunks
        ],
    )


def iter_document_ids(conn: sqlite3.Connection, project_id: str) -> Iterable[str]:
    cur = conn.execute("SELECT doc_id FROM documents WHERE project_id = ? ORDER BY doc_id", (project_id,))
    for r in cur.fetchall():
        yield str(r["doc_id"])


def get_chunks_for_document(conn: sqlite3.Connection, doc_id: int, *, limit: int = -1) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            "SELECT chunk_id, doc_id, source_ref, heading, text FROM chunks WHERE doc_id = ? ORDER BY chunk_id LIMIT ?",
            (int(doc_id), int(limit)),
        )
    )


def _doc_key(document_id: str) -> int | None:
    try:
        return int(document_id)
    except (TypeError, ValueError):
        return None


class SqliteDocumentSource:
    """`DocumentSource` over the documents/chunks tables.

    Graph evidence stores document ids as strings; they map to `doc_id`.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        init_db(conn)

    def get_documents(self, document_ids: list[str]) -> list[DocumentRef]:
        keys = [k for k in (_doc_key(d) for d in document_ids) if k is not None]
        if not keys:
            return []
        placeholders = ",".join(["?"] * len(keys))
        rows = self.conn.execute(
            f"SELECT doc_id, title, metadata_json FROM documents WHERE doc_id IN ({placeholders})",
            keys,
        ).fetchall()
        by_id = {str(r["doc_id"]): r for r in rows}
        out: list[DocumentRef] = []
        for d in document_ids:
            r = by_id.get(str(d))
            if r is None:
                continue
            meta = json.loads(r["metadata_json"] or "{}")
            out.append(DocumentRef(id=str(r["doc_id"]), name=str(r["title"]), summary=meta.get("summary")))
        return out

    def get_excerpts(self, document_ids: list[str], *, per_document: int = 2) -> list[Excerpt]:
        out: list[Excerpt] = []
        for d in document_ids:
            key = _doc_key(d)
            if key is None:
                continue
            for c in get_chunks_for_document(self.conn, key, limit=per_document):
                out.append(Excerpt(document_id=str(d), source_ref=str(c["source_ref"]), text=str(c["text"])))
        return out

    def get_chunk_texts(self, document_id: str) -> list[str]:
        key = _doc_key(document_id)
        if key is None:
            return []
        return [str(r["text"]) for r in get_chunks_for_document(self.conn, key)]

    def get_title(self, document_id: str) -> str | None:
        refs = self.get_documents([document_id])
        return refs[0].name if refs else None

    def list_document_ids(self, project_id: str) -> list[str]:
        return list(iter_document_ids(self.conn, project_id))
