from __future__ import annotations

import json
import sqlite3
from typing import Any, Iterable

from .models import Edge, ExtractionJob, Insight, Node, Properties


def init_graph(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS nodes (
          node_id INTEGER PRIMARY KEY,
          project_id TEXT NOT NULL,
          entity_type TEXT NOT NULL,
          name TEXT NOT NULL,
          name_norm TEXT NOT NULL,
          description TEXT,
          properties_json TEXT NOT NULL,
          mention_count INTEGER NOT NULL,
          confidence REAL NOT NULL,
          source_document_ids_json TEXT NOT NULL,
          created_at REAL NOT NULL,
          updated_at REAL NOT NULL,
          UNIQUE (project_id, entity_type, name_norm)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_project_mentions ON nodes(project_id, mention_count DESC);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_nodes_project_name_norm ON nodes(project_id, name_norm);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS edges (
          edge_id INTEGER PRIMARY KEY,
          project_id TEXT NOT NULL,
          source_node_id INTEGER NOT NULL REFERENCES nodes(node_id) ON DELETE CASCADE,
          target_node_id INTEGER NOT NULL REFERENCES nodes(node_id) ON DELETE CASCADE,
          relationship_type TEXT NOT NULL,
          weight REAL NOT NULL CHECK (weight >= 0),
          properties_json TEXT NOT NULL,
          evidence_json TEXT NOT NULL,
          source_document_ids_json TEXT NOT NULL,
          is_ai_discovered INTEGER NOT NULL DEFAULT 0,
          confidence REAL NOT NULL,
          created_at REAL NOT NULL,
          updated_at REAL NOT NULL,
          CHECK (source_node_id <> target_node_id),
          UNIQUE (project_id, source_node_id, target_node_id, relationship_type)
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_edges_source ON edges(source_node_id);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target_node_id);")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_edges_project_weight ON edges(project_id, weight DESC);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS insights (
          insight_id INTEGER PRIMARY KEY,
          project_id TEXT NOT NULL,
          user_id TEXT NOT NULL,
          insight_type TEXT NOT NULL,
          title TEXT NOT NULL,
          description TEXT NOT NULL,
          involved_node_ids_json TEXT NOT NULL,
          involved_edge_ids_json TEXT NOT NULL,
          involved_document_ids_json TEXT NOT NULL,
          confidence REAL NOT NULL,
          is_dismissed INTEGER NOT NULL DEFAULT 0,
          is_confirmed INTEGER NOT NULL DEFAULT 0,
          created_at REAL NOT NULL
        );
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_insights_project_active ON insights(project_id, is_dismissed, created_at DESC);"
    )

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS extraction_jobs (
          job_id INTEGER PRIMARY KEY,
          project_id TEXT NOT NULL,
          document_id TEXT,
          user_id TEXT NOT NULL,
          status TEXT NOT NULL CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
          entities_extracted INTEGER NOT NULL DEFAULT 0,
          relationships_created INTEGER NOT NULL DEFAULT 0,
          started_at REAL,
          completed_at REAL,
          error_message TEXT,
          created_at REAL NOT NULL
        );
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_project ON extraction_jobs(project_id, created_at DESC);")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scan_state (
          project_id TEXT PRIMARY KEY,
          last_edge_id INTEGER NOT NULL,
          last_node_id INTEGER NOT NULL,
          scanned_at REAL NOT NULL
        );
        """
    )
    conn.commit()


# --- row mapping ---------------------------------------------------------


def _ids(raw: str | None) -> list[Any]:
    if not raw:
        return []
    return list(json.loads(raw))


def dump_ids(values: Iterable[Any]) -> str:
    return json.dumps(list(values), ensure_ascii=True)


def row_to_node(r: sqlite3.Row) -> Node:
    return Node(
        node_id=int(r["node_id"]),
        project_id=str(r["project_id"]),
        entity_type=str(r["entity_type"]),
        name=str(r["name"]),
        name_norm=str(r["name_norm"]),
        description=(str(r["description"]) if r["description"] is not None else None),
        properties=Properties.from_json(r["properties_json"]),
        mention_count=int(r["mention_count"]),
        confidence=float(r["confidence"]),
        source_document_ids=tuple(str(x) for x in _ids(r["source_document_ids_json"])),
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


def row_to_edge(r: sqlite3.Row) -> Edge:
    return Edge(
        edge_id=int(r["edge_id"]),
        project_id=str(r["project_id"]),
        source_node_id=int(r["source_node_id"]),
        target_node_id=int(r["target_node_id"]),
        relationship_type=str(r["relationship_type"]),
        weight=float(r["weight"]),
        properties=Properties.from_json(r["properties_json"]),
        evidence_snippets=tuple(str(x) for x in _ids(r["evidence_json"])),
        source_document_ids=tuple(str(x) for x in _ids(r["source_document_ids_json"])),
        is_ai_discovered=bool(r["is_ai_discovered"]),
        confidence=float(r["confidence"]),
        created_at=float(r["created_at"]),
        updated_at=float(r["updated_at"]),
    )


def row_to_insight(r: sqlite3.Row) -> Insight:
    return Insight(
        insight_id=int(r["insight_id"]),
        project_id=str(r["project_id"]),
        user_id=str(r["user_id"]),
        insight_type=str(r["insight_type"]),
        title=str(r["title"]),
        description=str(r["description"]),
        involved_node_ids=tuple(int(x) for x in _ids(r["involved_node_ids_json"])),
        involved_edge_ids=tuple(int(x) for x in _ids(r["involved_edge_ids_json"])),
        involved_document_ids=tuple(str(x) for x in _ids(r["involved_document_ids_json"])),
        confidence=float(r["confidence"]),
        is_dismissed=bool(r["is_dismissed"]),
        is_confirmed=bool(r["is_confirmed"]),
        created_at=float(r["created_at"]),
    )


def row_to_job(r: sqlite3.Row) -> ExtractionJob:
    return ExtractionJob(
        job_id=int(r["job_id"]),
        project_id=str(r["project_id"]),
        document_id=(str(r["document_id"]) if r["document_id"] is not None else None),
        user_id=str(r["user_id"]),
        status=str(r["status"]),
        entities_extracted=int(r["entities_extracted"]),
        relationships_created=int(r["relationships_created"]),
        started_at=r["started_at"],
        completed_at=r["completed_at"],
        error_message=r["error_message"],
        created_at=float(r["created_at"]),
    )


# --- nodes ---------------------------------------------------------------


def find_node_by_key(conn: sqlite3.Connection, *, project_id: str, entity_type: str, name_norm: str):
    return conn.execute(
        "SELECT * FROM nodes WHERE project_id = ? AND entity_type = ? AND name_norm = ?",
        (project_id, entity_type, name_norm),
    ).fetchone()


def insert_node(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    entity_type: str,
    name: str,
    name_norm: str,
    description: str | None,
    properties_json: str,
    confidence: float,
    source_document_ids: list[str],
    now: float,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO nodes(
          project_id, entity_type, name, name_norm, description, properties_json,
          mention_count, confidence, source_document_ids_json, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
        """,
        (
            project_id,
            entity_type,
            name,
            name_norm,
            description,
            properties_json,
            float(confidence),
            dump_ids(source_document_ids),
            now,
            now,
        ),
    )
    return int(cur.lastrowid)


def update_node_merge(
    conn: sqlite3.Connection,
    *,
    node_id: int,
    description: str | None,
    properties_json: str,
    confidence: float,
    source_document_ids: list[str],
    now: float,
) -> None:
    # mention_count is bumped in SQL so the increment never depends on a stale read.
    conn.execute(
        """
        UPDATE nodes
        SET mention_count = mention_count + 1,
            description = ?,
            properties_json = ?,
            confidence = ?,
            source_document_ids_json = ?,
            updated_at = ?
        WHERE node_id = ?
        """,
        (description, properties_json, float(confidence), dump_ids(source_document_ids), now, int(node_id)),
    )


def get_node_row(conn: sqlite3.Connection, node_id: int):
    return conn.execute("SELECT * FROM nodes WHERE node_id = ?", (int(node_id),)).fetchone()


def get_node_rows(conn: sqlite3.Connection, node_ids: list[int]) -> list[sqlite3.Row]:
    if not node_ids:
        return []
    placeholders = ",".join(["?"] * len(node_ids))
    return list(conn.execute(f"SELECT * FROM nodes WHERE node_id IN ({placeholders})", [int(n) for n in node_ids]))


def top_nodes(conn: sqlite3.Connection, project_id: str, *, limit: int) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            """
            SELECT * FROM nodes
            WHERE project_id = ?
            ORDER BY mention_count DESC, node_id ASC
            LIMIT ?
            """,
            (project_id, int(limit)),
        )
    )


def nodes_touched_since(conn: sqlite3.Connection, project_id: str, *, since: float) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            "SELECT * FROM nodes WHERE project_id = ? AND updated_at > ? ORDER BY node_id",
            (project_id, float(since)),
        )
    )


def get_node_matches(conn: sqlite3.Connection, project_id: str, term_norm: str, *, limit: int = 10):
    like = f"%{term_norm}%"
    return conn.execute(
        """
        SELECT * FROM nodes
        WHERE project_id = ? AND name_norm LIKE ?
        ORDER BY (name_norm = ?) DESC, mention_count DESC, node_id ASC
        LIMIT ?
        """,
        (project_id, like, term_norm, int(limit)),
    ).fetchall()


# --- edges ---------------------------------------------------------------


def find_edge_by_key(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    source_node_id: int,
    target_node_id: int,
    relationship_type: str,
):
    return conn.execute(
        """
        SELECT * FROM edges
        WHERE project_id = ? AND source_node_id = ? AND target_node_id = ? AND relationship_type = ?
        """,
        (project_id, int(source_node_id), int(target_node_id), relationship_type),
    ).fetchone()


def insert_edge(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    source_node_id: int,
    target_node_id: int,
    relationship_type: str,
    weight: float,
    properties_json: str,
    evidence: list[str],
    source_document_ids: list[str],
    is_ai_discovered: bool,
    confidence: float,
    now: float,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO edges(
          project_id, source_node_id, target_node_id, relationship_type, weight,
          properties_json, evidence_json, source_document_ids_json, is_ai_discovered,
          confidence, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            project_id,
            int(source_node_id),
            int(target_node_id),
            relationship_type,
            float(weight),
            properties_json,
            dump_ids(evidence),
            dump_ids(source_document_ids),
            1 if is_ai_discovered else 0,
            float(confidence),
            now,
            now,
        ),
    )
    return int(cur.lastrowid)


def update_edge_merge(
    conn: sqlite3.Connection,
    *,
    edge_id: int,
    weight_inc: float,
    properties_json: str,
    evidence: list[str],
    source_document_ids: list[str],
    is_ai_discovered: bool,
    confidence: float,
    now: float,
) -> None:
    conn.execute(
        """
        UPDATE edges
        SET weight = weight + ?,
            properties_json = ?,
            evidence_json = ?,
            source_document_ids_json = ?,
            is_ai_discovered = MAX(is_ai_discovered, ?),
            confidence = ?,
            updated_at = ?
        WHERE edge_id = ?
        """,
        (
            float(weight_inc),
            properties_json,
            dump_ids(evidence),
            dump_ids(source_document_ids),
            1 if is_ai_discovered else 0,
            float(confidence),
            now,
            int(edge_id),
        ),
    )


def get_edge_row(conn: sqlite3.Connection, edge_id: int):
    return conn.execute("SELECT * FROM edges WHERE edge_id = ?", (int(edge_id),)).fetchone()


def get_edge_rows(conn: sqlite3.Connection, edge_ids: list[int]) -> list[sqlite3.Row]:
    if not edge_ids:
        return []
    placeholders = ",".join(["?"] * len(edge_ids))
    return list(conn.execute(f"SELECT * FROM edges WHERE edge_id IN ({placeholders})", [int(e) for e in edge_ids]))


def out_edge_rows(conn: sqlite3.Connection, source_node_ids: list[int]) -> list[sqlite3.Row]:
    """All outgoing edges of a frontier, in one indexed lookup."""
    if not source_node_ids:
        return []
    placeholders = ",".join(["?"] * len(source_node_ids))
    return list(
        conn.execute(
            f"""
            SELECT * FROM edges
            WHERE source_node_id IN ({placeholders})
            ORDER BY weight DESC, edge_id ASC
            """,
            [int(n) for n in source_node_ids],
        )
    )


def top_edges(conn: sqlite3.Connection, project_id: str, *, limit: int) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            """
            SELECT * FROM edges
            WHERE project_id = ?
            ORDER BY weight DESC, edge_id ASC
            LIMIT ?
            """,
            (project_id, int(limit)),
        )
    )


def project_edge_rows(conn: sqlite3.Connection, project_id: str) -> list[sqlite3.Row]:
    return list(conn.execute("SELECT * FROM edges WHERE project_id = ? ORDER BY edge_id", (project_id,)))


def count_relationship_type(conn: sqlite3.Connection, project_id: str, relationship_type: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM edges WHERE project_id = ? AND relationship_type = ?",
        (project_id, relationship_type),
    ).fetchone()
    return int(row["n"])


def max_ids(conn: sqlite3.Connection, project_id: str) -> tuple[int, int]:
    e = conn.execute("SELECT COALESCE(MAX(edge_id), 0) AS m FROM edges WHERE project_id = ?", (project_id,)).fetchone()
    n = conn.execute("SELECT COALESCE(MAX(node_id), 0) AS m FROM nodes WHERE project_id = ?", (project_id,)).fetchone()
    return int(e["m"]), int(n["m"])


# --- insights ------------------------------------------------------------


def insert_insight(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    user_id: str,
    insight_type: str,
    title: str,
    description: str,
    node_ids: Iterable[int],
    edge_ids: Iterable[int],
    document_ids: Iterable[str],
    confidence: float,
    now: float,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO insights(
          project_id, user_id, insight_type, title, description,
          involved_node_ids_json, involved_edge_ids_json, involved_document_ids_json,
          confidence, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            project_id,
            user_id,
            insight_type,
            title,
            description,
            dump_ids(node_ids),
            dump_ids(edge_ids),
            dump_ids(document_ids),
            float(confidence),
            now,
        ),
    )
    return int(cur.lastrowid)


def get_insight_row(conn: sqlite3.Connection, insight_id: int):
    return conn.execute("SELECT * FROM insights WHERE insight_id = ?", (int(insight_id),)).fetchone()


def active_insight_rows(conn: sqlite3.Connection, project_id: str) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            "SELECT * FROM insights WHERE project_id = ? AND is_dismissed = 0 ORDER BY insight_id",
            (project_id,),
        )
    )


def list_insight_rows(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    limit: int,
    offset: int = 0,
    include_dismissed: bool = False,
) -> tuple[list[sqlite3.Row], int]:
    where = "project_id = ?" if include_dismissed else "project_id = ? AND is_dismissed = 0"
    total = conn.execute(f"SELECT COUNT(*) AS n FROM insights WHERE {where}", (project_id,)).fetchone()["n"]
    rows = conn.execute(
        f"""
        SELECT * FROM insights
        WHERE {where}
        ORDER BY created_at DESC, insight_id DESC
        LIMIT ? OFFSET ?
        """,
        (project_id, int(limit), int(offset)),
    ).fetchall()
    return list(rows), int(total)


def set_insight_flag(conn: sqlite3.Connection, insight_id: int, *, column: str) -> None:
    if column not in ("is_dismissed", "is_confirmed"):
        raise ValueError(f"Unknown insight flag: {column}")
    conn.execute(f"UPDATE insights SET {column} = 1 WHERE insight_id = ?", (int(insight_id),))


# --- jobs ----------------------------------------------------------------


def insert_job(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    document_id: str | None,
    user_id: str,
    status: str,
    now: float,
) -> int:
    cur = conn.execute(
        """
        INSERT INTO extraction_jobs(project_id, document_id, user_id, status, started_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (project_id, document_id, user_id, status, now if status != "pending" else None, now),
    )
    return int(cur.lastrowid)


def get_job_row(conn: sqlite3.Connection, job_id: int):
    return conn.execute("SELECT * FROM extraction_jobs WHERE job_id = ?", (int(job_id),)).fetchone()


def update_job(conn: sqlite3.Connection, job_id: int, **fields: Any) -> int:
    """Update a non-terminal job; returns the number of rows changed."""
    cols = ", ".join(f"{k} = ?" for k in fields)
    cur = conn.execute(
        f"UPDATE extraction_jobs SET {cols} WHERE job_id = ? AND status IN ('pending', 'processing')",
        (*fields.values(), int(job_id)),
    )
    return int(cur.rowcount)


def list_job_rows(conn: sqlite3.Connection, project_id: str, *, limit: int = 20) -> list[sqlite3.Row]:
    return list(
        conn.execute(
            "SELECT * FROM extraction_jobs WHERE project_id = ? ORDER BY created_at DESC, job_id DESC LIMIT ?",
            (project_id, int(limit)),
        )
    )


# --- scan state ----------------------------------------------------------


def get_scan_state(conn: sqlite3.Connection, project_id: str):
    return conn.execute("SELECT * FROM scan_state WHERE project_id = ?", (project_id,)).fetchone()


def set_scan_state(
    conn: sqlite3.Connection,
    project_id: str,
    *,
    last_edge_id: int,
    last_node_id: int,
    scanned_at: float,
) -> None:
    conn.execute(
        """
        INSERT INTO scan_state(project_id, last_edge_id, last_node_id, scanned_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(project_id) DO UPDATE SET
          last_edge_id = excluded.last_edge_id,
          last_node_id = excluded.last_node_id,
          scanned_at = excluded.scanned_at
        """,
        (project_id, int(last_edge_id), int(last_node_id), float(scanned_at)),
    )
