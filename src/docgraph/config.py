from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    # Default DB path used by the web API and CLI defaults.
    db_path: str = os.getenv("DOCGRAPH_DB_PATH", "./data/graph.db")

    # Ollama (entity extraction, insight proposals, answers)
    ollama_base_url: str = os.getenv("DOCGRAPH_OLLAMA_BASE_URL", "http://localhost:11434")
    ollama_model: str = os.getenv("DOCGRAPH_OLLAMA_MODEL", "llama3.2:1b")
    ollama_temperature: float = float(os.getenv("DOCGRAPH_OLLAMA_TEMPERATURE", "0.2"))
    ollama_timeout_s: float = float(os.getenv("DOCGRAPH_OLLAMA_TIMEOUT_S", "120"))

    # Graph snapshot caps
    max_snapshot_nodes: int = int(os.getenv("DOCGRAPH_MAX_SNAPSHOT_NODES", "500"))
    max_snapshot_edges: int = int(os.getenv("DOCGRAPH_MAX_SNAPSHOT_EDGES", "1000"))
    max_snapshot_insights: int = int(os.getenv("DOCGRAPH_MAX_SNAPSHOT_INSIGHTS", "50"))

    # Merge rules
    max_evidence_snippets: int = int(os.getenv("DOCGRAPH_MAX_EVIDENCE_SNIPPETS", "10"))
    corroboration_rate: float = float(os.getenv("DOCGRAPH_CORROBORATION_RATE", "0.5"))

    # Traversal
    visited_budget: int = int(os.getenv("DOCGRAPH_VISITED_BUDGET", "5000"))
    neighbor_depth: int = int(os.getenv("DOCGRAPH_NEIGHBOR_DEPTH", "2"))
    path_max_depth: int = int(os.getenv("DOCGRAPH_PATH_MAX_DEPTH", "5"))
    max_seeds: int = int(os.getenv("DOCGRAPH_MAX_SEEDS", "5"))

    # Insight discovery
    hub_degree: int = int(os.getenv("DOCGRAPH_HUB_DEGREE", "5"))
    hub_mentions: int = int(os.getenv("DOCGRAPH_HUB_MENTIONS", "10"))
    high_confidence: float = float(os.getenv("DOCGRAPH_HIGH_CONFIDENCE", "0.8"))
    insight_overlap: float = float(os.getenv("DOCGRAPH_INSIGHT_OVERLAP", "0.8"))

    log_level: str = os.getenv("DOCGRAPH_LOG_LEVEL", "INFO")


def configure_logging(level: str | int = "INFO") -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
