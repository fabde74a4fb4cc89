from __future__ import annotations

import hashlib
import json
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import httpx
import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from .chat.answer import ExtractiveAnswerer, GraphAnswerer
from .chat.llm import OllamaChatClient
from .config import Settings, configure_logging
from .documents import SqliteDocumentSource, connect, init_db, insert_chunks, upsert_document
from .errors import GraphError
from .graph.build import HeuristicExtractor, LLMEntityExtractor, build_graph
from .graph.insights import InsightDiscovery, LLMInsightProposer
from .graph.models import ExtractionBatch
from .graph.query import GraphSearch, LLMEntityResolver
from .graph.store import SqliteGraphStore
from .graph.traverse import Deadline, TraversalEngine


app = typer.Typer(add_completion=False, help="DocGraph: evidence-backed knowledge graphs over your documents.")
console = Console()

docs_app = typer.Typer(add_completion=False, help="Document store helpers.")
graph_app = typer.Typer(add_completion=False, help="Build, explore and search the knowledge graph.")
app.add_typer(docs_app, name="docs")
app.add_typer(graph_app, name="graph")

DB_OPT = typer.Option(Path(Settings().db_path), "--db", help="SQLite DB path")
PROJECT_OPT = typer.Option("default", "--project", "-p", help="Project id")
USER_OPT = typer.Option("cli", "--user", help="User id recorded on jobs and insights")


@app.callback()
def main(
    log_level: str = typer.Option(Settings().log_level, "--log-level", help="Logging level"),
):
    configure_logging(log_level.upper())


def _llm(settings: Settings, model: str | None = None) -> OllamaChatClient:
    return OllamaChatClient(
        base_url=settings.ollama_base_url,
        model=model or settings.ollama_model,
        timeout_s=settings.ollama_timeout_s,
        options={"temperature": float(settings.ollama_temperature)},
    )


@contextmanager
def _open(db: Path) -> Iterator[tuple[SqliteGraphStore, SqliteDocumentSource]]:
    settings = Settings()
    conn = connect(db)
    try:
        documents = SqliteDocumentSource(conn)
        store = SqliteGraphStore(conn, settings=settings)
        yield store, documents
    except GraphError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(code=2 if e.retryable else 1)
    finally:
        conn.close()


def _split_paragraphs(text: str, max_chars: int) -> list[str]:
    chunks: list[str] = []
    buf = ""
    for para in re.split(r"\n\s*\n", text):
        para = para.strip()
        if not para:
            continue
        if buf and len(buf) + len(para) + 2 > max_chars:
            chunks.append(buf)
            buf = ""
        buf = f"{buf}\n\n{para}" if buf else para
    if buf:
        chunks.append(buf)
    return chunks


@docs_app.command("add")
def docs_add(
    path: Path = typer.Argument(..., exists=True, file_okay=True, dir_okay=False),
    db: Path = DB_OPT,
    project: str = PROJECT_OPT,
    title: str | None = typer.Option(None, "--title", help="Document title (defaults to the file name)"),
    summary: str | None = typer.Option(None, "--summary", help="Short summary shown with search sources"),
    max_chunk_chars: int = typer.Option(2500, help="Max chars per chunk"),
):
    """Add a text/Markdown file to the document store, chunked by paragraph."""
    raw = path.read_bytes()
    text = raw.decode("utf-8", errors="replace")
    sha = hashlib.sha256(raw).hexdigest()

    conn = connect(db)
    try:
        init_db(conn)
        doc_id, changed = upsert_document(
            conn,
            project_id=project,
            source_type=path.suffix.lstrip(".") or "txt",
            path=str(path.resolve()),
            title=title or path.stem,
            sha256=sha,
            metadata=({"summary": summary} if summary else {}),
        )
        if changed:
            insert_chunks(
                conn,
                (
                    {"doc_id": doc_id, "source_ref": f"doc:{doc_id}#c{i}", "text": chunk}
                    for i, chunk in enumerate(_split_paragraphs(text, int(max_chunk_chars)), start=1)
                ),
            )
        conn.commit()
    finally:
        conn.close()

    state = "added" if changed else "unchanged"
    console.print(f"Document {doc_id} {state}: {path.name}", markup=False)
    console.print(f"Next: run `docgraph graph extract --project {project} --document-id {doc_id}`.", markup=False)


@graph_app.command("ingest")
def graph_ingest(
    batch_file: Path = typer.Argument(..., exists=True, file_okay=True, dir_okay=False, help="Batch JSON file"),
    db: Path = DB_OPT,
    project: str = PROJECT_OPT,
    document_id: str | None = typer.Option(None, "--document-id", help="Source document of the batch"),
    strict: bool = typer.Option(False, "--strict", help="Reject the whole batch on a bad edge ref"),
):
    """Merge an extraction batch ({nodes: [...], edges: [...]}) into the graph."""
    batch = ExtractionBatch.from_dict(json.loads(batch_file.read_text(encoding="utf-8")))
    with _open(db) as (store, _):
        res = store.ingest_batch(project, batch, document_id=document_id, strict=strict)

    console.print(f"Entities created: {res.entities_extracted}")
    console.print(f"Entities merged: {res.entities_merged}")
    console.print(f"Relationships created: {res.relationships_created}")
    console.print(f"Relationships merged: {res.relationships_merged}")
    if res.relationships_skipped:
        console.print(f"Relationships skipped: {res.relationships_skipped}", style="yellow")


@graph_app.command("extract")
def graph_extract(
    db: Path = DB_OPT,
    project: str = PROJECT_OPT,
    user: str = USER_OPT,
    document_id: list[str] | None = typer.Option(None, "--document-id", help="Only these documents (repeatable)"),
    llm: bool = typer.Option(False, "--llm", help="Extract with Ollama instead of the offline heuristic"),
    model: str | None = typer.Option(None, "--model", help="Ollama model name"),
    min_chars: int = typer.Option(3, help="Minimum entity length (heuristic)"),
    max_per_chunk: int = typer.Option(25, help="Max entities extracted per chunk (heuristic)"),
):
    """Run extraction jobs over stored documents and merge the results."""
    settings = Settings()
    if llm:
        extractor = LLMEntityExtractor(_llm(settings, model))
    else:
        extractor = HeuristicExtractor(min_chars=int(min_chars), max_per_chunk=int(max_per_chunk))

    with _open(db) as (store, documents):
        res = build_graph(
            store=store,
            documents=documents,
            project_id=project,
            user_id=user,
            extractor=extractor,
            document_ids=(list(document_id) if document_id else None),
        )

    for k, v in res.items():
        console.print(f"{k}: {v}", markup=False)
    if res["documents_failed"]:
        raise typer.Exit(code=1)


@graph_app.command("data")
def graph_data(
    db: Path = DB_OPT,
    project: str = PROJECT_OPT,
    as_json: bool = typer.Option(False, "--json", help="Print the raw snapshot as JSON"),
):
    """Show the graph snapshot: top nodes, heaviest edges, active insights."""
    with _open(db) as (store, _):
        data = store.get_graph_data(project)

    if as_json:
        console.print_json(json.dumps(data.to_dict()))
        return

    names = {n.node_id: n.name for n in data.nodes}
    t = Table(title=f"Nodes ({len(data.nodes)})")
    t.add_column("id", justify="right")
    t.add_column("type")
    t.add_column("name")
    t.add_column("mentions", justify="right")
    t.add_column("confidence", justify="right")
    for n in data.nodes:
        t.add_row(str(n.node_id), n.entity_type, Text(n.name), str(n.mention_count), f"{n.confidence:.2f}")
    console.print(t)

    t2 = Table(title=f"Edges ({len(data.edges)})")
    t2.add_column("id", justify="right")
    t2.add_column("source")
    t2.add_column("relationship")
    t2.add_column("target")
    t2.add_column("weight", justify="right")
    for e in data.edges:
        t2.add_row(
            str(e.edge_id),
            Text(names.get(e.source_node_id, str(e.source_node_id))),
            e.relationship_type + (" (ai)" if e.is_ai_discovered else ""),
            Text(names.get(e.target_node_id, str(e.target_node_id))),
            f"{e.weight:g}",
        )
    console.print(t2)
    _print_insights(data.insights)


@graph_app.command("neighbors")
def graph_neighbors(
    node_id: int = typer.Argument(...),
    db: Path = DB_OPT,
    project: str = PROJECT_OPT,
    depth: int = typer.Option(Settings().neighbor_depth, "--depth", help="Max hops"),
    timeout: float | None = typer.Option(None, "--timeout", help="Give up after N seconds"),
):
    """Nodes reachable from NODE_ID over outgoing edges."""
    settings = Settings()
    with _open(db) as (store, _):
        engine = TraversalEngine(store, visited_budget=settings.visited_budget)
        try:
            res = engine.get_neighbors(node_id, depth, project_id=project, deadline=Deadline(timeout))
        except ValueError as e:
            raise typer.BadParameter(str(e))

    table = Table(title=f"Neighbors of {node_id} (depth {depth})")
    table.add_column("distance", justify="right")
    table.add_column("id", justify="right")
    table.add_column("name")
    table.add_column("type")
    table.add_column("via")
    table.add_column("weight", justify="right")
    for nb in res:
        table.add_row(
            str(nb.distance),
            str(nb.node.node_id),
            Text(nb.node.name),
            nb.node.entity_type,
            nb.edge.relationship_type,
            f"{nb.edge.weight:g}",
        )
    console.print(table)
    if res.truncated:
        console.print("Traversal truncated (visited budget or timeout); results are partial.", style="yellow")


@graph_app.command("path")
def graph_path(
    start_id: int = typer.Argument(...),
    end_id: int = typer.Argument(...),
    db: Path = DB_OPT,
    project: str = PROJECT_OPT,
    max_depth: int = typer.Option(Settings().path_max_depth, "--max-depth", help="Max hops"),
):
    """Shortest directed path between two nodes."""
    settings = Settings()
    with _open(db) as (store, _):
        engine = TraversalEngine(store, visited_budget=settings.visited_budget)
        try:
            path = engine.find_path(start_id, end_id, max_depth, project_id=project)
        except ValueError as e:
            raise typer.BadParameter(str(e))

    if not path:
        console.print(f"No path from {start_id} to {end_id} ({path.reason}).", style="yellow")
        raise typer.Exit(code=1)

    parts = [path.nodes[0].name]
    for e, n in zip(path.edges, path.nodes[1:]):
        parts.append(f"--[{e.relationship_type}]--> {n.name}")
    console.print(" ".join(parts), markup=False)
    console.print(f"length: {path.length}")


@graph_app.command("search")
def graph_search(
    query: str = typer.Argument(...),
    db: Path = DB_OPT,
    project: str = PROJECT_OPT,
    depth: int = typer.Option(Settings().neighbor_depth, "--depth", help="Neighbor expansion depth"),
    no_graph: bool = typer.Option(False, "--no-graph", help="Seed entities only, no expansion"),
    llm: bool = typer.Option(False, "--llm", help="Answer (and resolve entities) with Ollama"),
    model: str | None = typer.Option(None, "--model", help="Ollama model name"),
    as_json: bool = typer.Option(False, "--json", help="Print the full result as JSON"),
):
    """Answer a question from the graph context and its source documents."""
    settings = Settings()
    with _open(db) as (store, documents):
        if llm:
            client = _llm(settings, model)
            search = GraphSearch(
                store,
                documents=documents,
                answerer=GraphAnswerer(client),
                resolver=LLMEntityResolver(client),
                settings=settings,
            )
        else:
            search = GraphSearch(store, documents=documents, answerer=ExtractiveAnswerer(), settings=settings)
        res = search.graph_search(project, query, use_graph_context=not no_graph, max_neighbor_depth=depth)

    if as_json:
        console.print_json(json.dumps(res.to_dict()))
        return

    # Rich treats [..] as markup by default; citations use brackets.
    console.print(res.answer, markup=False)
    ctx = res.graph_context
    if ctx.entities:
        console.print("\nEntities: " + ", ".join(n.name for n in ctx.entities), markup=False)
    for p in ctx.paths:
        console.print("Path: " + " -> ".join(n.name for n in p.nodes), markup=False)
    if res.sources:
        console.print("\nSources:", markup=False)
        for s in res.sources:
            console.print(f"- doc:{s.id} {s.name}", markup=False)


@graph_app.command("discover")
def graph_discover(
    db: Path = DB_OPT,
    project: str = PROJECT_OPT,
    user: str = USER_OPT,
    llm: bool = typer.Option(False, "--llm", help="Also ask Ollama for hidden connections"),
    model: str | None = typer.Option(None, "--model", help="Ollama model name"),
):
    """Scan graph changes since the last run and record new insights."""
    settings = Settings()
    with _open(db) as (store, _):
        proposer = LLMInsightProposer(_llm(settings, model)) if llm else None
        created = InsightDiscovery(store, proposer=proposer, settings=settings).discover_connections(project, user)

    console.print(f"New insights: {len(created)}")
    _print_insights(created)


@graph_app.command("insights")
def graph_insights(
    db: Path = DB_OPT,
    project: str = PROJECT_OPT,
    limit: int = typer.Option(20, "--limit"),
    offset: int = typer.Option(0, "--offset"),
    show_all: bool = typer.Option(False, "--all", help="Include dismissed insights"),
):
    """List insights, newest first."""
    with _open(db) as (store, _):
        page = store.list_insights(project, limit=limit, offset=offset, include_dismissed=show_all)
    _print_insights(page.items, title=f"Insights {offset + 1}-{offset + len(page.items)} of {page.total}")


@graph_app.command("dismiss")
def graph_dismiss(insight_id: int = typer.Argument(...), db: Path = DB_OPT, project: str = PROJECT_OPT):
    """Hide an insight from snapshots and listings."""
    with _open(db) as (store, _):
        ins = store.dismiss_insight(project, insight_id)
    console.print(f"Dismissed insight {ins.insight_id}: {ins.title}", markup=False)


@graph_app.command("confirm")
def graph_confirm(insight_id: int = typer.Argument(...), db: Path = DB_OPT, project: str = PROJECT_OPT):
    """Mark an insight as confirmed."""
    with _open(db) as (store, _):
        ins = store.confirm_insight(project, insight_id)
    console.print(f"Confirmed insight {ins.insight_id}: {ins.title}", markup=False)


@graph_app.command("jobs")
def graph_jobs(
    db: Path = DB_OPT,
    project: str = PROJECT_OPT,
    limit: int = typer.Option(20, "--limit"),
):
    """Show recent extraction jobs."""
    with _open(db) as (store, _):
        jobs = store.list_jobs(project, limit=limit)

    table = Table(title="Extraction Jobs")
    table.add_column("id", justify="right")
    table.add_column("document")
    table.add_column("status")
    table.add_column("entities", justify="right")
    table.add_column("relationships", justify="right")
    table.add_column("error")
    style = {"completed": "green", "failed": "red", "processing": "yellow"}
    for j in jobs:
        table.add_row(
            str(j.job_id),
            str(j.document_id or "-"),
            Text(j.status, style=style.get(j.status, "")),
            str(j.entities_extracted),
            str(j.relationships_created),
            Text(j.error_message or ""),
        )
    console.print(table)


def _print_insights(insights, *, title: str = "Insights") -> None:
    if not insights:
        return
    table = Table(title=title)
    table.add_column("id", justify="right")
    table.add_column("type")
    table.add_column("title")
    table.add_column("confidence", justify="right")
    table.add_column("flags")
    for i in insights:
        flags = ",".join(f for f, on in (("confirmed", i.is_confirmed), ("dismissed", i.is_dismissed)) if on)
        table.add_row(str(i.insight_id), i.insight_type, Text(i.title), f"{i.confidence:.2f}", flags)
    console.print(table)


@app.command()
def doctor(
    db: Path | None = typer.Option(None, "--db", help="Optional DB path to check"),
    project: str = PROJECT_OPT,
    model: str | None = typer.Option(None, "--model", help="Ollama model name to check"),
    base_url: str | None = typer.Option(None, "--base-url", help="Ollama base URL"),
):
    """Check local dependencies (DB + Ollama) and print actionable fixes."""
    settings = Settings()
    ollama_model = model or settings.ollama_model
    ollama_url = (base_url or settings.ollama_base_url).rstrip("/")

    ok = True

    console.print("Ollama (only needed for --llm):")
    try:
        r = httpx.get(f"{ollama_url}/api/tags", timeout=5.0)
        r.raise_for_status()
        data = r.json()
        models = [m.get("name") for m in (data.get("models") or []) if isinstance(m, dict)]
        if ollama_model not in models:
            console.print(f"- Missing model: {ollama_model}", style="yellow")
            console.print(f"  Fix: `ollama pull {ollama_model}`", style="yellow")
            ok = False
        else:
            console.print(f"- Model OK: {ollama_model} at {ollama_url}", style="green")
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"- Not reachable at {ollama_url}: {e}", style="red")
        console.print("  Fix: start Ollama (`ollama serve`) then retry.", style="yellow")
        ok = False

    if db is not None:
        console.print("\nDB/Graph:")
        if not db.exists():
            console.print(f"- Missing DB: {db}", style="red")
            console.print("  Fix: run `docgraph docs add FILE --db ...`", style="yellow")
            ok = False
        else:
            with _open(db) as (store, documents):
                doc_n = len(documents.list_document_ids(project))
                edge_id, node_id = store.max_ids(project)
                jobs = store.list_jobs(project, limit=100)
            failed = sum(1 for j in jobs if j.status == "failed")
            console.print(f"- Documents: {doc_n}", style="green" if doc_n > 0 else "yellow")
            console.print(f"- Graph: nodes up to #{node_id}, edges up to #{edge_id}", style="green" if node_id else "yellow")
            if not node_id:
                console.print("  Fix: run `docgraph graph extract --db ...`", style="yellow")
                ok = False
            if failed:
                console.print(f"- {failed} failed extraction job(s); see `docgraph graph jobs`.", style="yellow")

    if not ok:
        raise typer.Exit(code=1)


@app.command()
def serve(
    db: Path = typer.Option(Path(Settings().db_path), "--db", help="Default DB path for the server"),
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes (dev only)"),
):
    """Run the DocGraph HTTP API (FastAPI)."""
    try:
        import uvicorn
    except ImportError:
        console.print("Missing web dependencies. Install: `pip install -e '.[web]'`", style="red")
        raise typer.Exit(code=2)

    from .web.server import create_app

    app_ = create_app(default_db_path=str(db))
    uvicorn.run(app_, host=host, port=int(port), reload=bool(reload))


if __name__ == "__main__":
    app()
