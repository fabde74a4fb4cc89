from contextlib import asynccontextmanager, contextmanager
from typing import Any


def create_app(*, default_db_path: str | None = None):
    # Lazy import so core CLI works without web deps.
    from fastapi import FastAPI, Request
    from fastapi.responses import JSONResponse

    from ..chat.answer import ExtractiveAnswerer, GraphAnswerer
    from ..chat.llm import OllamaChatClient
    from ..config import Settings
    from ..documents import SqliteDocumentSource, connect
    from ..errors import GraphError, InvalidEdgeEndpoint, JobStateError, NotFound, UpstreamCollaboratorFailure
    from ..graph.insights import BackgroundDiscovery, InsightDiscovery, LLMInsightProposer
    from ..graph.models import ExtractionBatch
    from ..graph.query import GraphSearch, LLMEntityResolver
    from ..graph.store import SqliteGraphStore
    from ..graph.traverse import Deadline, TraversalEngine

    settings = Settings()
    db_default = default_db_path or settings.db_path
    runners: dict[tuple[str, bool], BackgroundDiscovery] = {}

    @asynccontextmanager
    async def lifespan(_app):
        yield
        for r in runners.values():
            r.shutdown(wait=False)

    app = FastAPI(title="DocGraph", version="0.2.0", lifespan=lifespan)

    def _error(status: int, exc: Exception, *, retryable: bool = False) -> JSONResponse:
        return JSONResponse({"ok": False, "error": str(exc), "retryable": retryable}, status_code=status)

    @app.exception_handler(NotFound)
    async def not_found(_request: Request, exc: NotFound):
        return _error(404, exc)

    @app.exception_handler(InvalidEdgeEndpoint)
    async def invalid_edge(_request: Request, exc: InvalidEdgeEndpoint):
        return _error(400, exc)

    @app.exception_handler(ValueError)
    async def bad_value(_request: Request, exc: ValueError):
        return _error(400, exc)

    @app.exception_handler(JobStateError)
    async def job_state(_request: Request, exc: JobStateError):
        return _error(409, exc)

    @app.exception_handler(UpstreamCollaboratorFailure)
    async def upstream(_request: Request, exc: UpstreamCollaboratorFailure):
        return _error(502, exc, retryable=True)

    @app.exception_handler(GraphError)
    async def graph_error(_request: Request, exc: GraphError):
        return _error(500, exc, retryable=exc.retryable)

    @contextmanager
    def _open(db_path: str | None):
        conn = connect(db_path or db_default)
        try:
            yield SqliteGraphStore(conn, settings=settings), SqliteDocumentSource(conn)
        finally:
            conn.close()

    def _llm(payload: dict[str, Any]) -> OllamaChatClient:
        return OllamaChatClient(
            base_url=str(payload.get("base_url") or settings.ollama_base_url),
            model=str(payload.get("model") or settings.ollama_model),
            timeout_s=settings.ollama_timeout_s,
            options={"temperature": float(settings.ollama_temperature)},
        )

    @app.get("/api/health")
    def health(base_url: str | None = None):
        import httpx

        url = (base_url or settings.ollama_base_url).rstrip("/")
        out: dict[str, Any] = {"ollama_base_url": url, "ollama_ok": False, "models": []}
        try:
            r = httpx.get(f"{url}/api/tags", timeout=3.0)
            r.raise_for_status()
            data = r.json()
            out["models"] = [m.get("name") for m in (data.get("models") or []) if isinstance(m, dict)]
            out["ollama_ok"] = True
        except (httpx.HTTPError, ValueError) as e:
            out["error"] = str(e)
        return out

    @app.get("/api/projects/{project_id}/graph")
    def graph_data(project_id: str, db_path: str | None = None):
        with _open(db_path) as (store, _):
            data = store.get_graph_data(project_id)
        return {"ok": True, **data.to_dict()}

    @app.get("/api/projects/{project_id}/nodes/{node_id}/neighbors")
    def neighbors(
        project_id: str,
        node_id: int,
        depth: int = settings.neighbor_depth,
        timeout_s: float | None = None,
        db_path: str | None = None,
    ):
        with _open(db_path) as (store, _):
            engine = TraversalEngine(store, visited_budget=settings.visited_budget)
            res = engine.get_neighbors(node_id, depth, project_id=project_id, deadline=Deadline(timeout_s))
        return {"ok": True, "neighbors": [nb.to_dict() for nb in res], "truncated": res.truncated}

    @app.get("/api/projects/{project_id}/path")
    def path(
        project_id: str,
        start: int,
        end: int,
        max_depth: int = settings.path_max_depth,
        db_path: str | None = None,
    ):
        with _open(db_path) as (store, _):
            engine = TraversalEngine(store, visited_budget=settings.visited_budget)
            res = engine.find_path(start, end, max_depth, project_id=project_id)
        if not res:
            return {"ok": True, "found": False, "reason": res.reason}
        return {"ok": True, "found": True, **res.to_dict()}

    @app.post("/api/projects/{project_id}/search")
    def search(project_id: str, payload: dict[str, Any]):
        query = str(payload.get("query") or "").strip()
        if not query:
            return JSONResponse({"ok": False, "error": "query is required"}, status_code=400)
        use_llm = bool(payload.get("llm", False))

        with _open(payload.get("db_path")) as (store, documents):
            if use_llm:
                client = _llm(payload)
                gs = GraphSearch(
                    store,
                    documents=documents,
                    answerer=GraphAnswerer(client),
                    resolver=LLMEntityResolver(client),
                    settings=settings,
                )
            else:
                gs = GraphSearch(store, documents=documents, answerer=ExtractiveAnswerer(), settings=settings)
            res = gs.graph_search(
                project_id,
                query,
                use_graph_context=bool(payload.get("useGraphContext", True)),
                max_neighbor_depth=int(payload.get("maxNeighborDepth", settings.neighbor_depth)),
            )
        return {"ok": True, **res.to_dict()}

    @app.post("/api/projects/{project_id}/batches")
    def ingest_batch(project_id: str, payload: dict[str, Any]):
        batch = ExtractionBatch.from_dict(payload)
        document_id = payload.get("documentId")
        with _open(payload.get("db_path")) as (store, _):
            res = store.ingest_batch(
                project_id,
                batch,
                document_id=(str(document_id) if document_id is not None else None),
                strict=bool(payload.get("strict", False)),
            )
        return {
            "ok": True,
            "entitiesExtracted": res.entities_extracted,
            "entitiesMerged": res.entities_merged,
            "relationshipsCreated": res.relationships_created,
            "relationshipsMerged": res.relationships_merged,
            "relationshipsSkipped": res.relationships_skipped,
            "nodeIds": list(res.node_ids),
            "edgeIds": list(res.edge_ids),
        }

    @app.post("/api/projects/{project_id}/discover")
    def discover(project_id: str, payload: dict[str, Any]):
        db_path = str(payload.get("db_path") or db_default)
        user_id = str(payload.get("userId") or "api")
        proposer_factory = (lambda: LLMInsightProposer(_llm(payload))) if payload.get("llm") else None

        if payload.get("wait"):
            with _open(db_path) as (store, _):
                proposer = proposer_factory() if proposer_factory is not None else None
                created = InsightDiscovery(store, proposer=proposer, settings=settings).discover_connections(
                    project_id, user_id
                )
            return {"ok": True, "scheduled": False, "insights": [i.to_dict() for i in created]}

        key = (db_path, proposer_factory is not None)
        runner = runners.get(key)
        if runner is None:
            runner = runners[key] = BackgroundDiscovery(
                lambda: SqliteGraphStore.open(db_path, settings=settings),
                proposer_factory=proposer_factory,
                settings=settings,
            )
        runner.submit(project_id, user_id)
        return JSONResponse({"ok": True, "scheduled": True}, status_code=202)

    @app.get("/api/projects/{project_id}/insights")
    def insights(
        project_id: str,
        limit: int = 20,
        offset: int = 0,
        include_dismissed: bool = False,
        db_path: str | None = None,
    ):
        with _open(db_path) as (store, _):
            page = store.list_insights(project_id, limit=limit, offset=offset, include_dismissed=include_dismissed)
        return {"ok": True, **page.to_dict()}

    @app.post("/api/projects/{project_id}/insights/{insight_id}/dismiss")
    def dismiss(project_id: str, insight_id: int, db_path: str | None = None):
        with _open(db_path) as (store, _):
            ins = store.dismiss_insight(project_id, insight_id)
        return {"ok": True, "insight": ins.to_dict()}

    @app.post("/api/projects/{project_id}/insights/{insight_id}/confirm")
    def confirm(project_id: str, insight_id: int, db_path: str | None = None):
        with _open(db_path) as (store, _):
            ins = store.confirm_insight(project_id, insight_id)
        return {"ok": True, "insight": ins.to_dict()}

    @app.get("/api/projects/{project_id}/jobs")
    def jobs(project_id: str, limit: int = 20, db_path: str | None = None):
        with _open(db_path) as (store, _):
            items = store.list_jobs(project_id, limit=limit)
        return {"ok": True, "jobs": [j.to_dict() for j in items]}

    return app
