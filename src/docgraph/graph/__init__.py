"""Knowledge-graph engine (evidence-backed entity graph over documents).

Extraction jobs merge candidate entities and relationships into a
project-scoped SQLite graph (`store`); `traverse` answers neighbor and path
queries over it, `insights` mines it incrementally for patterns, and `query`
turns a question into graph context for answer generation. Extraction is
heuristic by default so it works offline; an Ollama-backed extractor is
available when a local model is running.
"""
