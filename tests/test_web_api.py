import tempfile
import time
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

from docgraph.web.server import create_app


BATCH = {
    "documentId": "7",
    "entities": [
        {"type": "person", "name": "Ada Lovelace"},
        {"type": "concept", "name": "Analytical Engine"},
        {"type": "location", "name": "Turin"},
    ],
    "relationships": [
        {"source": "Ada Lovelace", "target": "Analytical Engine", "type": "wrote_about"},
        {"source": "Analytical Engine", "target": "Turin", "type": "presented_in"},
    ],
}


class TestWebApi(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = str(Path(self.tmp.name) / "graph.db")
        self.client = TestClient(create_app(default_db_path=self.db))
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        self.tmp.cleanup()

    def _ingest(self, payload=BATCH):
        r = self.client.post("/api/projects/p1/batches", json=payload)
        self.assertEqual(r.status_code, 200, r.text)
        return r.json()

    def test_batch_then_graph_snapshot(self):
        out = self._ingest()
        self.assertEqual(out["entitiesExtracted"], 3)
        self.assertEqual(out["relationshipsCreated"], 2)

        data = self.client.get("/api/projects/p1/graph").json()
        self.assertTrue(data["ok"])
        self.assertEqual({n["name"] for n in data["nodes"]}, {"Ada Lovelace", "Analytical Engine", "Turin"})
        self.assertEqual(len(data["edges"]), 2)
        self.assertEqual(data["edges"][0]["sourceDocumentIds"], ["7"])

        self.assertEqual(self.client.get("/api/projects/other/graph").json()["nodes"], [])

    def test_strict_batch_with_dangling_edge_is_rejected(self):
        payload = dict(BATCH, strict=True, relationships=[{"source": "Ada Lovelace", "target": "Ghost", "type": "knows"}])
        r = self.client.post("/api/projects/p1/batches", json=payload)
        self.assertEqual(r.status_code, 400)
        self.assertFalse(r.json()["ok"])
        self.assertEqual(self.client.get("/api/projects/p1/graph").json()["nodes"], [])

    def test_neighbors_and_path(self):
        ada, engine, turin = self._ingest()["nodeIds"]

        r = self.client.get(f"/api/projects/p1/nodes/{ada}/neighbors", params={"depth": 2})
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertEqual([(n["nodeId"], n["distance"]) for n in body["neighbors"]], [(engine, 1), (turin, 2)])
        self.assertFalse(body["truncated"])

        r = self.client.get("/api/projects/p1/path", params={"start": ada, "end": turin})
        body = r.json()
        self.assertTrue(body["found"])
        self.assertEqual([n["id"] for n in body["pathNodes"]], [ada, engine, turin])
        self.assertEqual(body["pathLength"], 2)

        r = self.client.get("/api/projects/p1/path", params={"start": turin, "end": ada})
        self.assertEqual(r.json(), {"ok": True, "found": False, "reason": "unreachable"})

    def test_missing_node_is_404_and_bad_depth_is_400(self):
        r = self.client.get("/api/projects/p1/nodes/999/neighbors")
        self.assertEqual(r.status_code, 404)
        self.assertEqual(r.json()["retryable"], False)

        ada = self._ingest()["nodeIds"][0]
        r = self.client.get(f"/api/projects/p1/nodes/{ada}/neighbors", params={"depth": -1})
        self.assertEqual(r.status_code, 400)

        r = self.client.get(f"/api/projects/other/nodes/{ada}/neighbors")
        self.assertEqual(r.status_code, 404)

    def test_search(self):
        self._ingest()
        r = self.client.post("/api/projects/p1/search", json={"query": "Ada Lovelace and Turin"})
        self.assertEqual(r.status_code, 200)
        body = r.json()
        self.assertEqual([e["name"] for e in body["graphContext"]["entities"]], ["Ada Lovelace", "Turin"])
        self.assertEqual(len(body["graphContext"]["paths"]), 1)

        r = self.client.post("/api/projects/p1/search", json={"query": "nothing known here"})
        self.assertTrue(r.json()["answer"].startswith("No graph context found"))

        r = self.client.post("/api/projects/p1/search", json={"query": "  "})
        self.assertEqual(r.status_code, 400)

    def test_unreachable_model_is_retryable_502(self):
        self._ingest()
        r = self.client.post(
            "/api/projects/p1/search",
            json={"query": "Ada Lovelace", "llm": True, "base_url": "http://127.0.0.1:9"},
        )
        self.assertEqual(r.status_code, 502)
        self.assertTrue(r.json()["retryable"])

    def _hub_batch(self):
        return {
            "entities": [{"type": "entity", "name": "Hub"}] + [{"type": "entity", "name": f"Spoke {i}"} for i in range(5)],
            "relationships": [{"source": "Hub", "target": f"Spoke {i}", "type": "links"} for i in range(5)],
        }

    def test_discover_and_review_insights(self):
        self._ingest(self._hub_batch())
        r = self.client.post("/api/projects/p1/discover", json={"userId": "u1", "wait": True})
        self.assertEqual(r.status_code, 200)
        (insight,) = r.json()["insights"]
        self.assertEqual(insight["insightType"], "hub_entity")

        r = self.client.post(f"/api/projects/p1/insights/{insight['id']}/confirm")
        self.assertTrue(r.json()["insight"]["isConfirmed"])

        r = self.client.post(f"/api/projects/p1/insights/{insight['id']}/dismiss")
        self.assertTrue(r.json()["insight"]["isDismissed"])
        self.assertEqual(self.client.get("/api/projects/p1/insights").json()["items"], [])
        page = self.client.get("/api/projects/p1/insights", params={"include_dismissed": True}).json()
        self.assertEqual(page["total"], 1)

        r = self.client.post("/api/projects/p1/insights/999/dismiss")
        self.assertEqual(r.status_code, 404)

    def test_background_discover_is_accepted(self):
        self._ingest(self._hub_batch())
        r = self.client.post("/api/projects/p1/discover", json={"userId": "u1"})
        self.assertEqual(r.status_code, 202)
        self.assertTrue(r.json()["scheduled"])

        items = []
        for _ in range(50):
            items = self.client.get("/api/projects/p1/insights").json()["items"]
            if items:
                break
            time.sleep(0.1)
        self.assertEqual([i["insightType"] for i in items], ["hub_entity"])

    def test_jobs_list_is_empty_for_new_project(self):
        self.assertEqual(self.client.get("/api/projects/p1/jobs").json(), {"ok": True, "jobs": []})


if __name__ == "__main__":
    unittest.main()
