import tempfile
import unittest
from pathlib import Path

from docgraph.config import Settings
from docgraph.documents import connect
from docgraph.graph.insights import BackgroundDiscovery, InsightDiscovery, LLMInsightProposer, StructuralProposer
from docgraph.graph.models import EdgeEvidence, NodeEvidence, ProposedInsight
from docgraph.graph.store import ScanState, SqliteGraphStore


class FakeLLM:
    def __init__(self, reply):
        self.reply = reply
        self.calls = 0

    def chat(self, messages, *, json_mode=False):
        self.calls += 1
        return self.reply


class ExplodingProposer:
    def propose(self, ctx):
        raise RuntimeError("proposer crashed")


class InsightTestCase(unittest.TestCase):
    def setUp(self):
        self.store = SqliteGraphStore(connect(":memory:"))
        self.ids = {}

    def tearDown(self):
        self.store.close()

    def node(self, name, confidence=0.5):
        if name not in self.ids:
            self.ids[name] = self.store.upsert_node(
                "p1", "entity", name, NodeEvidence(confidence=confidence, source_document_id="d1")
            ).node_id
        return self.ids[name]

    def edge(self, a, b, rel="links"):
        return self.store.upsert_edge("p1", self.node(a), self.node(b), rel, EdgeEvidence())


class TestDiscovery(InsightTestCase):
    def test_bridge_between_existing_clusters(self):
        self.edge("A", "B")
        self.edge("C", "D")
        discovery = InsightDiscovery(self.store)
        discovery.discover_connections("p1", "u1")

        bridge = self.edge("B", "C")
        created = discovery.discover_connections("p1", "u1")
        bridges = [i for i in created if i.insight_type == "cluster_bridge"]
        self.assertEqual(len(bridges), 1)
        self.assertEqual(bridges[0].involved_edge_ids, (bridge.edge_id,))
        self.assertEqual(set(bridges[0].involved_node_ids), {self.ids["B"], self.ids["C"]})
        self.assertEqual(bridges[0].involved_document_ids, ("d1",))

    def test_hub_entity(self):
        for i in range(5):
            self.edge("Hub", f"Spoke {i}")
        created = InsightDiscovery(self.store).discover_connections("p1", "u1")
        hubs = [i for i in created if i.insight_type == "hub_entity"]
        self.assertEqual([h.involved_node_ids for h in hubs], [(self.ids["Hub"],)])

    def test_unexpected_relationship_between_confident_nodes(self):
        self.node("Acme", confidence=0.9)
        self.node("Zenith", confidence=0.95)
        self.edge("Acme", "Zenith", rel="sued")
        created = InsightDiscovery(self.store).discover_connections("p1", "u1")
        self.assertIn("unexpected_relationship", {i.insight_type for i in created})

    def test_rerun_without_changes_adds_nothing(self):
        for i in range(5):
            self.edge("Hub", f"Spoke {i}")
        discovery = InsightDiscovery(self.store)
        first = discovery.discover_connections("p1", "u1")
        self.assertTrue(first)
        self.assertEqual(discovery.discover_connections("p1", "u1"), [])

    def test_touched_hub_is_not_reported_twice(self):
        for i in range(5):
            self.edge("Hub", f"Spoke {i}")
        discovery = InsightDiscovery(self.store)
        discovery.discover_connections("p1", "u1")
        self.edge("Hub", "Spoke 5")
        again = discovery.discover_connections("p1", "u1")
        self.assertEqual([i for i in again if i.insight_type == "hub_entity"], [])
        self.assertEqual(len(self.store.list_insights("p1").items), 1)

    def test_failed_run_keeps_watermark(self):
        self.edge("A", "B")
        with self.assertRaises(RuntimeError):
            InsightDiscovery(self.store, proposer=ExplodingProposer()).discover_connections("p1", "u1")
        self.assertEqual(self.store.scan_state("p1").last_edge_id, 0)

        InsightDiscovery(self.store).discover_connections("p1", "u1")
        self.assertEqual(self.store.scan_state("p1").last_edge_id, self.store.max_ids("p1")[0])


class TestDeduplication(InsightTestCase):
    def _proposal(self, title, nodes, edges=()):
        return ProposedInsight(
            insight_type="pattern",
            title=title,
            node_ids=tuple(self.ids[n] for n in nodes),
            edge_ids=tuple(edges),
        )

    def test_overlapping_signature_is_a_duplicate(self):
        for n in "ABCDE":
            self.node(n)
        watermark = ScanState("p1")
        self.store.record_discovery("p1", "u1", [self._proposal("five", "ABCDE")], watermark=watermark)
        created = self.store.record_discovery(
            "p1",
            "u1",
            [self._proposal("four of five", "ABCD"), self._proposal("different", "AB")],
            watermark=watermark,
        )
        self.assertEqual([i.title for i in created], ["different"])

    def test_duplicates_within_one_run(self):
        self.node("A")
        created = self.store.record_discovery(
            "p1", "u1", [self._proposal("x", "A"), self._proposal("y", "A")], watermark=ScanState("p1")
        )
        self.assertEqual(len(created), 1)

    def test_dismissed_insight_does_not_block_new_ones(self):
        self.node("A")
        (ins,) = self.store.record_discovery("p1", "u1", [self._proposal("x", "A")], watermark=ScanState("p1"))
        self.store.dismiss_insight("p1", ins.insight_id)
        created = self.store.record_discovery("p1", "u1", [self._proposal("x", "A")], watermark=ScanState("p1"))
        self.assertEqual(len(created), 1)

    def test_empty_signature_compares_titles(self):
        w = ScanState("p1")
        self.store.record_discovery("p1", "u1", [ProposedInsight("pattern", "Theme")], watermark=w)
        created = self.store.record_discovery(
            "p1", "u1", [ProposedInsight("pattern", "theme"), ProposedInsight("pattern", "Other")], watermark=w
        )
        self.assertEqual([i.title for i in created], ["Other"])

    def test_unknown_ids_are_dropped(self):
        self.node("A")
        created = self.store.record_discovery(
            "p1",
            "u1",
            [ProposedInsight("pattern", "t", node_ids=(self.ids["A"], 9999), edge_ids=(8888,))],
            watermark=ScanState("p1"),
        )
        self.assertEqual(created[0].involved_node_ids, (self.ids["A"],))
        self.assertEqual(created[0].involved_edge_ids, ())


class TestLLMProposer(InsightTestCase):
    def test_hidden_connection_adds_ai_edge(self):
        self.edge("Acme", "Widget")
        self.node("Zenith")
        llm = FakeLLM(
            '```json\n[{"type": "hidden_connection", "title": "Acme and Zenith", '
            '"description": "Both supply Widget", "confidence": 0.7, "involvedEntities": ["acme", "Zenith", "Nobody"]}]\n```'
        )
        created = InsightDiscovery(self.store, proposer=LLMInsightProposer(llm)).discover_connections("p1", "u1")
        hidden = [i for i in created if i.insight_type == "hidden_connection"]
        self.assertEqual(len(hidden), 1)
        self.assertEqual(hidden[0].involved_node_ids, (self.ids["Acme"], self.ids["Zenith"]))

        ai = [e for e in self.store.project_edges("p1") if e.is_ai_discovered]
        self.assertEqual(len(ai), 1)
        self.assertEqual(ai[0].relationship_type, "related_to")

        # The AI edge is not new evidence for the next run.
        self.assertEqual(InsightDiscovery(self.store).discover_connections("p1", "u1"), [])

    def test_structural_proposer_is_default(self):
        self.assertIsInstance(InsightDiscovery(self.store).proposer, StructuralProposer)


class TestBackgroundDiscovery(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.db = Path(self.tmp.name) / "graph.db"
        store = SqliteGraphStore.open(self.db)
        hub = store.upsert_node("p1", "entity", "Hub").node_id
        for i in range(5):
            spoke = store.upsert_node("p1", "entity", f"Spoke {i}").node_id
            store.upsert_edge("p1", hub, spoke, "links")
        store.close()

    def tearDown(self):
        self.tmp.cleanup()

    def test_runs_on_worker_with_own_connection(self):
        runner = BackgroundDiscovery(lambda: SqliteGraphStore.open(self.db), settings=Settings())
        try:
            created = runner.submit("p1", "u1").result(timeout=30)
        finally:
            runner.shutdown()
        self.assertEqual([i.insight_type for i in created], ["hub_entity"])

    def test_failures_are_logged_not_raised(self):
        runner = BackgroundDiscovery(
            lambda: SqliteGraphStore.open(self.db), proposer_factory=ExplodingProposer
        )
        try:
            with self.assertLogs("docgraph.graph.insights", level="ERROR"):
                result = runner.submit("p1", "u1").result(timeout=30)
        finally:
            runner.shutdown()
        self.assertEqual(result, [])


if __name__ == "__main__":
    unittest.main()
