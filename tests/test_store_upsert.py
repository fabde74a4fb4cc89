import unittest

from docgraph.config import Settings
from docgraph.documents import connect
from docgraph.errors import InvalidEdgeEndpoint, NotFound
from docgraph.graph.models import EdgeEvidence, NodeEvidence, Properties, ProposedInsight
from docgraph.graph.store import ScanState, SqliteGraphStore, merge_confidence


def _store(**overrides) -> SqliteGraphStore:
    return SqliteGraphStore(connect(":memory:"), settings=Settings(**overrides))


class TestNodeUpsert(unittest.TestCase):
    def setUp(self):
        self.store = _store()

    def tearDown(self):
        self.store.close()

    def test_second_upsert_merges_case_insensitively(self):
        a = self.store.upsert_node("p1", "Organization", "Acme Corp", NodeEvidence(confidence=0.6, source_document_id="1"))
        b = self.store.upsert_node("p1", "organization", "  acme   CORP ", NodeEvidence(confidence=0.6, source_document_id="2"))

        self.assertEqual(a.node_id, b.node_id)
        self.assertEqual(b.mention_count, 2)
        self.assertEqual(b.name, "Acme Corp")
        self.assertEqual(b.entity_type, "organization")
        self.assertEqual(b.source_document_ids, ("1", "2"))
        self.assertGreater(b.confidence, a.confidence)

    def test_same_name_different_type_is_a_different_node(self):
        a = self.store.upsert_node("p1", "person", "Jordan")
        b = self.store.upsert_node("p1", "location", "Jordan")
        self.assertNotEqual(a.node_id, b.node_id)

    def test_projects_are_isolated(self):
        a = self.store.upsert_node("p1", "person", "Ada")
        b = self.store.upsert_node("p2", "person", "Ada")
        self.assertNotEqual(a.node_id, b.node_id)
        self.assertEqual(b.mention_count, 1)

    def test_source_documents_are_deduplicated(self):
        self.store.upsert_node("p1", "person", "Ada", NodeEvidence(source_document_id="7"))
        n = self.store.upsert_node("p1", "person", "Ada", NodeEvidence(source_document_id="7"))
        self.assertEqual(n.source_document_ids, ("7",))
        self.assertEqual(n.mention_count, 2)

    def test_confidence_is_monotonic_and_bounded(self):
        prev = self.store.upsert_node("p1", "concept", "Entropy", NodeEvidence(confidence=0.3)).confidence
        for ev in (0.0, 0.9, 1.0, 0.2, 1.0, 1.0):
            cur = self.store.upsert_node("p1", "concept", "Entropy", NodeEvidence(confidence=ev)).confidence
            self.assertGreaterEqual(cur, prev)
            self.assertLessEqual(cur, 1.0)
            prev = cur

    def test_merge_confidence_rule(self):
        self.assertAlmostEqual(merge_confidence(0.5, 1.0, 0.5), 0.75)
        self.assertAlmostEqual(merge_confidence(0.5, 0.0, 0.5), 0.5)
        self.assertAlmostEqual(merge_confidence(1.0, 1.0, 1.0), 1.0)

    def test_description_kept_unless_override(self):
        self.store.upsert_node("p1", "person", "Ada", NodeEvidence(description="Mathematician"))
        n = self.store.upsert_node("p1", "person", "Ada", NodeEvidence(description="Writer"))
        self.assertEqual(n.description, "Mathematician")
        n = self.store.upsert_node("p1", "person", "Ada", NodeEvidence(description="Writer", override=True))
        self.assertEqual(n.description, "Writer")

    def test_properties_merge(self):
        self.store.upsert_node(
            "p1", "person", "Ada", NodeEvidence(properties=Properties(aliases=("Countess",), role="author"))
        )
        n = self.store.upsert_node(
            "p1",
            "person",
            "Ada",
            NodeEvidence(properties=Properties(aliases=("Ada Lovelace", "Countess"), role="editor", extra={"born": 1815})),
        )
        self.assertEqual(n.properties.aliases, ("Countess", "Ada Lovelace"))
        self.assertEqual(n.properties.role, "author")
        self.assertEqual(n.properties.extra, {"born": 1815})

    def test_invalid_input_raises_value_error(self):
        with self.assertRaises(ValueError):
            self.store.upsert_node("p1", "person", "   ")
        with self.assertRaises(ValueError):
            self.store.upsert_node("p1", "person", "Ada", NodeEvidence(confidence=1.5))


class TestEdgeUpsert(unittest.TestCase):
    def setUp(self):
        self.store = _store(max_evidence_snippets=3)
        self.a = self.store.upsert_node("p1", "person", "Ada").node_id
        self.b = self.store.upsert_node("p1", "person", "Charles").node_id

    def tearDown(self):
        self.store.close()

    def test_weight_accumulates_on_same_key(self):
        e1 = self.store.upsert_edge("p1", self.a, self.b, "Works With", EdgeEvidence(weight=1.0))
        e2 = self.store.upsert_edge("p1", self.a, self.b, "works_with", EdgeEvidence(weight=2.5))
        self.assertEqual(e1.edge_id, e2.edge_id)
        self.assertEqual(e2.relationship_type, "works_with")
        self.assertAlmostEqual(e2.weight, 3.5)

    def test_direction_and_type_are_part_of_the_key(self):
        e1 = self.store.upsert_edge("p1", self.a, self.b, "knows")
        e2 = self.store.upsert_edge("p1", self.b, self.a, "knows")
        e3 = self.store.upsert_edge("p1", self.a, self.b, "cites")
        self.assertEqual(len({e1.edge_id, e2.edge_id, e3.edge_id}), 3)

    def test_self_loop_rejected(self):
        with self.assertRaises(InvalidEdgeEndpoint):
            self.store.upsert_edge("p1", self.a, self.a, "knows")
        self.assertEqual(self.store.project_edges("p1"), [])

    def test_missing_or_foreign_endpoint_rejected(self):
        other = self.store.upsert_node("p2", "person", "Grace").node_id
        with self.assertRaises(InvalidEdgeEndpoint):
            self.store.upsert_edge("p1", self.a, 9999, "knows")
        with self.assertRaises(InvalidEdgeEndpoint):
            self.store.upsert_edge("p1", self.a, other, "knows")

    def test_edge_missing_after_write_is_not_found(self):
        self.store.get_edge = lambda edge_id: None
        with self.assertRaises(NotFound):
            self.store.upsert_edge("p1", self.a, self.b, "knows")

    def test_negative_weight_rejected(self):
        with self.assertRaises(ValueError):
            self.store.upsert_edge("p1", self.a, self.b, "knows", EdgeEvidence(weight=-1.0))

    def test_evidence_snippets_fifo_cap(self):
        for i in range(5):
            e = self.store.upsert_edge("p1", self.a, self.b, "knows", EdgeEvidence(snippet=f"snippet {i}"))
        self.assertEqual(e.evidence_snippets, ("snippet 2", "snippet 3", "snippet 4"))

    def test_duplicate_snippet_not_reappended(self):
        self.store.upsert_edge("p1", self.a, self.b, "knows", EdgeEvidence(snippet="same"))
        e = self.store.upsert_edge("p1", self.a, self.b, "knows", EdgeEvidence(snippet="same"))
        self.assertEqual(e.evidence_snippets, ("same",))

    def test_ai_discovered_flag_sticks(self):
        self.store.upsert_edge("p1", self.a, self.b, "related_to", EdgeEvidence(is_ai_discovered=True))
        e = self.store.upsert_edge("p1", self.a, self.b, "related_to", EdgeEvidence(is_ai_discovered=False))
        self.assertTrue(e.is_ai_discovered)


class TestGraphDataAndInsights(unittest.TestCase):
    def setUp(self):
        self.store = _store(max_snapshot_nodes=2)
        self.ids = {}
        for name, mentions in (("Ada", 3), ("Charles", 1), ("Grace", 2)):
            for _ in range(mentions):
                self.ids[name] = self.store.upsert_node("p1", "person", name).node_id
        self.store.upsert_edge("p1", self.ids["Ada"], self.ids["Charles"], "knows", EdgeEvidence(weight=1.0))
        self.store.upsert_edge("p1", self.ids["Ada"], self.ids["Grace"], "knows", EdgeEvidence(weight=4.0))

    def tearDown(self):
        self.store.close()

    def _record(self, *titles):
        proposals = [
            ProposedInsight(insight_type="pattern", title=t, node_ids=(self.ids[n],)) for t, n in titles
        ]
        return self.store.record_discovery("p1", "u1", proposals, watermark=ScanState("p1"))

    def test_snapshot_ordering_and_caps(self):
        data = self.store.get_graph_data("p1")
        self.assertEqual([n.name for n in data.nodes], ["Ada", "Grace"])
        self.assertEqual([e.weight for e in data.edges], [4.0, 1.0])

    def test_dismissed_insights_hidden_from_snapshot(self):
        first, second = self._record(("Ada pattern", "Ada"), ("Grace pattern", "Grace"))
        self.store.dismiss_insight("p1", first.insight_id)

        data = self.store.get_graph_data("p1")
        self.assertEqual([i.insight_id for i in data.insights], [second.insight_id])

        page = self.store.list_insights("p1", include_dismissed=True)
        self.assertEqual(page.total, 2)

    def test_dismiss_and_confirm_are_idempotent_independent_flags(self):
        (ins,) = self._record(("Ada pattern", "Ada"))
        self.store.confirm_insight("p1", ins.insight_id)
        self.store.confirm_insight("p1", ins.insight_id)
        got = self.store.dismiss_insight("p1", ins.insight_id)
        self.assertTrue(got.is_confirmed)
        self.assertTrue(got.is_dismissed)

    def test_insight_out_of_project_scope_not_found(self):
        (ins,) = self._record(("Ada pattern", "Ada"))
        with self.assertRaises(NotFound):
            self.store.dismiss_insight("p2", ins.insight_id)
        with self.assertRaises(NotFound):
            self.store.confirm_insight("p1", 12345)

    def test_list_insights_pagination(self):
        self._record(("one", "Ada"), ("two", "Grace"), ("three", "Charles"))
        page = self.store.list_insights("p1", limit=2, offset=0)
        rest = self.store.list_insights("p1", limit=2, offset=2)
        self.assertEqual(page.total, 3)
        self.assertEqual(len(page.items), 2)
        self.assertEqual(len(rest.items), 1)
        seen = {i.insight_id for i in page.items} | {i.insight_id for i in rest.items}
        self.assertEqual(len(seen), 3)
        with self.assertRaises(ValueError):
            self.store.list_insights("p1", limit=0)


if __name__ == "__main__":
    unittest.main()
