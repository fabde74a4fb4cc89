import unittest

from docgraph.graph.extract import extract_entities, extract_query_terms, norm_entity, norm_type


class TestGraphExtract(unittest.TestCase):
    def test_extract_entities_finds_proper_nouns(self):
        text = "Carl Jung wrote about Analytical Psychology in New York."
        ents = extract_entities(text)
        names = {v[0] for v in ents.values()}
        self.assertIn("Carl Jung", names)
        self.assertIn("New York", names)

    def test_extract_entities_counts_repeats_and_skips_stopwords(self):
        ents = extract_entities("The NASA team met NASA engineers. The plan changed.")
        self.assertEqual(ents["nasa"], ("NASA", 2))
        self.assertNotIn("the", ents)

    def test_leading_function_words_are_trimmed(self):
        self.assertEqual(list(extract_entities("Does Acme Corp own anything?")), ["acme corp"])
        self.assertEqual(list(extract_entities("Explain Acme Corp")), ["acme corp"])

    def test_norm_entity(self):
        self.assertEqual(norm_entity("  New   York "), "new york")

    def test_norm_type(self):
        self.assertEqual(norm_type("Related To"), "related_to")
        self.assertEqual(norm_type("co-occurs-with"), "co_occurs_with")

    def test_query_terms_fallback(self):
        self.assertEqual(extract_query_terms("who funds the rocket program?"), ["funds", "rocket", "program"])


if __name__ == "__main__":
    unittest.main()
