import os
import sys
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from ontogate.ontology_hash import is_ontology_hash, ontology_hash


class TestOntologyHash(unittest.TestCase):
    def test_hash_deterministic_with_key_order(self) -> None:
        self.assertEqual(ontology_hash({"b": 1, "a": 2}), ontology_hash({"a": 2, "b": 1}))

    def test_hash_differs_for_different_content(self) -> None:
        self.assertNotEqual(ontology_hash({"a": 1}), ontology_hash({"a": 2}))

    def test_hash_format(self) -> None:
        h = ontology_hash({"a": 1})
        self.assertTrue(h.startswith("sha256:"))
        self.assertEqual(len(h), len("sha256:") + 64)
        self.assertTrue(is_ontology_hash(h))

    def test_known_value(self) -> None:
        # sha256 of the canonical text '{}'
        self.assertEqual(
            ontology_hash({}),
            "sha256:44136fa355b3678a1146ad16f7e8649e94fb4fc21fe77e8310c060f61caaff8a",
        )

    def test_is_ontology_hash_rejects_malformed(self) -> None:
        for value in (None, "", "sha256:xyz", "md5:" + "0" * 64, "sha256:" + "A" * 64):
            with self.subTest(value=value):
                self.assertFalse(is_ontology_hash(value))

    def test_hash_rejects_non_finite(self) -> None:
        with self.assertRaises(ValueError):
            ontology_hash({"bad": float("nan")})

    def test_hash_numeric_distinction(self) -> None:
        self.assertNotEqual(ontology_hash({"n": 1}), ontology_hash({"n": 1.0}))


if __name__ == "__main__":
    unittest.main()
