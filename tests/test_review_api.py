import os
import sys
import tempfile
import unittest
from unittest import mock


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
HERE = os.path.dirname(os.path.abspath(__file__))
for path in (ROOT, SRC, HERE):
    if path not in sys.path:
        sys.path.insert(0, path)

from fastapi.testclient import TestClient

from app.review import create_review_app
from canonicalize import canonicalize
from differ import diff
from lockfile_store import LockfileStore
from review_session import APPROVED, REJECTED, ReviewSession
from sample_ontology import build_ontology


class TestReviewApi(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LockfileStore(os.path.join(self._tmp.name, "ont.lock"))
        self.store.write(build_ontology())
        self.widened = build_ontology(get_user_access=("admin", "public"))
        self.session = ReviewSession(diff(self.store.read()["snapshot"], canonicalize(self.widened)), self.store)
        self.client = TestClient(create_review_app(self.session))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_summary_page(self) -> None:
        res = self.client.get("/")
        self.assertEqual(res.status_code, 200)
        self.assertIn("Access: [admin] -> [admin, public]", res.text)

    def test_diff_payload(self) -> None:
        res = self.client.get("/api/diff")
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertTrue(body["ok"])
        self.assertIsNone(body["decision"])
        self.assertEqual(body["diff"]["modified_count"], 1)
        self.assertNotIn("new_snapshot", body["diff"])
        self.assertEqual([w["code"] for w in body["warnings"]], ["FUNCTION_NEWLY_PUBLIC"])

    def test_approve_writes_lockfile(self) -> None:
        res = self.client.post("/api/approve", json={"actor": "alice", "reason": "reviewed"})
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["decision"], APPROVED)
        self.assertEqual(body["hash"], self.session.diff["new_hash"])
        self.store.verify(self.widened)
        self.assertEqual(self.store.list_history()[0]["reason"], "reviewed")

    def test_second_decision_conflicts(self) -> None:
        self.assertEqual(self.client.post("/api/reject").json()["decision"], REJECTED)
        res = self.client.post("/api/approve", json={})
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.json()["errors"][0]["code"], "REVIEW_ALREADY_DECIDED")
        self.assertEqual(self.client.post("/api/reject").status_code, 409)

    def test_write_failure_reports_and_keeps_session_open(self) -> None:
        with mock.patch.object(self.store, "_replace", side_effect=OSError("read-only file system")):
            res = self.client.post("/api/approve", json={"actor": "alice"})
        self.assertEqual(res.status_code, 500)
        self.assertEqual(res.json()["errors"][0]["code"], "LOCKFILE_WRITE_FAILED")
        self.assertIsNone(self.session.decision)
        self.assertEqual(self.client.post("/api/approve", json={}).status_code, 200)

    def test_non_object_body_is_ignored(self) -> None:
        res = self.client.post("/api/approve", json=["not", "an", "object"])
        self.assertEqual(res.status_code, 200)
        self.assertIsNone(self.store.list_history()[0]["actor"])


if __name__ == "__main__":
    unittest.main()
