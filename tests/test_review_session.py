import asyncio
import os
import sys
import tempfile
import threading
import unittest


ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
HERE = os.path.dirname(os.path.abspath(__file__))
for path in (ROOT, SRC, HERE):
    if path not in sys.path:
        sys.path.insert(0, path)

from canonicalize import canonicalize
from differ import diff
from lockfile_store import LockfileBusyError, LockfileStore
from review_session import APPROVED, CANCELLED, REJECTED, ReviewAlreadyDecided, ReviewCancelled, ReviewSession
from sample_ontology import build_ontology


class TestReviewSession(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LockfileStore(os.path.join(self._tmp.name, "ont.lock"))
        self.store.write(build_ontology(), actor="setup")
        self.widened = build_ontology(get_user_access=("admin", "public"))
        pending = diff(self.store.read()["snapshot"], canonicalize(self.widened))
        self.session = ReviewSession(pending, self.store)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_approve_writes_lockfile(self) -> None:
        record = self.session.approve(actor="alice", reason="ship it")
        self.assertEqual(self.session.decision, APPROVED)
        self.assertEqual(record["hash"], self.session.diff["new_hash"])
        self.store.verify(self.widened)
        self.assertEqual(self.store.list_history()[0]["actor"], "alice")

    def test_reject_leaves_lockfile(self) -> None:
        before = self.store.read()["hash"]
        self.session.reject(actor="bob")
        self.assertEqual(self.session.decision, REJECTED)
        self.assertEqual(self.store.read()["hash"], before)

    def test_second_decision_is_refused(self) -> None:
        self.session.reject()
        with self.assertRaises(ReviewAlreadyDecided):
            self.session.approve()
        with self.assertRaises(ReviewAlreadyDecided):
            self.session.reject()

    def test_cancel_after_decision_is_a_no_op(self) -> None:
        self.session.approve()
        self.session.cancel()
        self.assertEqual(self.session.decision, APPROVED)

    def test_failed_write_keeps_session_open(self) -> None:
        with self.store._write_lock:
            with self.assertRaises(LockfileBusyError):
                self.session.approve()
        self.assertIsNone(self.session.decision)
        self.session.approve()
        self.assertEqual(self.session.decision, APPROVED)

    def test_wait_wakes_on_decision_from_another_thread(self) -> None:
        async def scenario():
            timer = threading.Timer(0.05, self.session.approve, kwargs={"actor": "remote"})
            timer.start()
            try:
                return await self.session.wait(timeout=5)
            finally:
                timer.join()

        self.assertEqual(asyncio.run(scenario()), APPROVED)

    def test_wait_after_decision_returns_immediately(self) -> None:
        self.session.reject()
        self.assertEqual(asyncio.run(self.session.wait(timeout=1)), REJECTED)

    def test_cancel_raises_in_waiter(self) -> None:
        async def scenario():
            loop = asyncio.get_running_loop()
            loop.call_later(0.01, self.session.cancel)
            await self.session.wait(timeout=5)

        with self.assertRaises(ReviewCancelled):
            asyncio.run(scenario())
        self.assertEqual(self.session.decision, CANCELLED)


if __name__ == "__main__":
    unittest.main()
