import asyncio
import contextlib
import io
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

import startup
from lockfile_store import LockfileStore
from review_session import APPROVED
from sample_ontology import build_ontology


SAMPLE_TARGET = os.path.join(HERE, "sample_ontology.py") + ":ontology"

WIDENED_SOURCE = """\
from sample_ontology import build_ontology


def widened():
    return build_ontology(get_user_access=("admin", "public"))
"""


class TestGateStartup(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.store = LockfileStore(os.path.join(self._tmp.name, "ont.lock"))
        self.store.write(build_ontology())
        self.widened = build_ontology(get_user_access=("admin", "public"))

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_matching_lockfile_starts(self) -> None:
        record = asyncio.run(startup.gate_startup(build_ontology(), self.store, interactive=False))
        self.assertEqual(record["hash"], self.store.read()["hash"])

    def test_headless_mismatch_refuses(self) -> None:
        before = self.store.read()["hash"]
        with self.assertLogs("ontogate.startup", level="WARNING") as logs:
            with self.assertRaises(startup.StartupRefused):
                asyncio.run(startup.gate_startup(self.widened, self.store, interactive=False))
        self.assertEqual(self.store.read()["hash"], before)
        self.assertTrue(any("Access: [admin] -> [admin, public]" in line for line in logs.output))

    def test_interactive_approval_starts(self) -> None:
        seen = []

        async def approve_runner(session):
            seen.append(session.diff["modified_count"])
            session.approve(actor="reviewer")
            return await session.wait()

        record = asyncio.run(startup.gate_startup(self.widened, self.store, interactive=True, review_runner=approve_runner))
        self.assertEqual(seen, [1])
        self.store.verify(self.widened)
        self.assertEqual(record["hash"], self.store.read()["hash"])

    def test_interactive_rejection_refuses(self) -> None:
        async def reject_runner(session):
            session.reject(actor="reviewer")
            return await session.wait()

        before = self.store.read()["hash"]
        with self.assertRaises(startup.StartupRefused):
            asyncio.run(startup.gate_startup(self.widened, self.store, interactive=True, review_runner=reject_runner))
        self.assertEqual(self.store.read()["hash"], before)

    def test_interactive_cancel_refuses(self) -> None:
        async def cancel_runner(session):
            session.cancel()
            return await session.wait()

        with self.assertRaises(startup.StartupRefused):
            asyncio.run(startup.gate_startup(self.widened, self.store, interactive=True, review_runner=cancel_runner))

    def test_first_run_without_lockfile(self) -> None:
        empty = LockfileStore(os.path.join(self._tmp.name, "missing.lock"))
        with self.assertRaises(startup.StartupRefused):
            asyncio.run(startup.gate_startup(build_ontology(), empty, interactive=False))
        self.assertFalse(empty.exists())

        async def approve_runner(session):
            self.assertIsNone(session.diff["old_hash"])
            session.approve()
            return APPROVED

        asyncio.run(startup.gate_startup(build_ontology(), empty, interactive=True, review_runner=approve_runner))
        self.assertTrue(empty.exists())


class TestCommandLine(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.lockfile = os.path.join(self._tmp.name, "ont.lock")
        self.env_file = os.path.join(self._tmp.name, "missing.env")
        self.widened_file = os.path.join(self._tmp.name, "widened_ontology.py")
        with open(self.widened_file, "w", encoding="utf-8") as handle:
            handle.write(WIDENED_SOURCE)
        self._env = mock.patch.dict(os.environ, {"ONT_MODE": "development", "ONT_LOG_LEVEL": "WARNING"})
        self._env.start()

    def tearDown(self) -> None:
        self._env.stop()
        self._tmp.cleanup()

    def _run(self, *args):
        out = io.StringIO()
        err = io.StringIO()
        with contextlib.redirect_stdout(out), contextlib.redirect_stderr(err):
            code = startup.main(["--lockfile", self.lockfile, "--env-file", self.env_file, *args])
        return code, out.getvalue(), err.getvalue()

    def test_review_then_verify_workflow(self) -> None:
        code, out, _ = self._run("verify", SAMPLE_TARGET)
        self.assertEqual(code, startup.EXIT_REFUSED)
        self.assertIn("+ getUser", out)

        code, out, _ = self._run("review", SAMPLE_TARGET, "--auto-approve")
        self.assertEqual(code, startup.EXIT_OK)
        self.assertIn("Lockfile updated", out)

        code, out, _ = self._run("verify", SAMPLE_TARGET)
        self.assertEqual(code, startup.EXIT_OK)

        code, out, _ = self._run("review", SAMPLE_TARGET, "--print-only")
        self.assertEqual(code, startup.EXIT_OK)
        self.assertIn("No ontology changes detected.", out)

    def test_print_only_shows_access_widening(self) -> None:
        self._run("review", SAMPLE_TARGET, "--auto-approve")
        before = LockfileStore(self.lockfile).read()["hash"]
        code, out, _ = self._run("review", self.widened_file + ":widened", "--print-only")
        self.assertEqual(code, startup.EXIT_REFUSED)
        self.assertIn("~ getUser", out)
        self.assertIn("Access: [admin] -> [admin, public]", out)
        self.assertEqual(LockfileStore(self.lockfile).read()["hash"], before)

    def test_bad_target_is_a_config_error(self) -> None:
        code, _, err = self._run("verify", os.path.join(self._tmp.name, "nope.py") + ":ontology")
        self.assertEqual(code, startup.EXIT_CONFIG)
        self.assertIn("Configuration error", err)

    def test_corrupt_lockfile_is_a_config_error(self) -> None:
        with open(self.lockfile, "w", encoding="utf-8") as handle:
            handle.write("not json")
        code, _, _ = self._run("verify", SAMPLE_TARGET)
        self.assertEqual(code, startup.EXIT_CONFIG)

    def test_bad_port_is_a_config_error(self) -> None:
        with mock.patch.dict(os.environ, {"ONT_API_PORT": "eighty"}):
            code, _, err = self._run("verify", SAMPLE_TARGET)
        self.assertEqual(code, startup.EXIT_CONFIG)
        self.assertIn("ONT_API_PORT", err)

    def test_production_start_refuses_on_mismatch(self) -> None:
        with mock.patch.dict(os.environ, {"ONT_MODE": "production"}), mock.patch.object(startup.uvicorn, "run") as run:
            code, _, _ = self._run("start", SAMPLE_TARGET)
        self.assertEqual(code, startup.EXIT_REFUSED)
        run.assert_not_called()
        self.assertFalse(os.path.exists(self.lockfile))

    def test_production_start_serves_when_locked(self) -> None:
        self._run("review", SAMPLE_TARGET, "--auto-approve")
        env = {"ONT_MODE": "production", "ONT_DISABLE_AUTH": "1", "ONT_API_PORT": "4321"}
        with mock.patch.dict(os.environ, env), mock.patch.object(startup.uvicorn, "run") as run:
            code, _, _ = self._run("start", SAMPLE_TARGET)
        self.assertEqual(code, startup.EXIT_OK)
        run.assert_called_once()
        self.assertEqual(run.call_args.kwargs["port"], 4321)


if __name__ == "__main__":
    unittest.main()
