"""On-disk lockfile of the approved ontology snapshot.

Only the approval workflow writes here. Writes go to a temp file in the same
directory, are fsynced, then renamed over the lockfile, so a reader sees
either the old record or the new one.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List

from canonicalize import Snapshot, canonicalize
from differ import Diff, diff
from ontogate.canonical_json import check_snapshot, pretty_dumps
from ontogate.ontology_hash import is_ontology_hash, ontology_hash
from ontology import OntologyDefinition


logger = logging.getLogger("ontogate.lockfile")

LOCKFILE_VERSION = 1


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass
class LockfileError(Exception):
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


class LockfileBusyError(LockfileError):
    """Another write is in progress on this store."""


class LockfileCorruptError(LockfileError):
    """The lockfile exists but cannot be used."""


class LockMismatch(Exception):
    def __init__(self, old_snapshot: Snapshot | None, new_snapshot: Snapshot, old_hash: str | None, new_hash: str):
        self.old_snapshot = old_snapshot
        self.new_snapshot = new_snapshot
        self.old_hash = old_hash
        self.new_hash = new_hash
        if old_hash is None:
            message = f"No lockfile found; current ontology hash is {new_hash}"
        else:
            message = f"Ontology hash {new_hash} does not match lockfile hash {old_hash}"
        super().__init__(message)

    def diff(self) -> Diff:
        return diff(self.old_snapshot, self.new_snapshot)


class LockfileStore:
    def __init__(self, path: str | os.PathLike) -> None:
        self.path = os.fspath(path)
        self._write_lock = threading.Lock()
        self._audit: List[dict] = []

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def list_history(self) -> list[dict]:
        return list(self._audit)

    def read(self) -> Dict[str, Any] | None:
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                raw = handle.read()
        except FileNotFoundError:
            return None
        try:
            record = json.loads(raw)
        except ValueError as exc:
            raise LockfileCorruptError(f"Lockfile {self.path} is not valid JSON: {exc}") from exc
        if not isinstance(record, dict):
            raise LockfileCorruptError(f"Lockfile {self.path} must contain a JSON object")
        if record.get("version") != LOCKFILE_VERSION:
            raise LockfileCorruptError(f"Lockfile {self.path} has unsupported version {record.get('version')!r}")
        if not is_ontology_hash(record.get("hash")):
            raise LockfileCorruptError(f"Lockfile {self.path} has an invalid hash")
        if not isinstance(record.get("snapshot"), dict):
            raise LockfileCorruptError(f"Lockfile {self.path} is missing its snapshot")
        try:
            check_snapshot(record["snapshot"])
        except (TypeError, ValueError) as exc:
            raise LockfileCorruptError(f"Lockfile {self.path} has a non-canonical snapshot: {exc}") from exc
        return record

    def write(self, ontology: OntologyDefinition | Snapshot, actor: Any = None, reason: str | None = None) -> dict:
        """Persist ``ontology`` (a definition or an already canonical snapshot)."""
        if not self._write_lock.acquire(blocking=False):
            raise LockfileBusyError(f"Lockfile {self.path} is already being written")
        try:
            snapshot = canonicalize(ontology) if isinstance(ontology, OntologyDefinition) else copy.deepcopy(ontology)
            new_hash = ontology_hash(snapshot)
            previous = self._current_hash()
            record = {
                "version": LOCKFILE_VERSION,
                "hash": new_hash,
                "written_at": _now(),
                "snapshot": snapshot,
            }
            self._replace(pretty_dumps(record))
            audit = {
                "audit_id": str(uuid.uuid4()),
                "action": "approve",
                "from_hash": previous,
                "to_hash": new_hash,
                "actor": actor,
                "reason": reason,
                "at": record["written_at"],
            }
            self._audit.insert(0, audit)
            logger.info("lockfile_written path=%s from_hash=%s to_hash=%s", self.path, previous, new_hash)
            return copy.deepcopy(record)
        finally:
            self._write_lock.release()

    def verify(self, ontology: OntologyDefinition) -> dict:
        """Return the lock record when it matches ``ontology``; raise LockMismatch otherwise."""
        snapshot = canonicalize(ontology)
        new_hash = ontology_hash(snapshot)
        record = self.read()
        if record is None:
            logger.warning("lockfile_missing path=%s hash=%s", self.path, new_hash)
            raise LockMismatch(None, snapshot, None, new_hash)
        if record["hash"] != new_hash:
            logger.warning("lockfile_mismatch path=%s locked=%s current=%s", self.path, record["hash"], new_hash)
            raise LockMismatch(record["snapshot"], snapshot, record["hash"], new_hash)
        return record

    def _current_hash(self) -> str | None:
        try:
            record = self.read()
        except LockfileCorruptError:
            return None
        return record["hash"] if record else None

    def _replace(self, text: str) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".ont-lock-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
