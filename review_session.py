"""One-shot approve/reject decision for a pending ontology diff."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any

from differ import Diff
from lockfile_store import LockfileStore


logger = logging.getLogger("ontogate.review")

APPROVED = "approved"
REJECTED = "rejected"
CANCELLED = "cancelled"


@dataclass
class ReviewError(Exception):
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


class ReviewAlreadyDecided(ReviewError):
    """A decision was already recorded for this session."""


class ReviewCancelled(ReviewError):
    """The session closed without a decision."""


class ReviewSession:
    """Holds a diff until a reviewer approves or rejects it.

    ``approve`` and ``reject`` may be called from any thread; the waiting
    coroutine is woken on its own loop.
    """

    def __init__(self, diff: Diff, store: LockfileStore) -> None:
        self.diff = diff
        self.store = store
        self.record: dict | None = None
        self._decision: str | None = None
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._future: asyncio.Future | None = None

    @property
    def decision(self) -> str | None:
        return self._decision

    def approve(self, actor: Any = None, reason: str | None = None) -> dict:
        with self._lock:
            self._ensure_open()
            # write failures leave the session open so the reviewer can retry
            record = self.store.write(self.diff["new_snapshot"], actor=actor, reason=reason or "review approved")
            self.record = record
            self._decide(APPROVED)
        logger.info("review_approved hash=%s actor=%s", record["hash"], actor)
        return record

    def reject(self, actor: Any = None) -> None:
        with self._lock:
            self._ensure_open()
            self._decide(REJECTED)
        logger.info("review_rejected hash=%s actor=%s", self.diff.get("new_hash"), actor)

    def cancel(self) -> None:
        with self._lock:
            if self._decision is not None:
                return
            self._decide(CANCELLED)
        logger.info("review_cancelled hash=%s", self.diff.get("new_hash"))

    async def wait(self, timeout: float | None = None) -> str:
        """Block until a decision arrives. Raises ReviewCancelled on cancel."""
        with self._lock:
            if self._future is None:
                self._loop = asyncio.get_running_loop()
                self._future = self._loop.create_future()
                if self._decision is not None:
                    self._settle(self._decision)
            future = self._future
        if timeout is None:
            return await asyncio.shield(future)
        return await asyncio.wait_for(asyncio.shield(future), timeout)

    def _ensure_open(self) -> None:
        if self._decision is not None:
            raise ReviewAlreadyDecided(f"Review already {self._decision}")

    def _decide(self, decision: str) -> None:
        self._decision = decision
        if self._future is None or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._settle, decision)

    def _settle(self, decision: str) -> None:
        future = self._future
        if future is None or future.done():
            return
        if decision == CANCELLED:
            future.set_exception(ReviewCancelled("Review closed without a decision"))
        else:
            future.set_result(decision)
