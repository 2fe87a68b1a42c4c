"""Lockfile-gated startup and the ``ontogate`` command line."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

import anyio
import uvicorn

from app.main import create_app
from app.review import create_review_app
from app.settings import Settings, _load_env_file, configure_logging, load_settings
from canonicalize import canonicalize
from differ import diff, format_diff
from lockfile_store import LockfileCorruptError, LockfileStore, LockMismatch
from ontology import OntologyDefinition, OntologyValidationError
from ontology_loader import OntologyLoadError, load_ontology
from review_session import APPROVED, ReviewCancelled, ReviewSession
from schema_tree import SchemaDefinitionError


logger = logging.getLogger("ontogate.startup")

EXIT_OK = 0
EXIT_REFUSED = 1
EXIT_CONFIG = 2

ReviewRunner = Callable[[ReviewSession], Awaitable[str]]


@dataclass
class StartupRefused(Exception):
    message: str
    new_hash: str | None = None

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return self.message


def _log_mismatch(mismatch: LockMismatch) -> dict:
    pending = mismatch.diff()
    logger.warning(
        "ontology_changed old_hash=%s new_hash=%s added=%s removed=%s modified=%s",
        mismatch.old_hash,
        mismatch.new_hash,
        pending["added_count"],
        pending["removed_count"],
        pending["modified_count"],
    )
    logger.warning("%s", format_diff(pending))
    return pending


async def gate_startup(
    ontology: OntologyDefinition,
    store: LockfileStore,
    interactive: bool,
    review_runner: ReviewRunner | None = None,
) -> dict:
    """Verify the lockfile before anything is served.

    Headless runs refuse on any mismatch. Interactive runs hand the diff to
    ``review_runner`` and continue only when it reports an approval that
    re-verifies.
    """
    try:
        return await anyio.to_thread.run_sync(store.verify, ontology)
    except LockMismatch as mismatch:
        pending = _log_mismatch(mismatch)
        if not interactive or review_runner is None:
            raise StartupRefused(
                "Ontology does not match the lockfile; run `ontogate review` to approve the changes",
                mismatch.new_hash,
            ) from mismatch
        new_hash = mismatch.new_hash

    session = ReviewSession(pending, store)
    try:
        decision = await review_runner(session)
    except ReviewCancelled as exc:
        raise StartupRefused("Review closed without a decision", new_hash) from exc
    if decision != APPROVED:
        raise StartupRefused("Ontology changes were rejected", new_hash)
    try:
        return await anyio.to_thread.run_sync(store.verify, ontology)
    except LockMismatch as exc:
        raise StartupRefused("Lockfile still does not match after approval", exc.new_hash) from exc


def review_server_runner(host: str = "127.0.0.1", port: int = 0) -> ReviewRunner:
    """Serve the review surface until a decision arrives or the server stops."""

    async def _run(session: ReviewSession) -> str:
        config = uvicorn.Config(create_review_app(session), host=host, port=port, log_level="warning")
        server = uvicorn.Server(config)
        serve_task = asyncio.create_task(server.serve())
        wait_task = asyncio.create_task(session.wait())
        try:
            while not server.started and not serve_task.done():
                await asyncio.sleep(0.05)
            if server.started:
                bound = server.servers[0].sockets[0].getsockname() if server.servers else (host, port)
                logger.info("review_ui_ready url=http://%s:%s", bound[0], bound[1])
            done, _ = await asyncio.wait({serve_task, wait_task}, return_when=asyncio.FIRST_COMPLETED)
            if wait_task not in done:
                # server stopped first (signal or bind failure)
                session.cancel()
            return await wait_task
        finally:
            server.should_exit = True
            await serve_task

    return _run


def _store(settings: Settings) -> LockfileStore:
    return LockfileStore(settings.lockfile_path)


def cmd_verify(ontology: OntologyDefinition, settings: Settings) -> int:
    try:
        record = _store(settings).verify(ontology)
    except LockMismatch as mismatch:
        print(format_diff(mismatch.diff()))
        return EXIT_REFUSED
    print(f"Lockfile matches: {record['hash']}")
    return EXIT_OK


def cmd_review(ontology: OntologyDefinition, settings: Settings, print_only: bool, auto_approve: bool) -> int:
    store = _store(settings)
    record = store.read()
    pending = diff(record["snapshot"] if record else None, canonicalize(ontology))
    if not pending["has_changes"]:
        print("No ontology changes detected.")
        return EXIT_OK
    print(format_diff(pending))
    if print_only:
        return EXIT_REFUSED
    if auto_approve:
        written = store.write(pending["new_snapshot"], actor="cli", reason="auto-approve")
        print(f"Changes approved. Lockfile updated: {written['hash']}")
        return EXIT_OK
    session = ReviewSession(pending, store)
    try:
        decision = asyncio.run(review_server_runner(settings.review_host, settings.review_port)(session))
    except ReviewCancelled:
        print("Review closed without a decision.")
        return EXIT_REFUSED
    if decision == APPROVED:
        print("Changes approved. Lockfile updated.")
        return EXIT_OK
    print("Changes rejected.")
    return EXIT_REFUSED


def cmd_start(ontology: OntologyDefinition, settings: Settings) -> int:
    store = _store(settings)
    runner = None if settings.headless else review_server_runner(settings.review_host, settings.review_port)
    try:
        asyncio.run(gate_startup(ontology, store, interactive=not settings.headless, review_runner=runner))
    except StartupRefused as exc:
        logger.error("startup_refused mode=%s reason=%s", settings.mode, exc)
        return EXIT_REFUSED
    app = create_app(ontology, settings)
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ontogate", description="Ontology change control")
    parser.add_argument("--lockfile", help="lockfile path (default: ONT_LOCKFILE_PATH or ont.lock)")
    parser.add_argument("--env-file", default=".env", help="optional .env file to load")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="verify the lockfile, then serve the API")
    start.add_argument("target", help="module:attribute, path/to/file.py:attribute or ontology.json")

    review = sub.add_parser("review", help="review and approve ontology changes")
    review.add_argument("target")
    review.add_argument("--print-only", action="store_true", help="print the diff and exit 1 when there are changes")
    review.add_argument("--auto-approve", action="store_true", help="approve changes without prompting")

    verify = sub.add_parser("verify", help="check the ontology against the lockfile")
    verify.add_argument("target")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _load_env_file(Path(args.env_file))
    try:
        settings = load_settings()
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    if args.lockfile:
        settings = replace(settings, lockfile_path=args.lockfile)
    configure_logging(settings)
    try:
        ontology = load_ontology(args.target)
    except (OntologyLoadError, OntologyValidationError, SchemaDefinitionError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    try:
        if args.command == "verify":
            return cmd_verify(ontology, settings)
        if args.command == "review":
            return cmd_review(ontology, settings, args.print_only, args.auto_approve)
        return cmd_start(ontology, settings)
    except LockfileCorruptError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG


if __name__ == "__main__":
    sys.exit(main())
