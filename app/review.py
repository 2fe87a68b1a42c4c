"""Review surface: show the pending diff and take one approve/reject decision."""

from __future__ import annotations

import logging

import anyio
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse

from app.responses import _error_response, _ok_response, _safe_json
from differ import format_diff, public_expansions
from lockfile_store import LockfileBusyError, LockfileError
from review_session import ReviewAlreadyDecided, ReviewSession


logger = logging.getLogger("ontogate.review")


def _diff_payload(session: ReviewSession) -> dict:
    diff = session.diff
    return {
        "diff": {
            "has_changes": diff["has_changes"],
            "changes": diff["changes"],
            "added_count": diff["added_count"],
            "removed_count": diff["removed_count"],
            "modified_count": diff["modified_count"],
            "old_hash": diff["old_hash"],
            "new_hash": diff["new_hash"],
        },
        "decision": session.decision,
    }


def _diff_warnings(session: ReviewSession) -> list:
    return [
        {
            "code": "FUNCTION_NEWLY_PUBLIC",
            "message": f"Function '{name}' becomes reachable by the public group",
            "path": f"functions.{name}.access",
            "detail": None,
        }
        for name in public_expansions(session.diff)
    ]


def create_review_app(session: ReviewSession) -> FastAPI:
    app = FastAPI(title="Ontology Review")

    @app.get("/", response_class=PlainTextResponse)
    async def review_summary() -> str:
        return format_diff(session.diff) + "\n"

    @app.get("/api/diff")
    async def get_diff():
        return _ok_response(_diff_payload(session), warnings=_diff_warnings(session))

    @app.post("/api/approve")
    async def approve(request: Request):
        body = await _safe_json(request)
        actor = body.get("actor")
        reason = body.get("reason")
        try:
            record = await anyio.to_thread.run_sync(session.approve, actor, reason)
        except ReviewAlreadyDecided as exc:
            return _error_response("REVIEW_ALREADY_DECIDED", str(exc), None, {"decision": session.decision}, status=409)
        except LockfileBusyError as exc:
            return _error_response("LOCKFILE_BUSY", str(exc), None, None, status=409)
        except (LockfileError, OSError) as exc:
            logger.error("lockfile_write_failed path=%s error=%s", session.store.path, exc)
            return _error_response("LOCKFILE_WRITE_FAILED", "Failed to write lockfile", None, {"error": str(exc)}, status=500)
        return _ok_response({"decision": session.decision, "hash": record["hash"], "written_at": record["written_at"]})

    @app.post("/api/reject")
    async def reject(request: Request):
        body = await _safe_json(request)
        try:
            session.reject(body.get("actor"))
        except ReviewAlreadyDecided as exc:
            return _error_response("REVIEW_ALREADY_DECIDED", str(exc), None, {"decision": session.decision}, status=409)
        return _ok_response({"decision": session.decision})

    return app
