"""FastAPI app serving an approved ontology's tool surface."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Callable

from fastapi import FastAPI, Request

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from access_filter import AccessDenied, InputValidationError, Principal, UnknownFunction, prepare_call
from app.auth import PrincipalMiddleware, header_auth_hook, jwt_auth_hook
from app.responses import _error_response, _errors_response, _ok_response, _safe_json
from app.settings import Settings, load_settings
from canonicalize import compute_ontology_hash
from ontology import OntologyDefinition
from tool_catalog import list_tools


logger = logging.getLogger("ontogate")


def _resolve_auth_hook(ontology: OntologyDefinition, settings: Settings) -> Callable[..., Any]:
    if settings.disable_auth:
        logger.warning("auth_disabled=True groups_header=X-Ont-Groups")
        return header_auth_hook
    if ontology.auth is not None:
        return ontology.auth
    if not settings.jwks_url:
        raise RuntimeError("ONT_JWKS_URL is required for auth when the ontology has no auth hook")
    return jwt_auth_hook(settings.jwks_url, issuer=settings.jwt_issuer, audience=settings.jwt_audience)


def _principal(request: Request) -> Principal:
    return getattr(request.state, "principal", None) or Principal()


def create_app(
    ontology: OntologyDefinition,
    settings: Settings | None = None,
    auth_hook: Callable[..., Any] | None = None,
) -> FastAPI:
    """Build the API app. Call only after the lockfile has been verified."""
    settings = settings or load_settings()
    _, ontology_hash_value = compute_ontology_hash(ontology)
    app = FastAPI(title=ontology.name)
    app.state.ontology = ontology
    app.state.settings = settings
    app.add_middleware(PrincipalMiddleware, auth_hook=auth_hook or _resolve_auth_hook(ontology, settings))
    logger.info("api_ready ontology=%s hash=%s functions=%s", ontology.name, ontology_hash_value, len(ontology.functions))

    @app.get("/health")
    async def health() -> dict:
        return {"ok": True, "ontology": ontology.name, "hash": ontology_hash_value}

    @app.get("/tools")
    async def tools(request: Request):
        principal = _principal(request)
        return _ok_response({"tools": list_tools(ontology, principal), "groups": list(principal.groups)})

    @app.post("/tools/{name}/prepare")
    async def prepare(name: str, request: Request):
        principal = _principal(request)
        body = await _safe_json(request)
        try:
            args = prepare_call(ontology, name, body.get("args") or {}, principal)
        except UnknownFunction as exc:
            return _error_response(exc.code, exc.message, "name", None, status=404)
        except AccessDenied as exc:
            return _error_response(exc.code, exc.message, "name", {"requires": list(ontology.functions[name].access)}, status=403)
        except InputValidationError as exc:
            errors = [{**issue, "detail": issue.get("detail")} for issue in exc.issues]
            return _errors_response(errors, status=400)
        context = {
            "env": settings.env_name,
            "env_config": dict(ontology.environments.get(settings.env_name) or {}),
            "access_groups": list(principal.groups),
        }
        return _ok_response({"function": name, "args": args, "context": context})

    return app
