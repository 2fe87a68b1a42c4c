"""JSON envelope helpers shared by the HTTP surfaces."""

from __future__ import annotations

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def _issue(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {"code": code, "message": message, "path": path, "detail": detail}


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [_issue(code, message, path, detail)],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _errors_response(errors: list, status: int = 400) -> JSONResponse:
    body = {"ok": False, "errors": errors, "warnings": []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


async def _safe_json(request: Request) -> dict:
    try:
        value = await request.json()
    except Exception:
        return {}
    return value if isinstance(value, dict) else {}
