"""Principal resolution middleware and the default JWT auth hook."""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

import anyio
import httpx
from jose import jwt
from jose.exceptions import JWTError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from access_filter import normalize_auth_result


logger = logging.getLogger("ontogate.auth")

GROUPS_HEADER = "X-Ont-Groups"


@dataclass
class AuthenticationFailed(Exception):
    code: str
    message: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


def _error_body(code: str, message: str, path: str | None = None, detail: dict | None = None) -> dict:
    return {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }


class JwksCache:
    """Per-hook JWKS key set, refetched after ``ttl`` seconds."""

    def __init__(self, jwks_url: str, ttl: float = 600.0) -> None:
        self.jwks_url = jwks_url
        self.ttl = ttl
        self._keys: dict | None = None
        self._fetched_at = 0.0

    def fetch(self, force: bool = False) -> dict:
        now = time.time()
        if not force and self._keys and now - self._fetched_at < self.ttl:
            return self._keys
        resp = httpx.get(self.jwks_url, timeout=10.0)
        resp.raise_for_status()
        self._keys = resp.json()
        self._fetched_at = now
        return self._keys



def _find_key(jwks: dict, kid: str | None) -> dict | None:
    for jwk in jwks.get("keys", []):
        if jwk.get("kid") == kid:
            return jwk
    return None


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def _verify_jwt(token: str, jwks: JwksCache, issuer: str | None, audience: Optional[str]) -> dict:
    headers = jwt.get_unverified_header(token)
    kid = headers.get("kid")
    key = _find_key(jwks.fetch(), kid)
    if key is None:
        # keys may have rotated since the last fetch
        key = _find_key(jwks.fetch(force=True), kid)
    if key is None:
        raise JWTError("Unknown kid")
    options = {"verify_aud": audience is not None, "verify_iss": issuer is not None}
    return jwt.decode(token, key, algorithms=[headers.get("alg", "RS256")], issuer=issuer, audience=audience, options=options)


def claims_to_auth_result(claims: dict) -> dict:
    """Map JWT claims to ``{groups, user, organization}``."""
    groups = claims.get("groups")
    if isinstance(groups, str):
        groups = [groups]
    if not isinstance(groups, list):
        role = claims.get("role")
        groups = [role] if isinstance(role, str) and role else []
    user = None
    if claims.get("sub") or claims.get("email"):
        user = {"id": claims.get("sub"), "email": claims.get("email")}
    org_id = claims.get("org_id")
    return {
        "groups": [g for g in groups if isinstance(g, str)],
        "user": user,
        "organization": {"id": org_id} if org_id else None,
    }


def jwt_auth_hook(
    jwks_url: str,
    issuer: str | None = None,
    audience: str | None = None,
    anonymous_groups: Iterable[str] | None = None,
    jwks: JwksCache | None = None,
) -> Callable[[Request], dict]:
    """Auth hook verifying a bearer JWT against ``jwks_url``.

    Requests without a token get ``anonymous_groups`` when given, otherwise
    they fail with AUTH_MISSING_TOKEN. Each hook owns its key cache unless
    one is passed in.
    """
    anonymous = list(anonymous_groups) if anonymous_groups is not None else None
    jwks = jwks or JwksCache(jwks_url)

    def _hook(request: Request) -> dict:
        token = _get_bearer_token(request)
        if not token:
            if anonymous is not None:
                return {"groups": anonymous}
            raise AuthenticationFailed("AUTH_MISSING_TOKEN", "Missing bearer token")
        try:
            claims = _verify_jwt(token, jwks, issuer, audience)
        except (JWTError, httpx.HTTPError) as exc:
            logger.warning("auth_invalid_token path=%s issuer=%s audience=%s error=%s", request.url.path, issuer, audience, exc)
            raise AuthenticationFailed("AUTH_INVALID_TOKEN", "Invalid bearer token") from exc
        return claims_to_auth_result(claims)

    return _hook


def header_auth_hook(request: Request) -> dict:
    """Development hook: groups come from a comma-separated header."""
    raw = request.headers.get(GROUPS_HEADER, "")
    return {"groups": [g.strip() for g in raw.split(",") if g.strip()]}


class PrincipalMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, auth_hook: Callable[[Request], Any], exempt_paths: Iterable[str] = ("/health",)) -> None:
        super().__init__(app)
        self._auth_hook = auth_hook
        self._exempt_paths = set(exempt_paths)

    async def _resolve(self, request: Request) -> Any:
        if inspect.iscoroutinefunction(self._auth_hook):
            return await self._auth_hook(request)
        result = await anyio.to_thread.run_sync(self._auth_hook, request)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or request.url.path in self._exempt_paths:
            return await call_next(request)
        start = time.perf_counter()
        try:
            principal = normalize_auth_result(await self._resolve(request))
        except AuthenticationFailed as exc:
            logger.warning("auth_failed path=%s code=%s", request.url.path, exc.code)
            return JSONResponse(_error_body("AUTH_FAILED", exc.message, "Authorization", {"reason": exc.code}), status_code=401)
        except Exception as exc:
            logger.warning("auth_failed path=%s error=%s", request.url.path, exc)
            return JSONResponse(_error_body("AUTH_FAILED", "Authentication failed", "Authorization", {"error": str(exc)}), status_code=401)
        request.state.principal = principal
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        return await call_next(request)
