"""Environment configuration."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


PRODUCTION_MODES = ("production", "prod")


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _flag(env: Mapping[str, str], key: str) -> bool:
    return env.get(key, "").strip().lower() in ("1", "true", "yes")


def _int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{key} must be an integer, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    lockfile_path: str = "ont.lock"
    mode: str = "development"
    review_host: str = "127.0.0.1"
    review_port: int = 0
    api_host: str = "127.0.0.1"
    api_port: int = 3000
    env_name: str = "dev"
    disable_auth: bool = False
    jwks_url: str | None = None
    jwt_issuer: str | None = None
    jwt_audience: str | None = None
    log_level: str = "INFO"

    @property
    def headless(self) -> bool:
        return self.mode in PRODUCTION_MODES


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if env is None else env
    mode = (env.get("ONT_MODE", "").strip() or env.get("APP_ENV", "").strip() or "development").lower()
    return Settings(
        lockfile_path=env.get("ONT_LOCKFILE_PATH", "").strip() or "ont.lock",
        mode=mode,
        review_host=env.get("ONT_REVIEW_HOST", "").strip() or "127.0.0.1",
        review_port=_int(env, "ONT_REVIEW_PORT", 0),
        api_host=env.get("ONT_API_HOST", "").strip() or "127.0.0.1",
        api_port=_int(env, "ONT_API_PORT", 3000),
        env_name=env.get("ONT_ENV", "").strip() or "dev",
        disable_auth=_flag(env, "ONT_DISABLE_AUTH"),
        jwks_url=env.get("ONT_JWKS_URL", "").strip() or None,
        jwt_issuer=env.get("ONT_JWT_ISSUER", "").strip() or None,
        jwt_audience=env.get("ONT_JWT_AUDIENCE", "").strip() or None,
        log_level=env.get("ONT_LOG_LEVEL", "").strip().upper() or "INFO",
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))
