from __future__ import annotations

from dataclasses import dataclass, field
import time

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from validator.config import settings
from validator.db import get_conn
from validator.storage import probe_storage


router = APIRouter()

_READY_CACHE_TTL_SECONDS = 30.0


@dataclass
class _ReadyCache:
    checked_at: float = 0.0
    ok: bool = False
    payload: dict[str, object] = field(default_factory=dict)

    def fresh(self) -> bool:
        return bool(self.payload) and time.time() - self.checked_at <= _READY_CACHE_TTL_SECONDS

    def store(self, ok: bool, payload: dict[str, object]) -> JSONResponse:
        self.checked_at, self.ok, self.payload = time.time(), ok, payload
        return self.response()

    def response(self) -> JSONResponse:
        return JSONResponse(status_code=200 if self.ok else 503, content=self.payload)


_ready_cache = _ReadyCache()


def reset_ready_cache() -> None:
    global _ready_cache
    _ready_cache = _ReadyCache()


def _check_db() -> dict[str, object]:
    with get_conn() as conn:
        conn.execute("SELECT 1").fetchone()
    return {"ok": True, "backend": "sqlite"}


@router.get("/")
def root() -> dict[str, str]:
    return {"service": "competency-validator", "status": "running"}


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok", "environment": settings.app_env}


@router.get("/ready", response_model=None)
def ready() -> JSONResponse:
    if _ready_cache.fresh():
        return _ready_cache.response()

    checks: dict[str, object] = {}
    payload: dict[str, object] = {"status": "ready", "environment": settings.app_env, "checks": checks}

    for name, check, backend in (
        ("db", _check_db, "sqlite"),
        ("storage", lambda: probe_storage(settings), settings.storage_backend),
    ):
        try:
            checks[name] = check()
        except Exception as exc:
            payload["status"] = "not_ready"
            checks[name] = {"ok": False, "backend": backend, "error": str(exc)}
            return _ready_cache.store(False, payload)

    # A missing key does not block readiness; validation runs will fail per requirement instead.
    checks["retrieval"] = {"ok": bool(settings.gemini_api_key.strip()), "model": settings.gemini_model}
    return _ready_cache.store(True, payload)
