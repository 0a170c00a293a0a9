from __future__ import annotations

import time
from typing import Callable

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from app.config import settings
from app.storage import AnalysisRepository, StorageError


_READY_CACHE_TTL_SECONDS = 30.0
_ready_cache: dict[str, object] = {
    "ts": 0.0,
    "ok": None,
    "payload": None,
}


def _cache_set(ok: bool, payload: dict[str, object]) -> None:
    _ready_cache["ts"] = time.time()
    _ready_cache["ok"] = ok
    _ready_cache["payload"] = payload


def _cache_get() -> dict[str, object] | None:
    now = time.time()
    ts = float(_ready_cache.get("ts") or 0.0)
    if now - ts > _READY_CACHE_TTL_SECONDS:
        return None
    payload = _ready_cache.get("payload")
    if isinstance(payload, dict):
        return payload
    return None


def reset_ready_cache() -> None:
    _ready_cache.update({"ts": 0.0, "ok": None, "payload": None})


def build_system_router(*, get_analysis_repository: Callable[[], AnalysisRepository]) -> APIRouter:
    router = APIRouter()

    @router.get("/")
    def root() -> dict[str, str]:
        return {"service": "grantdesk-backend", "status": "running"}

    @router.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "environment": settings.app_env}

    @router.get("/ready", response_model=None)
    def ready() -> JSONResponse:
        cached = _cache_get()
        if cached is not None:
            ok = bool(_ready_cache.get("ok"))
            return JSONResponse(status_code=200 if ok else 503, content=cached)

        checks: dict[str, object] = {
            "llm": {"provider": settings.llm_provider, "configured": _llm_configured()},
        }
        payload: dict[str, object] = {
            "status": "ready",
            "environment": settings.app_env,
            "checks": checks,
        }

        try:
            repository = get_analysis_repository()
            backend = repository.backend
            if backend == "none":
                # Analyses still succeed without storage; they are just not saved.
                checks["storage"] = {"ok": True, "backend": "none", "persistence": False}
            else:
                repository.ping()
                checks["storage"] = {"ok": True, "backend": backend}
        except StorageError as exc:
            payload["status"] = "not_ready"
            checks["storage"] = {"ok": False, "backend": settings.kv_backend, "error": str(exc)}
            _cache_set(False, payload)
            return JSONResponse(status_code=503, content=payload)

        _cache_set(True, payload)
        return JSONResponse(status_code=200, content=payload)

    return router


def _llm_configured() -> bool:
    provider = (settings.llm_provider or "").strip().lower()
    if provider == "bedrock":
        return bool(settings.bedrock_model_id)
    return bool(settings.openai_api_key)
