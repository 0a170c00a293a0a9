from contextlib import asynccontextmanager
from functools import lru_cache
import logging
import threading
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.analysis import GrantAnalyzer
from app.api.routers.analyze import PERSISTED_HEADER, build_analyze_router
from app.api.routers.history import build_history_router
from app.api.routers.system import build_system_router
from app.completion import create_completion_client
from app.config import settings
from app.observability import (
    configure_logging,
    normalize_request_id,
    reset_request_id,
    sanitize_for_logging,
    set_request_id,
)
from app.parsers import PdfTextExtractor
from app.storage import AnalysisRepository, create_key_value_store

logger = logging.getLogger("grantdesk.api")

# Each cached handle is built at most once per process, even under concurrent first use.
_analyzer_lock = threading.Lock()
_repository_lock = threading.Lock()


@lru_cache(maxsize=1)
def _cached_grant_analyzer() -> GrantAnalyzer:
    return GrantAnalyzer(
        create_completion_client(settings),
        strict_enums=settings.strict_enum_validation,
        max_input_chars=settings.completion_max_input_chars,
    )


def get_grant_analyzer() -> GrantAnalyzer:
    with _analyzer_lock:
        return _cached_grant_analyzer()


@lru_cache(maxsize=1)
def _cached_analysis_repository() -> AnalysisRepository:
    return AnalysisRepository(
        create_key_value_store(settings),
        prefix=settings.kv_prefix,
        scan_count=settings.kv_scan_count,
    )


def get_analysis_repository() -> AnalysisRepository:
    with _repository_lock:
        return _cached_analysis_repository()


def get_text_extractor() -> PdfTextExtractor:
    return PdfTextExtractor()


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging(settings.log_level)
    logger.info(
        "application_startup",
        extra={
            "event": "application_startup",
            "environment": settings.app_env,
            "llm_provider": settings.llm_provider,
            "kv_backend": settings.kv_backend,
        },
    )
    yield
    logger.info("application_shutdown", extra={"event": "application_shutdown"})


def create_app() -> FastAPI:
    cors_origins = settings.cors_origins_list
    if settings.cors_allow_credentials and any(origin == "*" for origin in cors_origins):
        raise RuntimeError("Invalid CORS_ORIGINS: wildcard '*' is not allowed when credentials are enabled.")

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type", settings.request_id_header],
        expose_headers=[settings.request_id_header, PERSISTED_HEADER],
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):
        request_id = normalize_request_id(request.headers.get(settings.request_id_header))
        request.state.request_id = request_id
        token = set_request_id(request_id)
        started = time.perf_counter()
        fields = {"request_id": request_id, "method": request.method, "path": request.url.path}

        logger.info(
            "request_started",
            extra={
                "event": "request_started",
                **fields,
                "query": sanitize_for_logging(dict(request.query_params)),
                "content_length": request.headers.get("content-length"),
                "client_ip": request.client.host if request.client else None,
            },
        )
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "request_failed",
                extra={"event": "request_failed", **fields, "duration_ms": _elapsed_ms(started)},
            )
            raise
        finally:
            reset_request_id(token)

        response.headers[settings.request_id_header] = request_id
        completed = {"event": "request_completed", **fields, "status_code": response.status_code}
        persisted = response.headers.get(PERSISTED_HEADER)
        if persisted is not None:
            completed["persisted"] = persisted == "true"
        logger.info("request_completed", extra={**completed, "duration_ms": _elapsed_ms(started)})
        return response

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(_: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info(
            "request_validation_failed",
            extra={"event": "request_validation_failed", "errors": sanitize_for_logging(exc.errors())},
        )
        return JSONResponse(status_code=400, content={"error": "Requête invalide"})

    # Getters are resolved at call time so tests can monkeypatch the module-level functions.
    app.include_router(build_system_router(get_analysis_repository=lambda: get_analysis_repository()))
    app.include_router(
        build_analyze_router(
            get_grant_analyzer=lambda: get_grant_analyzer(),
            get_analysis_repository=lambda: get_analysis_repository(),
            get_text_extractor=lambda: get_text_extractor(),
        )
    )
    app.include_router(build_history_router(get_analysis_repository=lambda: get_analysis_repository()))
    return app


app = create_app()
