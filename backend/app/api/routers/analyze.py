from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

from fastapi import APIRouter, File, HTTPException, Response, UploadFile
from starlette.concurrency import run_in_threadpool

from app.analysis import AnalysisFailed, GrantAnalyzer
from app.api.services.pipeline import (
    PipelineStage,
    UploadValidationError,
    UploadedDocument,
    receive_upload,
    run_analysis_pipeline,
)
from app.completion import CompletionError
from app.config import settings
from app.parsers import DocumentTextExtractor, ExtractionError
from app.records import serialize_analysis
from app.storage import AnalysisRepository, DisabledKeyValueStore, StorageError

logger = logging.getLogger("grantdesk.api")

GrantAnalyzerGetter = Callable[[], GrantAnalyzer]
AnalysisRepositoryGetter = Callable[[], AnalysisRepository]
TextExtractorGetter = Callable[[], DocumentTextExtractor]

PERSISTED_HEADER = "X-Analysis-Persisted"
UNEXPECTED_ERROR_MESSAGE = "Erreur inattendue lors du traitement"


async def _buffer_upload(upload: UploadFile | None) -> UploadedDocument | None:
    if upload is None:
        return None
    # One byte past the ceiling is enough to reject oversized files without buffering them whole.
    content = await upload.read(settings.max_upload_file_bytes + 1)
    return UploadedDocument(
        file_name=Path(upload.filename or "document.pdf").name or "document.pdf",
        content_type=upload.content_type or "",
        content=content,
    )


def _repository_or_disabled(get_analysis_repository: AnalysisRepositoryGetter) -> AnalysisRepository:
    try:
        return get_analysis_repository()
    except StorageError as exc:
        # The analysis is still returned; it is just not saved.
        logger.error(
            "analysis_repository_unavailable",
            extra={"event": "analysis_repository_unavailable", "error": str(exc)},
        )
        return AnalysisRepository(DisabledKeyValueStore())


def build_analyze_router(
    *,
    get_grant_analyzer: GrantAnalyzerGetter,
    get_analysis_repository: AnalysisRepositoryGetter,
    get_text_extractor: TextExtractorGetter,
) -> APIRouter:
    router = APIRouter()

    @router.post("/analyze")
    async def analyze_document(
        response: Response,
        file: UploadFile | None = File(default=None),
    ) -> dict[str, object]:
        document = await _buffer_upload(file)
        try:
            validated = receive_upload(document, max_bytes=settings.max_upload_file_bytes)
        except UploadValidationError as exc:
            raise HTTPException(status_code=400, detail=exc.user_message) from exc

        try:
            analyzer = get_grant_analyzer()
        except CompletionError as exc:
            logger.error(
                "analysis_handles_unavailable",
                extra={"event": "analysis_handles_unavailable", "error": str(exc)},
            )
            raise HTTPException(status_code=500, detail="Le service d'analyse n'est pas configuré.") from exc

        repository = _repository_or_disabled(get_analysis_repository)

        try:
            result = await run_in_threadpool(
                run_analysis_pipeline,
                validated,
                extractor=get_text_extractor(),
                analyzer=analyzer,
                repository=repository,
            )
        except ExtractionError as exc:
            logger.info(
                "analysis_extraction_rejected",
                extra={
                    "event": "analysis_extraction_rejected",
                    "error_kind": exc.__class__.__name__,
                    "error": str(exc),
                },
            )
            raise HTTPException(status_code=422, detail=exc.user_message) from exc
        except AnalysisFailed as exc:
            status_code = 503 if exc.rate_limited else 500
            raise HTTPException(status_code=status_code, detail=exc.user_message) from exc
        except Exception as exc:
            logger.exception("analysis_unexpected_error", extra={"event": "analysis_unexpected_error"})
            raise HTTPException(status_code=500, detail=UNEXPECTED_ERROR_MESSAGE) from exc

        response.headers[PERSISTED_HEADER] = "true" if result.persist.persisted else "false"
        logger.info(
            "analysis_stage",
            extra={
                "event": "analysis_stage",
                "stage": PipelineStage.RESPONDED.value,
                "analysis_id": result.record.id,
                "persisted": result.persist.persisted,
            },
        )
        return serialize_analysis(result.record)

    return router
