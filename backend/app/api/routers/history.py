from __future__ import annotations

import logging
from typing import Callable

from fastapi import APIRouter, Body, HTTPException, Query
from fastapi.responses import PlainTextResponse

from app.api.contracts import NotesUpdateRequest, SuccessResponse
from app.export import EXPORT_FORMATS, ExportFormatError, render_export
from app.records import GrantAnalysis, serialize_analysis
from app.storage import AnalysisNotFoundError, AnalysisRepository, StorageError

logger = logging.getLogger("grantdesk.api")

AnalysisRepositoryGetter = Callable[[], AnalysisRepository]

NOT_FOUND_MESSAGE = "Analyse non trouvée"


def _storage_failure(operation: str, exc: StorageError, message: str) -> HTTPException:
    logger.warning(
        "history_storage_failed",
        extra={"event": "history_storage_failed", "operation": operation, "error": str(exc)},
    )
    return HTTPException(status_code=500, detail=message)


def build_history_router(*, get_analysis_repository: AnalysisRepositoryGetter) -> APIRouter:
    router = APIRouter()

    def load_analysis(analysis_id: str) -> GrantAnalysis:
        try:
            record = get_analysis_repository().get(analysis_id)
        except StorageError as exc:
            raise _storage_failure("get", exc, "Erreur lors de la récupération") from exc
        if record is None:
            raise HTTPException(status_code=404, detail=NOT_FOUND_MESSAGE)
        return record

    @router.get("/history")
    def list_history() -> list[dict[str, object]]:
        try:
            records = get_analysis_repository().list_all()
        except StorageError as exc:
            raise _storage_failure("list", exc, "Erreur lors de la récupération de l'historique") from exc
        return [serialize_analysis(record) for record in records]

    @router.delete("/history")
    def delete_history_entry(analysis_id: str | None = Query(default=None, alias="id")) -> SuccessResponse:
        if not analysis_id:
            raise HTTPException(status_code=400, detail="ID manquant")
        try:
            get_analysis_repository().delete(analysis_id)
        except StorageError as exc:
            raise _storage_failure("delete", exc, "Erreur lors de la suppression") from exc
        logger.info("analysis_deleted", extra={"event": "analysis_deleted", "analysis_id": analysis_id})
        return SuccessResponse()

    @router.get("/history/{analysis_id}")
    def get_history_entry(analysis_id: str) -> dict[str, object]:
        return serialize_analysis(load_analysis(analysis_id))

    @router.patch("/history/{analysis_id}")
    def update_history_notes(
        analysis_id: str,
        payload: NotesUpdateRequest | None = Body(default=None),
    ) -> SuccessResponse:
        if payload is None or "personal_notes" not in payload.model_fields_set:
            raise HTTPException(status_code=400, detail="personalNotes manquant dans le body")
        try:
            get_analysis_repository().update_notes(analysis_id, payload.personal_notes)
        except AnalysisNotFoundError as exc:
            raise HTTPException(status_code=404, detail=NOT_FOUND_MESSAGE) from exc
        except StorageError as exc:
            raise _storage_failure("update_notes", exc, "Erreur lors de la mise à jour") from exc
        logger.info("analysis_notes_updated", extra={"event": "analysis_notes_updated", "analysis_id": analysis_id})
        return SuccessResponse()

    @router.get("/history/{analysis_id}/export", response_class=PlainTextResponse)
    def export_history_entry(
        analysis_id: str,
        export_format: str = Query(default="text", alias="format"),
    ) -> PlainTextResponse:
        record = load_analysis(analysis_id)
        try:
            rendered = render_export(record, export_format)
        except ExportFormatError as exc:
            raise HTTPException(
                status_code=400,
                detail=f"Format d'export inconnu. Formats acceptés : {', '.join(EXPORT_FORMATS)}",
            ) from exc
        media_type = "text/markdown" if export_format.strip().lower() == "markdown" else "text/plain"
        return PlainTextResponse(content=rendered, media_type=f"{media_type}; charset=utf-8")

    return router
