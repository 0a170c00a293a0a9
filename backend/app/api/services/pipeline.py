from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import time

from app.analysis import GrantAnalyzer
from app.parsers import PDF_CONTENT_TYPE, DocumentTextExtractor
from app.records import GrantAnalysis, assemble_analysis
from app.storage import AnalysisRepository, StorageError

logger = logging.getLogger("grantdesk.pipeline")


class PipelineStage(str, Enum):
    RECEIVED_FILE = "received_file"
    VALIDATED = "validated"
    TEXT_EXTRACTED = "text_extracted"
    ANALYZED = "analyzed"
    ASSEMBLED = "assembled"
    PERSISTED = "persisted"
    PERSIST_FAILED = "persist_failed"
    RESPONDED = "responded"


class UploadValidationError(RuntimeError):
    """Raised when an upload is rejected before any processing."""

    def __init__(self, user_message: str) -> None:
        super().__init__(user_message)
        self.user_message = user_message


@dataclass(frozen=True)
class UploadedDocument:
    file_name: str
    content_type: str
    content: bytes


@dataclass(frozen=True)
class PersistOutcome:
    persisted: bool
    error: str | None = None


@dataclass(frozen=True)
class PipelineResult:
    record: GrantAnalysis
    persist: PersistOutcome


def _log_stage(stage: PipelineStage, started: float, **details: object) -> None:
    logger.info(
        "analysis_stage",
        extra={
            "event": "analysis_stage",
            "stage": stage.value,
            "elapsed_ms": round((time.perf_counter() - started) * 1000, 2),
            **details,
        },
    )


def receive_upload(document: UploadedDocument | None, *, max_bytes: int) -> UploadedDocument:
    """Validation gate run before any handle is built; rejections are terminal."""
    started = time.perf_counter()
    _log_stage(PipelineStage.RECEIVED_FILE, started)
    validated = validate_upload(document, max_bytes=max_bytes)
    _log_stage(PipelineStage.VALIDATED, started, size_bytes=len(validated.content))
    return validated


def validate_upload(document: UploadedDocument | None, *, max_bytes: int) -> UploadedDocument:
    if document is None:
        raise UploadValidationError("Aucun fichier fourni")
    if document.content_type != PDF_CONTENT_TYPE:
        raise UploadValidationError("Le fichier doit être un PDF")
    if len(document.content) > max_bytes:
        limit_mb = max_bytes // (1024 * 1024)
        raise UploadValidationError(f"Le fichier ne doit pas dépasser {limit_mb}MB")
    return document


def persist_best_effort(repository: AnalysisRepository, record: GrantAnalysis) -> PersistOutcome:
    try:
        repository.put(record)
    except StorageError as exc:
        logger.warning(
            "analysis_persist_failed",
            extra={
                "event": "analysis_persist_failed",
                "analysis_id": record.id,
                "backend": repository.backend,
                "error": str(exc),
            },
        )
        return PersistOutcome(persisted=False, error=str(exc))
    return PersistOutcome(persisted=True)


def run_analysis_pipeline(
    document: UploadedDocument,
    *,
    extractor: DocumentTextExtractor,
    analyzer: GrantAnalyzer,
    repository: AnalysisRepository,
) -> PipelineResult:
    """Extract, analyze, assemble and persist one validated grant call.

    Raises ExtractionError or AnalysisFailed. A storage failure after a
    successful analysis is reported in the result instead.
    """
    started = time.perf_counter()
    pdf_text = extractor.extract(document.content)
    _log_stage(PipelineStage.TEXT_EXTRACTED, started, text_chars=len(pdf_text))

    decision_sheet = analyzer.analyze(pdf_text)
    _log_stage(PipelineStage.ANALYZED, started, decision=decision_sheet.final_recommendation.decision)

    record = assemble_analysis(pdf_text, document.file_name, decision_sheet)
    _log_stage(PipelineStage.ASSEMBLED, started, analysis_id=record.id)

    outcome = persist_best_effort(repository, record)
    stage = PipelineStage.PERSISTED if outcome.persisted else PipelineStage.PERSIST_FAILED
    _log_stage(stage, started, analysis_id=record.id)

    return PipelineResult(record=record, persist=outcome)
