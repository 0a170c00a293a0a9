from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable
from uuid import uuid4

from pydantic import Field

from app.decision_sheet import CamelModel, DecisionSheet

TITLE_MAX_CHARS = 100
TITLE_MIN_CHARS = 10


class GrantAnalysis(CamelModel):
    id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    upload_date: str = Field(..., min_length=1)
    pdf_text: str = Field(..., min_length=1)
    decision_sheet: DecisionSheet
    recommendation: str = Field(..., min_length=1)
    personal_notes: str | None = None


def serialize_analysis(record: GrantAnalysis) -> dict[str, object]:
    return record.model_dump(mode="json", by_alias=True, exclude_none=True)


def derive_title(pdf_text: str, file_name: str) -> str:
    lines = [line.strip() for line in pdf_text.split("\n")]
    lines = [line for line in lines if line]
    if lines:
        first_line = lines[0][:TITLE_MAX_CHARS]
        if len(first_line) > TITLE_MIN_CHARS:
            return first_line

    return file_name.replace(".pdf", "", 1).replace("_", " ").replace("-", " ")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def assemble_analysis(
    pdf_text: str,
    file_name: str,
    decision_sheet: DecisionSheet,
    *,
    now: Callable[[], str] = _utc_now_iso,
    id_factory: Callable[[], object] = uuid4,
) -> GrantAnalysis:
    return GrantAnalysis(
        id=str(id_factory()),
        title=derive_title(pdf_text, file_name) or "Appel à projets",
        upload_date=now(),
        pdf_text=pdf_text,
        decision_sheet=decision_sheet,
        recommendation=decision_sheet.final_recommendation.decision,
    )
