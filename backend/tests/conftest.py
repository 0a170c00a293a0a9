from __future__ import annotations

import copy
from io import BytesIO
import json
import os

import pytest

from app.api.routers.system import reset_ready_cache
from app.storage import AnalysisRepository, MemoryKeyValueStore


SAMPLE_SHEET: dict[str, object] = {
    "executiveSummary": "Appel à projets pour la rénovation énergétique des bâtiments communaux.",
    "eligibility": {
        "verdict": "YES",
        "justification": "Les communes de plus de 10 000 habitants sont éligibles.",
    },
    "financialTerms": "Subvention de 40 % plafonnée à 500 000 EUR.",
    "deadlinesWorkload": {
        "deadline": "15 mars 2026",
        "projectPeriod": "2026-2028",
        "complexity": "Medium",
        "estimatedHours": 40,
    },
    "blockersRisks": "Cofinancement de 20 % obligatoire.",
    "finalRecommendation": {
        "decision": "worth-pursuing",
        "reasons": ["Éligibilité confirmée", "Montant significatif", "Calendrier compatible"],
    },
}


def sample_sheet(**overrides: object) -> dict[str, object]:
    payload = copy.deepcopy(SAMPLE_SHEET)
    payload.update(overrides)
    return payload


def build_pdf_bytes(
    lines: list[str],
    *,
    user_password: str | None = None,
    owner_password: str | None = None,
    padding_bytes: int = 0,
) -> bytes:
    from pypdf import PdfWriter
    from pypdf.generic import DecodedStreamObject, DictionaryObject, NameObject

    writer = PdfWriter()
    page = writer.add_blank_page(width=612, height=792)

    font = DictionaryObject(
        {
            NameObject("/Type"): NameObject("/Font"),
            NameObject("/Subtype"): NameObject("/Type1"),
            NameObject("/BaseFont"): NameObject("/Helvetica"),
        }
    )
    font_ref = writer._add_object(font)
    resources = DictionaryObject({NameObject("/Font"): DictionaryObject({NameObject("/F1"): font_ref})})
    page[NameObject("/Resources")] = resources

    operations = ["BT /F1 12 Tf 72 720 Td"]
    for index, line in enumerate(lines):
        safe_text = line.replace("\\", "\\\\").replace("(", "\\(").replace(")", "\\)")
        if index:
            operations.append("0 -18 Td")
        operations.append(f"({safe_text}) Tj")
    operations.append("ET")
    content_stream = DecodedStreamObject()
    content_stream.set_data(" ".join(operations).encode("latin-1"))
    page[NameObject("/Contents")] = writer._add_object(content_stream)

    if padding_bytes:
        # Random bytes stay incompressible, so the file size tracks padding_bytes.
        writer.add_attachment("annexe.bin", os.urandom(padding_bytes))

    if user_password is not None:
        writer.encrypt(user_password=user_password, owner_password=owner_password)

    buffer = BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


class FakeCompletionClient:
    model_id = "fake-model"

    def __init__(self, responses: list[object] | None = None) -> None:
        self._responses = list(responses) if responses is not None else [json.dumps(SAMPLE_SHEET)]
        self.calls: list[list[dict[str, str]]] = []

    def complete(self, messages: list[dict[str, str]]) -> str:
        self.calls.append(messages)
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(response, Exception):
            raise response
        return str(response)


@pytest.fixture()
def memory_repository() -> AnalysisRepository:
    return AnalysisRepository(MemoryKeyValueStore(), prefix="grant:analysis:", scan_count=2)


@pytest.fixture(autouse=True)
def clear_ready_cache():
    reset_ready_cache()
    yield
    reset_ready_cache()
