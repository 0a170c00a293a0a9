import json

import pytest
from fastapi.testclient import TestClient

from app.analysis import GrantAnalyzer
from app.completion import CompletionFailedError, RateLimitedError
from app.config import settings
from app.main import app
from app.storage import AnalysisRepository, DisabledKeyValueStore, StorageError
from conftest import FakeCompletionClient, build_pdf_bytes, sample_sheet

CALL_LINES = [
    "Appel a projets Renovation energetique 2026",
    "Beneficiaires : communes de plus de 10 000 habitants.",
    "Date limite de depot : 15 mars 2026.",
]


@pytest.fixture()
def fake_client(monkeypatch: pytest.MonkeyPatch) -> FakeCompletionClient:
    client = FakeCompletionClient()
    monkeypatch.setattr("app.main.get_grant_analyzer", lambda: GrantAnalyzer(client))
    return client


@pytest.fixture()
def repository(monkeypatch: pytest.MonkeyPatch, memory_repository: AnalysisRepository) -> AnalysisRepository:
    monkeypatch.setattr("app.main.get_analysis_repository", lambda: memory_repository)
    return memory_repository


def _upload(client: TestClient, content: bytes, *, name: str = "appel.pdf", content_type: str = "application/pdf"):
    return client.post("/analyze", files={"file": (name, content, content_type)})


def test_analyze_returns_record_and_stores_it(fake_client: FakeCompletionClient, repository: AnalysisRepository) -> None:
    content = build_pdf_bytes(CALL_LINES, padding_bytes=2 * 1024 * 1024)
    assert 2 * 1024 * 1024 < len(content) < settings.max_upload_file_bytes

    with TestClient(app) as client:
        response = _upload(client, content)
        history = client.get("/history")

    assert response.status_code == 200
    assert response.headers["X-Analysis-Persisted"] == "true"
    body = response.json()
    assert body["title"] == "Appel a projets Renovation energetique 2026"
    assert body["recommendation"] == "worth-pursuing"
    assert body["decisionSheet"]["eligibility"]["verdict"] == "YES"
    assert "Date limite de depot" in body["pdfText"]
    assert "personalNotes" not in body

    assert history.status_code == 200
    assert history.json()[0]["id"] == body["id"]
    assert "Beneficiaires" in fake_client.calls[0][1]["content"]


def test_renamed_non_pdf_is_rejected_as_unprocessable(
    fake_client: FakeCompletionClient, repository: AnalysisRepository
) -> None:
    docx_bytes = b"PK\x03\x04\x14\x00\x06\x00word/document.xml" + b"\x00" * 64

    with TestClient(app) as client:
        response = _upload(client, docx_bytes, name="appel.pdf")

    assert response.status_code == 422
    assert "PDF valide" in response.json()["error"]
    assert fake_client.calls == []
    assert repository.list_all() == []


def test_encrypted_pdf_is_rejected(fake_client: FakeCompletionClient, repository: AnalysisRepository) -> None:
    with TestClient(app) as client:
        response = _upload(client, build_pdf_bytes(CALL_LINES, user_password="secret", owner_password="owner"))

    assert response.status_code == 422
    assert "mot de passe" in response.json()["error"]


def test_missing_file_is_rejected(fake_client: FakeCompletionClient, repository: AnalysisRepository) -> None:
    with TestClient(app) as client:
        response = client.post("/analyze")

    assert response.status_code == 400
    assert response.json() == {"error": "Aucun fichier fourni"}


def test_wrong_content_type_is_rejected(fake_client: FakeCompletionClient, repository: AnalysisRepository) -> None:
    with TestClient(app) as client:
        response = _upload(client, b"plain text", name="notes.txt", content_type="text/plain")

    assert response.status_code == 400
    assert response.json() == {"error": "Le fichier doit être un PDF"}


def test_oversized_upload_is_rejected_before_analysis(
    monkeypatch: pytest.MonkeyPatch, repository: AnalysisRepository
) -> None:
    def analyzer_must_not_be_built() -> GrantAnalyzer:
        raise AssertionError("analyzer built for a rejected upload")

    monkeypatch.setattr("app.main.get_grant_analyzer", analyzer_must_not_be_built)
    monkeypatch.setattr(settings, "max_upload_file_bytes", 1024 * 1024)

    with TestClient(app) as client:
        response = _upload(client, b"%PDF-1.7\n" + b"0" * (1024 * 1024))

    assert response.status_code == 400
    assert response.json() == {"error": "Le fichier ne doit pas dépasser 1MB"}


def test_rate_limited_provider_maps_to_503(monkeypatch: pytest.MonkeyPatch, repository: AnalysisRepository) -> None:
    client_stub = FakeCompletionClient([RateLimitedError("429 Too Many Requests")])
    monkeypatch.setattr("app.main.get_grant_analyzer", lambda: GrantAnalyzer(client_stub))

    with TestClient(app) as client:
        response = _upload(client, build_pdf_bytes(CALL_LINES))

    assert response.status_code == 503
    assert "réessayer" in response.json()["error"]
    assert repository.list_all() == []


def test_provider_failure_maps_to_500(monkeypatch: pytest.MonkeyPatch, repository: AnalysisRepository) -> None:
    client_stub = FakeCompletionClient([CompletionFailedError("upstream 502")])
    monkeypatch.setattr("app.main.get_grant_analyzer", lambda: GrantAnalyzer(client_stub))

    with TestClient(app) as client:
        response = _upload(client, build_pdf_bytes(CALL_LINES))

    assert response.status_code == 500
    assert response.json() == {"error": "Erreur d'analyse IA: upstream 502"}


def test_malformed_model_output_maps_to_500(monkeypatch: pytest.MonkeyPatch, repository: AnalysisRepository) -> None:
    payload = sample_sheet()
    del payload["blockersRisks"]
    client_stub = FakeCompletionClient([json.dumps(payload)])
    monkeypatch.setattr("app.main.get_grant_analyzer", lambda: GrantAnalyzer(client_stub))

    with TestClient(app) as client:
        response = _upload(client, build_pdf_bytes(CALL_LINES))

    assert response.status_code == 500
    assert "mal formatée" in response.json()["error"]
    assert "blockersRisks" in response.json()["error"]


def test_storage_failure_still_returns_analysis(
    monkeypatch: pytest.MonkeyPatch, fake_client: FakeCompletionClient
) -> None:
    monkeypatch.setattr("app.main.get_analysis_repository", lambda: AnalysisRepository(DisabledKeyValueStore()))

    with TestClient(app) as client:
        response = _upload(client, build_pdf_bytes(CALL_LINES))

    assert response.status_code == 200
    assert response.headers["X-Analysis-Persisted"] == "false"
    assert response.json()["recommendation"] == "worth-pursuing"


def test_unconfigured_provider_maps_to_500(monkeypatch: pytest.MonkeyPatch, repository: AnalysisRepository) -> None:
    def unconfigured() -> GrantAnalyzer:
        raise CompletionFailedError("OPENAI_API_KEY is not configured")

    monkeypatch.setattr("app.main.get_grant_analyzer", unconfigured)

    with TestClient(app) as client:
        response = _upload(client, build_pdf_bytes(CALL_LINES))

    assert response.status_code == 500
    assert response.json() == {"error": "Le service d'analyse n'est pas configuré."}


def test_unbuildable_storage_still_returns_analysis(
    monkeypatch: pytest.MonkeyPatch, fake_client: FakeCompletionClient
) -> None:
    def misconfigured_repository() -> AnalysisRepository:
        raise StorageError("S3 storage backend selected but S3_BUCKET is not configured.")

    monkeypatch.setattr("app.main.get_analysis_repository", misconfigured_repository)

    with TestClient(app) as client:
        response = _upload(client, build_pdf_bytes(CALL_LINES))

    assert response.status_code == 200
    assert response.headers["X-Analysis-Persisted"] == "false"
    assert response.json()["recommendation"] == "worth-pursuing"
    assert len(fake_client.calls) == 1
