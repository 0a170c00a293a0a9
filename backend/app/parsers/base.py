from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class ExtractionError(RuntimeError):
    """Raised when a document cannot be turned into plain text."""

    user_message = "Erreur lors de l'extraction du texte."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail


class EncryptedDocumentError(ExtractionError):
    user_message = "Le PDF est protégé par mot de passe. Veuillez fournir un PDF non chiffré."


class InvalidPdfFormatError(ExtractionError):
    user_message = "Le fichier fourni n'est pas un PDF valide."


class ExtractionFailedError(ExtractionError):
    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail)
        if detail:
            self.user_message = f"Erreur lors de l'analyse du PDF: {detail}"


@dataclass(frozen=True)
class ParsedPage:
    page: int
    text: str


class DocumentTextExtractor(Protocol):
    parser_id: str

    def extract(self, content: bytes) -> str:
        ...
