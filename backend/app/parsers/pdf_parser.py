from __future__ import annotations

import io
import logging

from pypdf import PasswordType, PdfReader
from pypdf.errors import FileNotDecryptedError, PdfReadError

from app.parsers.base import (
    EncryptedDocumentError,
    ExtractionError,
    ExtractionFailedError,
    InvalidPdfFormatError,
    ParsedPage,
)

logger = logging.getLogger("grantdesk.parsers")

PDF_CONTENT_TYPE = "application/pdf"
# Readers accept the header anywhere in the first kilobyte.
_HEADER_SEARCH_BYTES = 1024


class PdfTextExtractor:
    parser_id = "pdf"

    def extract(self, content: bytes) -> str:
        """Return the trimmed text of every page, or raise an ExtractionError subclass.

        Extraction is all-or-nothing: a failure on any page fails the document.
        """
        if not content:
            raise InvalidPdfFormatError("empty file")
        if b"%PDF-" not in content[:_HEADER_SEARCH_BYTES]:
            raise InvalidPdfFormatError("missing %PDF- header")

        try:
            reader = PdfReader(io.BytesIO(content), strict=False)
            if reader.is_encrypted:
                self._unlock(reader)
            pages = self._read_pages(reader)
        except ExtractionError:
            raise
        except FileNotDecryptedError as exc:
            raise EncryptedDocumentError(str(exc)) from exc
        except PdfReadError as exc:
            raise InvalidPdfFormatError(str(exc)) from exc
        except Exception as exc:
            raise ExtractionFailedError(str(exc) or exc.__class__.__name__) from exc

        text = "\n\n".join(page.text for page in pages).strip()
        if not text:
            raise ExtractionFailedError("aucun texte extractible (document numérisé ?)")

        logger.info(
            "pdf_text_extracted",
            extra={
                "event": "pdf_text_extracted",
                "pages_total": len(reader.pages),
                "pages_with_text": len(pages),
                "text_chars": len(text),
            },
        )
        return text

    @staticmethod
    def _unlock(reader: PdfReader) -> None:
        # Owner-password-only documents open with an empty user password.
        if reader.decrypt("") == PasswordType.NOT_DECRYPTED:
            raise EncryptedDocumentError("document requires a user password")

    @staticmethod
    def _read_pages(reader: PdfReader) -> list[ParsedPage]:
        pages: list[ParsedPage] = []
        for index, page in enumerate(reader.pages, start=1):
            extracted = page.extract_text() or ""
            lines = [line.strip() for line in extracted.splitlines()]
            cleaned = "\n".join(line for line in lines if line)
            if cleaned:
                pages.append(ParsedPage(page=index, text=cleaned))
        return pages
