from app.parsers.base import (
    DocumentTextExtractor,
    EncryptedDocumentError,
    ExtractionError,
    ExtractionFailedError,
    InvalidPdfFormatError,
    ParsedPage,
)
from app.parsers.pdf_parser import PDF_CONTENT_TYPE, PdfTextExtractor

__all__ = [
    "DocumentTextExtractor",
    "EncryptedDocumentError",
    "ExtractionError",
    "ExtractionFailedError",
    "InvalidPdfFormatError",
    "PDF_CONTENT_TYPE",
    "ParsedPage",
    "PdfTextExtractor",
]
