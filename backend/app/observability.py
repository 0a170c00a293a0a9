from __future__ import annotations

from contextvars import ContextVar, Token
from datetime import datetime, timezone
import json
import logging
import re
from typing import Any, Mapping
from uuid import uuid4


REQUEST_ID_CONTEXT: ContextVar[str] = ContextVar("request_id", default="-")
REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
_HANDLER_MARKER = "_grantdesk_handler"

# Keys whose values are replaced outright: credentials from settings, query strings or headers.
SENSITIVE_KEY_PATTERN = re.compile(r"(?i)(authorization|password|secret|token|api[_-]?key|access[_-]?key|redis[_-]?url)")
# Grant-call text is summarized by size; the document body never reaches the logs.
DOCUMENT_KEYS = frozenset({"pdf_text", "pdftext", "document", "content"})

STRING_REDACTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\bBearer\s+[A-Za-z0-9\-._~+/]+=*"), "Bearer [REDACTED]"),
    (re.compile(r"\b(?:sk|gsk)[-_][A-Za-z0-9_-]{16,}\b"), "[REDACTED_API_KEY]"),
    (re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b"), "[REDACTED_AWS_ACCESS_KEY]"),
    (re.compile(r"(?i)\b(rediss?://)[^@/\s]*@"), r"\1[REDACTED]@"),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[REDACTED_EMAIL]"),
    # French numbers (06 12 34 56 78, +33 6 12 34 56 78); contact lines are common in grant calls.
    (re.compile(r"(?:\+33\s?|\b0)[1-9](?:[\s.-]?\d{2}){4}\b"), "[REDACTED_PHONE]"),
)


def normalize_request_id(candidate: str | None) -> str:
    trimmed = (candidate or "").strip()
    if trimmed and REQUEST_ID_PATTERN.fullmatch(trimmed):
        return trimmed
    return str(uuid4())


def set_request_id(request_id: str) -> Token[str]:
    return REQUEST_ID_CONTEXT.set(request_id)


def reset_request_id(token: Token[str]) -> None:
    REQUEST_ID_CONTEXT.reset(token)


def get_request_id() -> str:
    return REQUEST_ID_CONTEXT.get()


def _redact_string(value: str, *, max_length: int) -> str:
    for pattern, replacement in STRING_REDACTIONS:
        value = pattern.sub(replacement, value)
    if len(value) > max_length:
        return f"{value[:max_length]}...[truncated]"
    return value


def _summarize_document(value: Any) -> Any:
    if isinstance(value, bytes):
        return f"[{len(value)} bytes]"
    if isinstance(value, str):
        return f"[{len(value)} chars]"
    return value


def sanitize_for_logging(value: Any, *, max_string_length: int = 240) -> Any:
    """Return a copy of value that is safe to emit in a structured log record."""
    if isinstance(value, Mapping):
        sanitized: dict[str, Any] = {}
        for key, item in value.items():
            key_text = str(key)
            if SENSITIVE_KEY_PATTERN.search(key_text):
                sanitized[key_text] = "[REDACTED]"
            elif key_text.lower() in DOCUMENT_KEYS:
                sanitized[key_text] = _summarize_document(item)
            else:
                sanitized[key_text] = sanitize_for_logging(item, max_string_length=max_string_length)
        return sanitized
    if isinstance(value, (list, tuple)):
        items = [sanitize_for_logging(item, max_string_length=max_string_length) for item in value]
        return items if isinstance(value, list) else tuple(items)
    if isinstance(value, bytes):
        return f"[{len(value)} bytes]"
    if isinstance(value, str):
        return _redact_string(value, max_length=max_string_length)
    return value


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line; attributes passed through `extra=` become top-level fields."""

    _RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", get_request_id()),
        }
        extras = {key: value for key, value in record.__dict__.items() if key not in self._RESERVED}
        payload.update(sanitize_for_logging(extras))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level_name: str) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    if any(getattr(handler, _HANDLER_MARKER, False) for handler in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())
    setattr(handler, _HANDLER_MARKER, True)
    root.addHandler(handler)
