from __future__ import annotations

import logging
import time

from app.completion import CompletionClient, CompletionError, RateLimitedError
from app.decision_sheet import DecisionSheet, DecisionSheetValidationError, validate_decision_sheet
from app.prompts import build_messages

logger = logging.getLogger("grantdesk.analysis")


class AnalysisFailed(RuntimeError):
    """Umbrella failure for one decision sheet request, carrying a displayable message."""

    def __init__(self, cause: CompletionError | DecisionSheetValidationError) -> None:
        super().__init__(str(cause))
        self.cause = cause
        self.user_message = cause.user_message
        self.kind = cause.__class__.__name__

    @property
    def rate_limited(self) -> bool:
        return isinstance(self.cause, RateLimitedError)

    @property
    def retryable(self) -> bool:
        # Throttling and formatting flukes usually clear on a second attempt.
        return self.rate_limited or isinstance(self.cause, DecisionSheetValidationError)


class GrantAnalyzer:
    def __init__(
        self,
        client: CompletionClient,
        *,
        strict_enums: bool = True,
        max_input_chars: int = 0,
    ) -> None:
        self._client = client
        self._strict_enums = strict_enums
        self._max_input_chars = max_input_chars

    @property
    def model_id(self) -> str:
        return str(getattr(self._client, "model_id", "unknown"))

    def analyze(self, pdf_text: str) -> DecisionSheet:
        messages = build_messages(pdf_text, max_input_chars=self._max_input_chars)
        started = time.perf_counter()
        try:
            raw = self._client.complete(messages)
            sheet = validate_decision_sheet(raw, strict_enums=self._strict_enums)
        except (CompletionError, DecisionSheetValidationError) as exc:
            logger.warning(
                "grant_analysis_failed",
                extra={
                    "event": "grant_analysis_failed",
                    "model_id": self.model_id,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "error_kind": exc.__class__.__name__,
                    "error": str(exc),
                },
            )
            raise AnalysisFailed(exc) from exc

        logger.info(
            "grant_analysis_completed",
            extra={
                "event": "grant_analysis_completed",
                "model_id": self.model_id,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "document_chars": len(pdf_text),
                "decision": sheet.final_recommendation.decision,
                "verdict": sheet.eligibility.verdict,
            },
        )
        return sheet
