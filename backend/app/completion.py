from __future__ import annotations

import logging
import re
import time
from typing import Any, Protocol

from app.config import Settings

logger = logging.getLogger("grantdesk.completion")


class CompletionError(RuntimeError):
    """Raised when the completion provider fails to return usable text."""

    user_message = "Erreur d'analyse IA."

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail


class RateLimitedError(CompletionError):
    user_message = "Limite de requêtes atteinte. Veuillez réessayer dans 1 minute."


class EmptyResponseError(CompletionError):
    user_message = "Aucune réponse reçue de l'IA."


class CompletionFailedError(CompletionError):
    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail)
        if detail:
            self.user_message = f"Erreur d'analyse IA: {detail}"


class CompletionClient(Protocol):
    model_id: str

    def complete(self, messages: list[dict[str, str]]) -> str:
        ...


class OpenAICompletionClient:
    """Chat completion against any OpenAI-compatible endpoint, in JSON mode.

    One request per call: the SDK's own retry loop is disabled and the
    request deadline comes from settings.
    """

    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        self._settings = settings
        self.model_id = settings.completion_model
        self._client = client or self._create_openai_client()

    def _create_openai_client(self) -> Any:
        from openai import OpenAI

        if not self._settings.openai_api_key:
            raise CompletionFailedError("OPENAI_API_KEY is not configured")
        return OpenAI(
            api_key=self._settings.openai_api_key,
            base_url=self._settings.openai_base_url or None,
            timeout=self._settings.completion_timeout_seconds,
            max_retries=0,
        )

    def complete(self, messages: list[dict[str, str]]) -> str:
        from openai import APIStatusError, APITimeoutError, OpenAIError, RateLimitError

        started = time.perf_counter()
        try:
            response = self._client.chat.completions.create(
                model=self.model_id,
                messages=messages,
                temperature=self._settings.completion_temperature,
                max_tokens=self._settings.completion_max_tokens,
                response_format={"type": "json_object"},
            )
        except RateLimitError as exc:
            _log_failure(self.model_id, started, exc, rate_limited=True)
            raise RateLimitedError(str(exc)) from exc
        except APIStatusError as exc:
            rate_limited = exc.status_code == 429
            _log_failure(self.model_id, started, exc, rate_limited=rate_limited)
            if rate_limited:
                raise RateLimitedError(str(exc)) from exc
            raise CompletionFailedError(_provider_message(exc)) from exc
        except APITimeoutError as exc:
            _log_failure(self.model_id, started, exc)
            raise CompletionFailedError("délai de réponse dépassé") from exc
        except OpenAIError as exc:
            _log_failure(self.model_id, started, exc)
            raise CompletionFailedError(_provider_message(exc)) from exc

        choices = getattr(response, "choices", None) or []
        message = getattr(choices[0], "message", None) if choices else None
        content = getattr(message, "content", None)
        if not content or not content.strip():
            raise EmptyResponseError()

        _log_success(self.model_id, started, messages, content)
        return content


class BedrockCompletionClient:
    """Same contract on Bedrock's Converse API; JSON is requested through the prompt."""

    def __init__(self, settings: Settings, client: Any | None = None) -> None:
        self._settings = settings
        self.model_id = settings.bedrock_model_id
        self._client = client or self._create_bedrock_client()

    def _create_bedrock_client(self) -> Any:
        import boto3  # type: ignore
        from botocore.config import Config

        return boto3.client(
            "bedrock-runtime",
            region_name=self._settings.aws_region,
            config=Config(
                read_timeout=self._settings.completion_timeout_seconds,
                retries={"total_max_attempts": 1, "mode": "standard"},
            ),
        )

    def complete(self, messages: list[dict[str, str]]) -> str:
        from botocore.exceptions import BotoCoreError, ClientError

        if not self.model_id:
            raise CompletionFailedError("Bedrock model ID is not configured.")

        system = [{"text": message["content"]} for message in messages if message["role"] == "system"]
        conversation = [
            {"role": message["role"], "content": [{"text": message["content"]}]}
            for message in messages
            if message["role"] != "system"
        ]

        started = time.perf_counter()
        try:
            response = self._client.converse(
                modelId=self.model_id,
                system=system,
                messages=conversation,
                inferenceConfig={
                    "temperature": self._settings.completion_temperature,
                    "maxTokens": self._settings.completion_max_tokens,
                },
            )
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            rate_limited = code in {"ThrottlingException", "TooManyRequestsException"}
            _log_failure(self.model_id, started, exc, rate_limited=rate_limited)
            if rate_limited:
                raise RateLimitedError(str(exc)) from exc
            raise CompletionFailedError(str(exc)) from exc
        except BotoCoreError as exc:
            _log_failure(self.model_id, started, exc)
            raise CompletionFailedError(str(exc)) from exc

        text = self._extract_text(response)
        if not text:
            raise EmptyResponseError()

        _log_success(self.model_id, started, messages, text)
        return _strip_code_fence(text)

    @staticmethod
    def _extract_text(response: Any) -> str:
        outputs = response.get("output", {}).get("message", {}).get("content", [])
        parts: list[str] = []
        for item in outputs:
            text = item.get("text")
            if isinstance(text, str) and text.strip():
                parts.append(text)
        return "\n".join(parts).strip()


def create_completion_client(settings: Settings) -> CompletionClient:
    provider = (settings.llm_provider or "").strip().lower()
    if provider in {"openai", "groq"}:
        return OpenAICompletionClient(settings)
    if provider == "bedrock":
        return BedrockCompletionClient(settings)
    raise CompletionFailedError(f"Unsupported LLM_PROVIDER '{settings.llm_provider}'. Use 'openai' or 'bedrock'.")


def _strip_code_fence(text: str) -> str:
    fenced = re.fullmatch(r"\s*```(?:json)?\s*(.*?)\s*```\s*", text, flags=re.IGNORECASE | re.DOTALL)
    if fenced:
        return fenced.group(1)
    return text


def _provider_message(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return str(message).strip() or exc.__class__.__name__


def _log_failure(model_id: str, started: float, exc: Exception, *, rate_limited: bool = False) -> None:
    logger.warning(
        "completion_failed",
        extra={
            "event": "completion_failed",
            "model_id": model_id,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "rate_limited": rate_limited,
            "error_type": exc.__class__.__name__,
            "error": str(exc),
        },
    )


def _log_success(model_id: str, started: float, messages: list[dict[str, str]], text: str) -> None:
    logger.info(
        "completion_completed",
        extra={
            "event": "completion_completed",
            "model_id": model_id,
            "duration_ms": round((time.perf_counter() - started) * 1000, 2),
            "prompt_chars": sum(len(message["content"]) for message in messages),
            "response_chars": len(text),
        },
    )
