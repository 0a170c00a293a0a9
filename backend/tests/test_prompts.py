from __future__ import annotations

from app.prompts import (
    COMPLEXITY_VALUES,
    DECISION_VALUES,
    REQUIRED_FIELDS,
    SYSTEM_PROMPT,
    TRUNCATION_NOTICE,
    USER_PROMPT_PREFIX,
    VERDICT_VALUES,
    build_messages,
)


def test_system_prompt_lists_every_contract_field_and_enum_value() -> None:
    for field in (*REQUIRED_FIELDS, "verdict", "justification", "deadline", "projectPeriod", "complexity",
                  "estimatedHours", "decision", "reasons"):
        assert f'"{field}"' in SYSTEM_PROMPT
    for value in (*VERDICT_VALUES, *COMPLEXITY_VALUES, *DECISION_VALUES):
        assert f'"{value}"' in SYSTEM_PROMPT
    assert "N'invente AUCUNE information" in SYSTEM_PROMPT
    assert "UNIQUEMENT avec ce JSON" in SYSTEM_PROMPT


def test_build_messages_sends_system_contract_then_document() -> None:
    messages = build_messages("Texte de l'appel")

    assert [message["role"] for message in messages] == ["system", "user"]
    assert messages[0]["content"] == SYSTEM_PROMPT
    assert messages[1]["content"].endswith("Texte de l'appel")


def test_build_messages_truncates_oversized_documents() -> None:
    messages = build_messages("x" * 500, max_input_chars=100)

    user_content = messages[1]["content"]
    assert user_content.endswith(TRUNCATION_NOTICE)
    assert user_content[len(USER_PROMPT_PREFIX) : -len(TRUNCATION_NOTICE)] == "x" * 100


def test_build_messages_keeps_text_when_limit_disabled() -> None:
    messages = build_messages("y" * 500, max_input_chars=0)

    assert TRUNCATION_NOTICE not in messages[1]["content"]
