from __future__ import annotations

import json

import pytest

from app.decision_sheet import (
    DecisionSheetValidationError,
    InvalidEnumValueError,
    InvalidStructureError,
    MalformedJSONError,
    MissingFieldError,
    validate_decision_sheet,
)
from app.prompts import REQUIRED_FIELDS
from conftest import SAMPLE_SHEET, sample_sheet


def test_valid_sheet_round_trips_without_field_loss() -> None:
    sheet = validate_decision_sheet(json.dumps(SAMPLE_SHEET))

    assert sheet.model_dump(by_alias=True, exclude_none=True) == SAMPLE_SHEET


def test_estimated_hours_is_optional() -> None:
    payload = sample_sheet()
    del payload["deadlinesWorkload"]["estimatedHours"]

    sheet = validate_decision_sheet(json.dumps(payload))

    assert sheet.deadlines_workload.estimated_hours is None


def test_prose_estimated_hours_is_dropped() -> None:
    payload = sample_sheet()
    payload["deadlinesWorkload"]["estimatedHours"] = "environ quarante heures"

    sheet = validate_decision_sheet(json.dumps(payload))

    assert sheet.deadlines_workload.estimated_hours is None


@pytest.mark.parametrize("raw", ["not json", "[1, 2, 3]", "", None, '{"executiveSummary": '])
def test_malformed_json_is_rejected(raw: str | None) -> None:
    with pytest.raises(MalformedJSONError):
        validate_decision_sheet(raw)


@pytest.mark.parametrize("field", REQUIRED_FIELDS)
def test_missing_top_level_field_is_named(field: str) -> None:
    payload = sample_sheet()
    del payload[field]

    with pytest.raises(MissingFieldError) as exc_info:
        validate_decision_sheet(json.dumps(payload))

    assert exc_info.value.field == field
    assert field in exc_info.value.user_message


@pytest.mark.parametrize(
    ("section", "mutation"),
    [
        ("eligibility", {"verdict": "YES", "justification": ""}),
        ("eligibility", {"justification": "ok"}),
        ("deadlinesWorkload", {"deadline": "", "projectPeriod": "2026", "complexity": "Low"}),
        ("deadlinesWorkload", {"deadline": "1 mars", "projectPeriod": "2026"}),
        ("finalRecommendation", {"decision": "skip", "reasons": "une seule raison"}),
        ("finalRecommendation", {"reasons": ["a"]}),
        ("eligibility", "YES"),
    ],
)
def test_invalid_nested_sections_are_identified(section: str, mutation: object) -> None:
    payload = sample_sheet(**{section: mutation})

    with pytest.raises(InvalidStructureError) as exc_info:
        validate_decision_sheet(json.dumps(payload))

    assert exc_info.value.section == section


def test_out_of_contract_enum_value_is_rejected_by_default() -> None:
    payload = sample_sheet()
    payload["deadlinesWorkload"]["complexity"] = "Extreme"

    with pytest.raises(InvalidEnumValueError) as exc_info:
        validate_decision_sheet(json.dumps(payload))

    assert exc_info.value.section == "deadlinesWorkload"
    assert exc_info.value.field == "complexity"
    assert exc_info.value.value == "Extreme"


def test_out_of_contract_enum_value_passes_when_strict_mode_is_off() -> None:
    payload = sample_sheet()
    payload["eligibility"]["verdict"] = "MAYBE"

    sheet = validate_decision_sheet(json.dumps(payload), strict_enums=False)

    assert sheet.eligibility.verdict == "MAYBE"


def test_empty_free_text_field_is_reported_by_section() -> None:
    payload = sample_sheet(financialTerms="")

    with pytest.raises(InvalidStructureError) as exc_info:
        validate_decision_sheet(json.dumps(payload))

    assert exc_info.value.section == "financialTerms"


def test_validation_errors_suggest_a_retry() -> None:
    with pytest.raises(DecisionSheetValidationError) as exc_info:
        validate_decision_sheet("{}")

    assert "Veuillez réessayer" in exc_info.value.user_message
