from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from app.prompts import COMPLEXITY_VALUES, DECISION_VALUES, REQUIRED_FIELDS, VERDICT_VALUES


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EligibilitySection(CamelModel):
    verdict: str = Field(..., min_length=1)
    justification: str = Field(..., min_length=1)


class WorkloadSection(CamelModel):
    deadline: str = Field(..., min_length=1)
    project_period: str = Field(..., min_length=1)
    complexity: str = Field(..., min_length=1)
    estimated_hours: int | float | None = None

    @field_validator("estimated_hours", mode="before")
    @classmethod
    def _drop_non_numeric_hours(cls, value: Any) -> Any:
        # Optional field: a prose estimate ("environ 40h") is dropped rather than failing the sheet.
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)) or value is None:
            return value
        if isinstance(value, str):
            try:
                return float(value.strip().replace(",", "."))
            except ValueError:
                return None
        return None


class RecommendationSection(CamelModel):
    decision: str = Field(..., min_length=1)
    reasons: list[str] = Field(default_factory=list)


class DecisionSheet(CamelModel):
    executive_summary: str = Field(..., min_length=1)
    eligibility: EligibilitySection
    financial_terms: str = Field(..., min_length=1)
    deadlines_workload: WorkloadSection
    blockers_risks: str = Field(..., min_length=1)
    final_recommendation: RecommendationSection


class DecisionSheetValidationError(RuntimeError):
    """Raised when the model output does not match the decision sheet contract."""

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    @property
    def user_message(self) -> str:
        return f"L'IA a renvoyé une réponse mal formatée ({self.detail}). Veuillez réessayer."


class MalformedJSONError(DecisionSheetValidationError):
    def __init__(self, detail: str = "JSON invalide") -> None:
        super().__init__(detail)


class MissingFieldError(DecisionSheetValidationError):
    def __init__(self, field: str) -> None:
        super().__init__(f"Champ manquant dans la réponse IA: {field}")
        self.field = field


_SECTION_MESSAGES = {
    "eligibility": "Structure d'éligibilité invalide",
    "deadlinesWorkload": "Structure de délais/charge invalide",
    "finalRecommendation": "Structure de recommandation invalide",
}


class InvalidStructureError(DecisionSheetValidationError):
    def __init__(self, section: str, detail: str | None = None) -> None:
        super().__init__(detail or _SECTION_MESSAGES.get(section, f"Structure invalide: {section}"))
        self.section = section


class InvalidEnumValueError(InvalidStructureError):
    def __init__(self, section: str, field: str, value: object) -> None:
        super().__init__(section, f"Valeur inattendue pour {section}.{field}: {value!r}")
        self.field = field
        self.value = value


_ENUM_FIELDS: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("eligibility", "verdict", VERDICT_VALUES),
    ("deadlinesWorkload", "complexity", COMPLEXITY_VALUES),
    ("finalRecommendation", "decision", DECISION_VALUES),
)


def parse_json_object(raw: str | None) -> dict[str, Any]:
    if raw is None:
        raise MalformedJSONError("réponse vide")
    try:
        payload = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as exc:
        raise MalformedJSONError(f"JSON invalide: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedJSONError("la réponse n'est pas un objet JSON")
    return payload


def _require_section(payload: dict[str, Any], section: str, keys: tuple[str, ...]) -> dict[str, Any]:
    value = payload.get(section)
    if not isinstance(value, dict):
        raise InvalidStructureError(section)
    for key in keys:
        if not value.get(key):
            raise InvalidStructureError(section)
    return value


def check_structure(payload: dict[str, Any]) -> None:
    for field in REQUIRED_FIELDS:
        if field not in payload:
            raise MissingFieldError(field)

    _require_section(payload, "eligibility", ("verdict", "justification"))
    _require_section(payload, "deadlinesWorkload", ("complexity", "deadline"))
    recommendation = _require_section(payload, "finalRecommendation", ("decision",))
    if not isinstance(recommendation.get("reasons"), list):
        raise InvalidStructureError("finalRecommendation")


def check_enum_values(payload: dict[str, Any]) -> None:
    for section, field, allowed in _ENUM_FIELDS:
        value = payload[section][field]
        if value not in allowed:
            raise InvalidEnumValueError(section, field, value)


def validate_decision_sheet_payload(payload: dict[str, Any], *, strict_enums: bool = True) -> DecisionSheet:
    check_structure(payload)
    if strict_enums:
        check_enum_values(payload)

    try:
        return DecisionSheet.model_validate(payload)
    except ValidationError as err:
        first = err.errors()[0]
        location = first.get("loc") or ("decisionSheet",)
        raise InvalidStructureError(
            str(location[0]),
            f"Structure invalide: {'.'.join(str(part) for part in location)} ({first.get('msg')})",
        ) from err


def validate_decision_sheet(raw: str | None, *, strict_enums: bool = True) -> DecisionSheet:
    """Parse raw model output and validate it against the decision sheet contract.

    Checks run in a fixed order so the reported error names the first problem:
    JSON syntax, top-level fields, nested sections, enum values, then field types.
    """
    payload = parse_json_object(raw)
    return validate_decision_sheet_payload(payload, strict_enums=strict_enums)
