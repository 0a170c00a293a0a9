from __future__ import annotations

from datetime import datetime

from app.decision_sheet import DecisionSheet
from app.records import GrantAnalysis

VERDICT_LABELS = {
    "YES": "✅ OUI",
    "NO": "❌ NON",
    "UNCERTAIN": "⚠️ INCERTAIN",
}
COMPLEXITY_LABELS = {
    "Low": "Faible",
    "Medium": "Moyenne",
    "Heavy": "Lourde",
}
RECOMMENDATION_LABELS = {
    "worth-pursuing": "✅ À creuser",
    "needs-verification": "⚠️ À vérifier",
    "skip": "❌ À ignorer",
}
EXPORT_FORMATS = ("text", "markdown")


class ExportFormatError(ValueError):
    """Raised for an unknown export format."""


def verdict_label(value: str) -> str:
    return VERDICT_LABELS.get(value, value)


def recommendation_label(value: str) -> str:
    return RECOMMENDATION_LABELS.get(value, value)


def _format_hours(hours: int | float | None) -> str | None:
    if hours is None:
        return None
    if float(hours).is_integer():
        return f"{int(hours)}h"
    return f"{hours}h"


def format_clipboard_text(sheet: DecisionSheet) -> str:
    """Plain-text rendering used for "copy to clipboard"."""
    workload = sheet.deadlines_workload
    hours = _format_hours(workload.estimated_hours)
    lines = [
        "RÉSUMÉ EXÉCUTIF",
        sheet.executive_summary,
        "",
        f"ÉLIGIBILITÉ: {sheet.eligibility.verdict}",
        sheet.eligibility.justification,
        "",
        "TERMES FINANCIERS",
        sheet.financial_terms,
        "",
        "DÉLAIS & CHARGE DE TRAVAIL",
        f"Deadline: {workload.deadline}",
        f"Période: {workload.project_period}",
        f"Complexité: {workload.complexity}",
    ]
    if hours:
        lines.append(f"Heures estimées: {hours}")
    lines.extend(
        [
            "",
            "POINTS BLOQUANTS & RISQUES",
            sheet.blockers_risks,
            "",
            f"RECOMMANDATION FINALE: {recommendation_label(sheet.final_recommendation.decision)}",
            "Raisons:",
        ]
    )
    lines.extend(f"{index}. {reason}" for index, reason in enumerate(sheet.final_recommendation.reasons, start=1))
    return "\n".join(lines).strip()


def _display_date(upload_date: str) -> str:
    try:
        return datetime.fromisoformat(upload_date.replace("Z", "+00:00")).strftime("%d/%m/%Y")
    except ValueError:
        return upload_date


def format_markdown_report(record: GrantAnalysis) -> str:
    sheet = record.decision_sheet
    workload = sheet.deadlines_workload
    hours = _format_hours(workload.estimated_hours)
    lines = [
        f"# {record.title}",
        "",
        f"_Analysé le {_display_date(record.upload_date)}_",
        "",
        "## 1. Résumé exécutif",
        "",
        sheet.executive_summary,
        "",
        "## 2. Éligibilité",
        "",
        f"**{verdict_label(sheet.eligibility.verdict)}**",
        "",
        sheet.eligibility.justification,
        "",
        "## 3. Termes financiers",
        "",
        sheet.financial_terms,
        "",
        "## 4. Délais & Charge de travail",
        "",
        f"- **Deadline:** {workload.deadline}",
        f"- **Période du projet:** {workload.project_period}",
        f"- **Complexité:** {COMPLEXITY_LABELS.get(workload.complexity, workload.complexity)}",
    ]
    if hours:
        lines.append(f"- **Heures estimées:** {hours}")
    lines.extend(
        [
            "",
            "## 5. Points bloquants & Risques",
            "",
            sheet.blockers_risks,
            "",
            "## 6. Recommandation finale",
            "",
            f"**{recommendation_label(sheet.final_recommendation.decision)}**",
            "",
            "Raisons:",
            "",
        ]
    )
    lines.extend(f"- {reason}" for reason in sheet.final_recommendation.reasons)
    if record.personal_notes:
        lines.extend(["", "## Notes personnelles", "", record.personal_notes])
    return "\n".join(lines).strip() + "\n"


def render_export(record: GrantAnalysis, export_format: str) -> str:
    normalized = (export_format or "").strip().lower()
    if normalized == "text":
        return format_clipboard_text(record.decision_sheet)
    if normalized == "markdown":
        return format_markdown_report(record)
    raise ExportFormatError(f"Unsupported export format '{export_format}'. Use one of {', '.join(EXPORT_FORMATS)}.")
