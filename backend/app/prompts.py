from __future__ import annotations

# Field names and enum values below are the wire contract consumed by the
# decision sheet validator and by every client label mapping.
REQUIRED_FIELDS: tuple[str, ...] = (
    "executiveSummary",
    "eligibility",
    "financialTerms",
    "deadlinesWorkload",
    "blockersRisks",
    "finalRecommendation",
)
VERDICT_VALUES: tuple[str, ...] = ("YES", "NO", "UNCERTAIN")
COMPLEXITY_VALUES: tuple[str, ...] = ("Low", "Medium", "Heavy")
DECISION_VALUES: tuple[str, ...] = ("worth-pursuing", "needs-verification", "skip")


def _enum_union(values: tuple[str, ...]) -> str:
    return " | ".join(f'"{value}"' for value in values)


SYSTEM_PROMPT = f"""Tu es un expert senior en financements publics français pour collectivités territoriales.
Ta mission est d'aider un chargé de mission à décider rapidement si un appel à projets mérite d'être poursuivi.

Analyse le document fourni et produis une fiche décisionnelle structurée en JSON avec EXACTEMENT les champs suivants :

{{
  "executiveSummary": "Résumé en 10 lignes maximum",
  "eligibility": {{
    "verdict": {_enum_union(VERDICT_VALUES)},
    "justification": "Justification détaillée de l'éligibilité"
  }},
  "financialTerms": "Montants, taux de subvention et contraintes financières",
  "deadlinesWorkload": {{
    "deadline": "Date limite de dépôt",
    "projectPeriod": "Période du projet",
    "complexity": {_enum_union(COMPLEXITY_VALUES)},
    "estimatedHours": nombre d'heures estimées (optionnel)
  }},
  "blockersRisks": "Points bloquants, risques ou ambiguïtés",
  "finalRecommendation": {{
    "decision": {_enum_union(DECISION_VALUES)},
    "reasons": ["raison 1", "raison 2", "raison 3"]
  }}
}}

N'invente AUCUNE information.
Si une donnée est absente ou floue, indique-le explicitement dans le texte.
Utilise un ton administratif clair et professionnel.
Réponds UNIQUEMENT avec ce JSON, sans markdown ni texte supplémentaire.

Contexte: Commune de 100 000 habitants."""

USER_PROMPT_PREFIX = "Voici le texte de l'appel à projets à analyser :\n\n"
TRUNCATION_NOTICE = "\n\n[Texte tronqué : la fin du document n'a pas été transmise.]"


def truncate_document_text(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + TRUNCATION_NOTICE


def build_messages(pdf_text: str, *, max_input_chars: int = 0) -> list[dict[str, str]]:
    """Return the system + user chat messages for one decision sheet request."""
    document = truncate_document_text(pdf_text, max_input_chars)
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": f"{USER_PROMPT_PREFIX}{document}"},
    ]
