"""
Text-generation collaborator for weekly feedback.

`FeedbackGenerator.generate(request) -> GeneratedFeedback(text, style)`, where
`request` is a detached `FeedbackRequest` copied from the member and week on the
calling thread. Generators never see ORM objects, so a call abandoned after a
timeout cannot touch the database session.
The scheduler treats the generator as opaque: any `ConfigurationError` or
`FeedbackGenerationError` it raises becomes a blocked-feedback state.

`OpenAIFeedbackGenerator` calls the chat completions endpoint over HTTP
(requests). The style variant is drawn from an injected random source:
standard 60%, locker 30%, coachend 10%.
"""
from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import requests

from app.core.config import settings
from app.core.errors import ConfigurationError, FeedbackGenerationError
from app.models.kpi_week import KpiWeek
from app.models.member import Member

logger = logging.getLogger(__name__)

PROMPT_METRICS = (
    "umsatz",
    "kontakte",
    "entscheider",
    "termine_vereinbart",
    "termine_stattgefunden",
    "termine_abschluss",
    "einheiten",
    "empfehlungen",
)

STYLES = (("standard", 0.6), ("locker", 0.9), ("coachend", 1.0))

SYSTEM_PROMPT = """Du schreibst als Mentor eines Vertriebs-Mentorings.

Du verfasst persönliche, kurze WhatsApp-Nachrichten an Mitglieder, die wöchentlich ihre KPIs melden.
Vergleiche die IST-Werte der Woche mit den SOLL-Werten, nenne eine Stärke, zwei Fokuspunkte
und zwei konkrete nächste Schritte. Schließe mit einer Rückfrage.

Regeln:
- Deutsch, natürlich, ohne Fachjargon, 130-180 Wörter, Anrede mit Vornamen.
- Keine Erwähnung von KI oder Automatisierung.
- Nur KPIs verwenden, die vorhanden und > 0 sind. Prozentangaben nur bei SOLL > 0.
- Heldentat, Blockade und Herausforderung in einem Satz aufgreifen, falls vorhanden.
- Tonalität nach Feeling-Score: 1-4 stützend, 5-7 motivierend, 8-10 bestärkend und leicht fordernd.

Gib NUR den Nachrichtentext aus."""


@dataclass(frozen=True)
class GeneratedFeedback:
    text: str
    style: str


@dataclass(frozen=True)
class FeedbackRequest:
    """Plain copy of everything the prompt needs."""
    kpi_week_id: int
    vorname: str
    week_label: str
    feeling_score: Optional[int]
    heldentat: Optional[str]
    blockiert: Optional[str]
    herausforderung: Optional[str]
    targets: dict[str, Any]
    actuals: dict[str, Any]


class FeedbackGenerator(Protocol):
    def generate(self, request: FeedbackRequest) -> GeneratedFeedback:
        ...


def feedback_request(member: Member, week: KpiWeek) -> FeedbackRequest:
    """Targets come from the week's goal snapshot, as the member saw them when submitting."""
    return FeedbackRequest(
        kpi_week_id=week.id,
        vorname=member.vorname,
        week_label=week.week_label,
        feeling_score=week.feeling_score,
        heldentat=week.heldentat,
        blockiert=week.blockiert,
        herausforderung=week.herausforderung,
        targets={f"{m}_soll": getattr(week, f"{m}_soll_snapshot") for m in PROMPT_METRICS},
        actuals={f"{m}_ist": getattr(week, f"{m}_ist") for m in PROMPT_METRICS},
    )


def pick_style(rng: random.Random) -> str:
    roll = rng.random()
    for style, upper in STYLES:
        if roll < upper:
            return style
    return STYLES[-1][0]


def _value(value, fallback="0") -> str:
    return fallback if value is None else str(value)


def _lines(values: dict[str, Any]) -> str:
    return "\n".join(f"- {name}: {_value(value)}" for name, value in values.items())


def build_user_prompt(request: FeedbackRequest) -> str:
    return f"""Member:
- vorname: {request.vorname}
- feeling_score: {_value(request.feeling_score, "nicht angegeben")}
- heldentat: {request.heldentat or "keine"}
- blockiert: {request.blockiert or "keine"}
- herausforderung: {request.herausforderung or "keine"}

ZIELWERTE (SOLL):
{_lines(request.targets)}

IST-WERTE ({request.week_label}):
{_lines(request.actuals)}"""


class OpenAIFeedbackGenerator:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.api_key = (api_key if api_key is not None else settings.OPENAI_API_KEY).strip()
        self.model = model or settings.OPENAI_MODEL
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.FEEDBACK_GENERATION_TIMEOUT_SEC
        self.rng = rng or random.Random()

    def generate(self, request: FeedbackRequest) -> GeneratedFeedback:
        if not self.api_key:
            raise ConfigurationError("OpenAI API Key nicht konfiguriert")

        style = pick_style(self.rng)
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": f"{SYSTEM_PROMPT}\n\nGewählte Stilvariante: {style}"},
                {"role": "user", "content": build_user_prompt(request)},
            ],
            "temperature": 0.8,
            "max_completion_tokens": 500,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        try:
            response = requests.post(
                f"{self.base_url}/chat/completions",
                headers=headers,
                json=payload,
                timeout=(5, self.timeout),
            )
        except requests.RequestException as exc:
            raise FeedbackGenerationError(f"Request failed: {exc}") from exc

        if response.status_code // 100 != 2:
            raise FeedbackGenerationError(
                f"HTTP {response.status_code}: {response.text}",
                details={"status_code": response.status_code},
            )

        try:
            text = response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise FeedbackGenerationError(f"Unexpected response: {exc}") from exc

        if not text.strip():
            raise FeedbackGenerationError("Leere Antwort vom Modell")
        logger.info("Generated %s feedback for KPI week %s", style, request.kpi_week_id)
        return GeneratedFeedback(text=text.strip(), style=style)


def get_feedback_generator() -> FeedbackGenerator:
    return OpenAIFeedbackGenerator()
