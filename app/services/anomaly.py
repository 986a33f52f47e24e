"""
Data-quality checks for a single weekly submission.

Checks, in order:
  1. any actual value negative           -> "Negative Wert in <field>"
  2. revenue above 200 000 per week      -> "Unplausibel hoher Umsatz (> 200.000€/Woche)"
  3. closing appointments > held ones    -> "Abschluss-Termine > Stattgefundene Termine"
  4. decision makers > contacts          -> "Entscheider > Kontakte"

`detect_anomaly` stops at the first hit (used by the anomaly gate);
`find_anomalies` collects every hit (used by rule Q2).
Pure functions: no database, no I/O.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from app.models.kpi_week import KpiWeek

MAX_WEEKLY_REVENUE = 200_000

# (column, label used in the reason string)
NUMERIC_ACTUAL_FIELDS = (
    ("umsatz_ist", "umsatzIst"),
    ("kontakte_ist", "kontakteIst"),
    ("entscheider_ist", "entscheiderIst"),
    ("termine_vereinbart_ist", "termineVereinbartIst"),
    ("termine_stattgefunden_ist", "termineStattgefundenIst"),
    ("termine_abschluss_ist", "termineAbschlussIst"),
    ("einheiten_ist", "einheitenIst"),
    ("empfehlungen_ist", "empfehlungenIst"),
)


@dataclass
class AnomalyResult:
    has_anomaly: bool
    reason: Optional[str] = None


def _negative_fields(week: KpiWeek) -> list[str]:
    return [
        label
        for field, label in NUMERIC_ACTUAL_FIELDS
        if getattr(week, field) is not None and getattr(week, field) < 0
    ]


def find_anomalies(week: KpiWeek) -> list[str]:
    reasons = [f"Negative Wert in {label}" for label in _negative_fields(week)]

    if week.umsatz_ist is not None and week.umsatz_ist > MAX_WEEKLY_REVENUE:
        reasons.append("Unplausibel hoher Umsatz (> 200.000€/Woche)")

    if (
        week.termine_abschluss_ist is not None
        and week.termine_stattgefunden_ist is not None
        and week.termine_abschluss_ist > week.termine_stattgefunden_ist
    ):
        reasons.append("Abschluss-Termine > Stattgefundene Termine")

    if (
        week.entscheider_ist is not None
        and week.kontakte_ist is not None
        and week.entscheider_ist > week.kontakte_ist
    ):
        reasons.append("Entscheider > Kontakte")

    return reasons


def detect_anomaly(week: KpiWeek) -> AnomalyResult:
    reasons = find_anomalies(week)
    if not reasons:
        return AnomalyResult(has_anomaly=False)
    return AnomalyResult(has_anomaly=True, reason=reasons[0])
