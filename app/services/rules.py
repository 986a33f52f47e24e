"""
Rule catalog and evaluator.

One table (`CATALOG`) maps every rule id to its display name, category,
predicate, action list and cooldown. The dry-run path (`evaluate`) and the
execute path (app/services/automation.py) both read it; there is no second
copy of any predicate.

Catalog
-------
  R1  Low-Feeling-Streak        last 3 weeks feeling < 5                      7d
  R2  Silent Member             no submission for the current week            7d  (sweep)
  R3  Leistungsabfall           2 weeks revenue < 60% AND contacts < target  14d
  P1  Upsell-Signal             every 4-week block >= revenue threshold      30d
  P2  Funnel-Leak               contacts >= 90% but conversion ratios low     7d
  P3  Momentum-Streak           3 weeks with >= 2 of 3 KPIs at target        30d
  Q1  No-Show hoch              no-show ratio >= 30%                         14d
  Q2  Daten-Anomalie            latest submission fails the anomaly checks    7d  (manual)
  Q3  Feld fehlt aber getrackt  tracked metric missing                        7d
  C1  Heldentat-Amplify         heroic act reported                           7d
  C2  Blockade aktiv            blocker reported AND feeling <= 5             7d
  C3  S.M.A.R.T-Nudge           no revenue/units/contacts target set         14d  (sweep)
  L1  Kündigungsrisiko          no weeks, or low feeling + revenue < 50%     14d  (sweep + submission)
  L2  Happy High Performer      feeling >= 8 AND revenue target reached      30d

Value conventions
-----------------
  None is "not reported"; 0 is a reported value.
  Targets come from the week's goal snapshot and fall back to the member's
  live target when the snapshot column is empty.
  A ratio whose target/denominator is missing or 0 counts as 1.

Predicates are pure: (RuleContext) -> Evaluation. No database access.
"""
from __future__ import annotations

import enum
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Sequence, Union

from app.models.kpi_week import KpiWeek
from app.models.member import Member, MemberFlag
from app.models.outbound_message import Channel
from app.models.task import TaskPriority
from app.services.anomaly import find_anomalies
from app.services.automation_settings import AutomationSettings
from app.core.clock import local_week_start
from app.core.errors import UnknownRuleError

NO_KPI = "Kein KPI vorhanden"
HISTORY_WINDOW = 12


# ---------------------------------------------------------------------------
# Identifiers
# ---------------------------------------------------------------------------

class RuleId(str, enum.Enum):
    R1 = "R1"
    R2 = "R2"
    R3 = "R3"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"
    Q1 = "Q1"
    Q2 = "Q2"
    Q3 = "Q3"
    C1 = "C1"
    C2 = "C2"
    C3 = "C3"
    L1 = "L1"
    L2 = "L2"


class RuleCategory(str, enum.Enum):
    retention = "retention"
    performance = "performance"
    quality = "quality"
    coaching = "coaching"
    lifecycle = "lifecycle"


# ---------------------------------------------------------------------------
# Actions (data only; applied by app/services/dispatcher.py)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SetFlag:
    flag: MemberFlag


@dataclass(frozen=True)
class CreateTask:
    title: str
    priority: TaskPriority
    description: str = ""
    # Link the task to the latest KpiWeek (completing it can release feedback)
    link_week: bool = False


@dataclass(frozen=True)
class OpenReviewTask:
    """Review task for the latest KpiWeek, de-duplicated per week."""


@dataclass(frozen=True)
class AddNote:
    content: str
    pinned: bool = False
    author: str = "System (Automation)"


@dataclass(frozen=True)
class SendMessage:
    channel: Channel
    template: str


@dataclass(frozen=True)
class BlockFeedback:
    """Block AI feedback of the latest KpiWeek with the evaluation reason."""


Action = Union[SetFlag, CreateTask, OpenReviewTask, AddNote, SendMessage, BlockFeedback]


# ---------------------------------------------------------------------------
# Evaluation input / output
# ---------------------------------------------------------------------------

@dataclass
class RuleContext:
    member: Member
    weeks: Sequence[KpiWeek]          # newest first
    settings: AutomationSettings
    now: datetime

    @property
    def latest(self) -> Optional[KpiWeek]:
        return self.weeks[0] if self.weeks else None


@dataclass
class Evaluation:
    would_trigger: bool
    reason: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleEvaluation:
    rule_id: str
    rule_name: str
    would_trigger: bool
    reason: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Rule:
    id: RuleId
    name: str
    category: RuleCategory
    predicate: Callable[[RuleContext], Evaluation]
    actions: tuple[Action, ...]
    cooldown: timedelta
    needs_submission: bool = False
    on_submission: bool = False
    on_sweep: bool = False


# ---------------------------------------------------------------------------
# Value helpers
# ---------------------------------------------------------------------------

def _num(value: Any) -> Optional[float]:
    # Numeric columns come back as Decimal
    return None if value is None else float(value)


def _target(week: KpiWeek, member: Member, snapshot_field: str, live_field: str) -> Optional[float]:
    snapshot = getattr(week, snapshot_field)
    if snapshot is not None:
        return _num(snapshot)
    return _num(getattr(member, live_field))


def _ratio(actual: Optional[float], target: Optional[float]) -> float:
    if actual is None or not target:
        return 1.0
    return actual / target


def _pct(ratio: float) -> int:
    return int(math.floor(ratio * 100 + 0.5))


def _amount(value: float) -> str:
    return str(int(value)) if value == int(value) else f"{value:.2f}"


def _not_enough(have: int, need: int) -> Evaluation:
    return Evaluation(False, f"Nicht genug Daten ({have}/{need} Wochen)")


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------

def _low_feeling_streak(ctx: RuleContext) -> Evaluation:
    last3 = list(ctx.weeks[:3])
    if len(last3) < 3:
        return _not_enough(len(last3), 3)
    feelings = [w.feeling_score for w in last3]
    all_low = all(f is not None and f < 5 for f in feelings)
    return Evaluation(
        all_low,
        "3 Wochen in Folge Feeling < 5" if all_low else "Feeling-Scores sind OK",
        {"feelings": feelings},
    )


def _silent_member(ctx: RuleContext) -> Evaluation:
    week_start = local_week_start(ctx.now, ctx.settings.timezone)
    has_current = any(w.week_start >= week_start for w in ctx.weeks)
    return Evaluation(
        not has_current,
        "KPI für diese Woche vorhanden" if has_current else "Kein KPI für diese Woche",
        {"weekStart": week_start.isoformat()},
    )


def _performance_drop(ctx: RuleContext) -> Evaluation:
    last2 = list(ctx.weeks[:2])
    if len(last2) < 2:
        return _not_enough(len(last2), 2)

    rows = []
    low = True
    for week in last2:
        umsatz = _num(week.umsatz_ist)
        umsatz_soll = _target(week, ctx.member, "umsatz_soll_snapshot", "umsatz_soll_woche")
        kontakte = _num(week.kontakte_ist)
        kontakte_soll = _target(week, ctx.member, "kontakte_soll_snapshot", "kontakte_soll")
        if not (_ratio(umsatz, umsatz_soll) < 0.6 and _ratio(kontakte, kontakte_soll) < 1):
            low = False
        rows.append({
            "umsatz": umsatz or 0,
            "umsatzSoll": umsatz_soll or 0,
            "kontakte": week.kontakte_ist,
            "kontakteSoll": kontakte_soll,
        })
    return Evaluation(
        low,
        "2 Wochen < 60% Umsatz UND Kontakte unter Soll" if low else "Performance ist OK",
        {"weeks": rows},
    )


def _upsell_signal(ctx: RuleContext) -> Evaluation:
    consecutive = ctx.settings.upsell_consecutive_weeks
    threshold = float(ctx.settings.upsell_revenue_threshold)
    recent = list(ctx.weeks[:consecutive])
    if len(recent) < consecutive:
        return _not_enough(len(recent), consecutive)

    months = consecutive // 4
    ordered = sorted(recent, key=lambda w: w.week_start)
    revenues = [
        sum(_num(w.umsatz_ist) or 0.0 for w in ordered[i * 4:(i + 1) * 4])
        for i in range(months)
    ]
    all_above = all(r >= threshold for r in revenues)
    return Evaluation(
        all_above,
        f"{months} Monate über {_amount(threshold)}€"
        if all_above
        else f"Nicht alle Monate über {_amount(threshold)}€",
        {"monthlyRevenues": revenues, "threshold": threshold, "consecutiveWeeks": consecutive},
    )


def _funnel_leak(ctx: RuleContext) -> Evaluation:
    week = ctx.latest
    kontakte = _num(week.kontakte_ist)
    kontakte_soll = _target(week, ctx.member, "kontakte_soll_snapshot", "kontakte_soll")
    kontakte_ok = bool(kontakte_soll) and kontakte is not None and kontakte >= kontakte_soll * 0.9

    entscheider_ratio = _ratio(_num(week.entscheider_ist), kontakte)
    termine_ratio = _ratio(_num(week.termine_stattgefunden_ist), _num(week.termine_vereinbart_ist))
    leak = kontakte_ok and (entscheider_ratio < 0.3 or termine_ratio < 0.7)
    return Evaluation(
        leak,
        f"Konversionsraten zu niedrig (Entscheider: {_pct(entscheider_ratio)}%, "
        f"Termine: {_pct(termine_ratio)}%)"
        if leak
        else "Konversionsraten OK",
        {"kontakteOk": kontakte_ok, "entscheiderRatio": entscheider_ratio, "termineRatio": termine_ratio},
    )


_MOMENTUM_METRICS = (
    ("umsatz_ist", "umsatz_soll_snapshot", "umsatz_soll_woche"),
    ("kontakte_ist", "kontakte_soll_snapshot", "kontakte_soll"),
    ("termine_abschluss_ist", "termine_abschluss_soll_snapshot", "termine_abschluss_soll"),
)


def _momentum_streak(ctx: RuleContext) -> Evaluation:
    last3 = list(ctx.weeks[:3])
    if len(last3) < 3:
        return _not_enough(len(last3), 3)

    counts = []
    for week in last3:
        met = 0
        for ist_field, snapshot_field, live_field in _MOMENTUM_METRICS:
            actual = _num(getattr(week, ist_field))
            target = _target(week, ctx.member, snapshot_field, live_field)
            if target and actual is not None and actual >= target:
                met += 1
        counts.append(met)
    momentum = all(c >= 2 for c in counts)
    return Evaluation(
        momentum,
        "3 Wochen >= 100% bei mind. 2 KPIs" if momentum else "Nicht genug Momentum",
        {"kpisOnTarget": counts},
    )


def _high_noshow(ctx: RuleContext) -> Evaluation:
    quote = _num(ctx.latest.noshow_quote)
    if quote is None:
        return Evaluation(False, "Keine No-Show-Quote vorhanden")
    high = quote >= 0.3
    comparison = ">=" if high else "<"
    return Evaluation(high, f"No-Show-Quote {_pct(quote)}% {comparison} 30%", {"noshowQuote": quote})


def _data_anomaly(ctx: RuleContext) -> Evaluation:
    anomalies = find_anomalies(ctx.latest)
    return Evaluation(
        bool(anomalies),
        f"Anomalien: {', '.join(anomalies)}" if anomalies else "Keine Anomalien",
        {"anomalies": anomalies},
    )


# (label, toggle on Member, actual column on KpiWeek)
TRACKED_FIELDS = (
    ("Kontakte", "track_kontakte", "kontakte_ist"),
    ("Termine", "track_termine", "termine_vereinbart_ist"),
    ("Einheiten", "track_einheiten", "einheiten_ist"),
    ("Empfehlungen", "track_empfehlungen", "empfehlungen_ist"),
    ("Entscheider", "track_entscheider", "entscheider_ist"),
    ("Abschlüsse", "track_abschluesse", "termine_abschluss_ist"),
)


def _missing_tracked_field(ctx: RuleContext) -> Evaluation:
    week = ctx.latest
    missing = [
        label
        for label, toggle, ist_field in TRACKED_FIELDS
        if getattr(ctx.member, toggle) and getattr(week, ist_field) is None
    ]
    return Evaluation(
        bool(missing),
        f"Fehlende Felder: {', '.join(missing)}" if missing else "Alle getrackten Felder ausgefüllt",
        {"missing": missing},
    )


def _heroic_act(ctx: RuleContext) -> Evaluation:
    heldentat = (ctx.latest.heldentat or "").strip()
    if not heldentat:
        return Evaluation(False, "Keine Heldentat")
    return Evaluation(True, f'Heldentat: "{heldentat[:50]}..."', {"heldentat": heldentat[:100]})


def _blocker(ctx: RuleContext) -> Evaluation:
    week = ctx.latest
    blocker = (week.blockiert or "").strip()
    feeling = week.feeling_score
    low_feeling = feeling is not None and feeling <= 5
    shown = feeling if feeling is not None else "-"
    if blocker and low_feeling:
        return Evaluation(True, f"Blockade + Feeling {shown}/10", {"blockiert": blocker[:200]})
    if blocker:
        return Evaluation(False, f"Blockade aber Feeling {shown}/10 > 5")
    return Evaluation(False, "Keine Blockade gemeldet")


def _smart_nudge(ctx: RuleContext) -> Evaluation:
    m = ctx.member
    details = {
        "umsatzSoll": _num(m.umsatz_soll_woche),
        "einheitenSoll": m.einheiten_soll,
        "kontakteSoll": m.kontakte_soll,
    }
    missing_goals = not any(details.values())
    return Evaluation(
        missing_goals,
        "Keine Wochenziele definiert" if missing_goals else "Wochenziele vorhanden",
        details,
    )


def _churn_risk(ctx: RuleContext) -> Evaluation:
    last2 = list(ctx.weeks[:2])
    if not last2:
        return Evaluation(True, "Keine KPIs vorhanden", {"noKpis": True})

    def low(week: KpiWeek) -> bool:
        umsatz = _num(week.umsatz_ist)
        target = _target(week, ctx.member, "umsatz_soll_snapshot", "umsatz_soll_woche")
        return (
            week.feeling_score is not None
            and week.feeling_score <= 4
            and bool(target)
            and umsatz is not None
            and umsatz < target * 0.5
        )

    if any(low(w) for w in last2):
        return Evaluation(True, "Niedrige Performance + niedriges Feeling", {"noKpis": False})
    return Evaluation(False, "Kein Risiko erkannt")


def _happy_high_performer(ctx: RuleContext) -> Evaluation:
    week = ctx.latest
    feeling = week.feeling_score
    high_feeling = feeling is not None and feeling >= 8
    umsatz = _num(week.umsatz_ist)
    target = _target(week, ctx.member, "umsatz_soll_snapshot", "umsatz_soll_woche")
    goal_reached = bool(target) and umsatz is not None and umsatz >= target
    shown = feeling if feeling is not None else "-"
    if high_feeling and goal_reached:
        return Evaluation(True, f"Feeling {shown}/10 + Ziel erreicht")
    if not high_feeling:
        return Evaluation(False, f"Feeling {shown}/10 < 8")
    return Evaluation(False, "Umsatzziel nicht erreicht")


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

_DAY = timedelta(days=1)

CATALOG: dict[RuleId, Rule] = {rule.id: rule for rule in (
    Rule(
        RuleId.R1, "Low-Feeling-Streak", RuleCategory.retention, _low_feeling_streak,
        (
            SetFlag(MemberFlag.review),
            CreateTask(
                "Check-in 1:1 binnen 24h", TaskPriority.high,
                "{name} hat 3 Wochen in Folge einen Feeling-Score unter 5. "
                "Dringender persönlicher Check-in erforderlich.",
            ),
        ),
        7 * _DAY, on_submission=True,
    ),
    Rule(
        RuleId.R2, "Silent Member", RuleCategory.retention, _silent_member,
        (
            SendMessage(Channel.whatsapp, "kpi_reminder"),
            CreateTask(
                "KPI-Abgabe nachfassen", TaskPriority.medium,
                "{name} hat für diese Woche noch keine KPIs abgegeben.",
            ),
        ),
        7 * _DAY, on_sweep=True,
    ),
    Rule(
        RuleId.R3, "Leistungsabfall", RuleCategory.retention, _performance_drop,
        (
            SetFlag(MemberFlag.danger_zone),
            CreateTask(
                "Taktik-Call planen", TaskPriority.urgent,
                "{name} zeigt Leistungsabfall über 2 Wochen. Dringender Strategie-Call erforderlich.",
            ),
        ),
        14 * _DAY, on_submission=True,
    ),
    Rule(
        RuleId.P1, "Upsell-Signal", RuleCategory.performance, _upsell_signal,
        (
            SetFlag(MemberFlag.upsell_candidate),
            CreateTask(
                "Upsell-Gespräch vorbereiten", TaskPriority.high,
                "{name}: {reason}. Upsell-Potenzial besprechen.",
            ),
        ),
        30 * _DAY, on_submission=True,
    ),
    Rule(
        RuleId.P2, "Funnel-Leak", RuleCategory.performance, _funnel_leak,
        (
            CreateTask("Funnel-Analyse besprechen", TaskPriority.medium, "{name}: {reason}."),
            AddNote("Funnel-Leak {week}: {reason}"),
        ),
        7 * _DAY, needs_submission=True, on_submission=True,
    ),
    Rule(
        RuleId.P3, "Momentum-Streak", RuleCategory.performance, _momentum_streak,
        (
            SendMessage(Channel.whatsapp, "celebration_momentum"),
            AddNote("Momentum-Streak erreicht! 3 Wochen in Folge >= 100% bei mind. 2 KPIs."),
        ),
        30 * _DAY, on_submission=True,
    ),
    Rule(
        RuleId.Q1, "No-Show hoch", RuleCategory.quality, _high_noshow,
        (
            CreateTask(
                "Reminder-Routine implementieren", TaskPriority.medium,
                "{name} hat eine No-Show-Quote von {noshow_pct}%. Reminder-Strategie besprechen.",
            ),
        ),
        14 * _DAY, needs_submission=True, on_submission=True,
    ),
    Rule(
        RuleId.Q2, "Daten-Anomalie", RuleCategory.quality, _data_anomaly,
        (BlockFeedback(), SetFlag(MemberFlag.review), OpenReviewTask()),
        7 * _DAY, needs_submission=True,
    ),
    Rule(
        RuleId.Q3, "Feld fehlt aber getrackt", RuleCategory.quality, _missing_tracked_field,
        (
            SendMessage(Channel.email, "missing_fields"),
            CreateTask("Fehlende KPI-Felder klären", TaskPriority.low, "{name}: {reason} ({week})."),
        ),
        7 * _DAY, needs_submission=True, on_submission=True,
    ),
    Rule(
        RuleId.C1, "Heldentat-Amplify", RuleCategory.coaching, _heroic_act,
        (AddNote("Heldentat {week}: {heldentat}", pinned=True, author="System (Heldentat)"),),
        7 * _DAY, needs_submission=True, on_submission=True,
    ),
    Rule(
        RuleId.C2, "Blockade aktiv", RuleCategory.coaching, _blocker,
        (
            BlockFeedback(),
            CreateTask(
                "Persönlicher Check-in", TaskPriority.high,
                '{name} hat eine Blockade gemeldet (Feeling: {feeling}): "{blockiert}"',
                link_week=True,
            ),
        ),
        7 * _DAY, needs_submission=True, on_submission=True,
    ),
    Rule(
        RuleId.C3, "S.M.A.R.T-Nudge", RuleCategory.coaching, _smart_nudge,
        (
            SendMessage(Channel.email, "smart_nudge"),
            CreateTask(
                "Wochenziele definieren", TaskPriority.low,
                "{name} hat keine Wochenziele (Umsatz, Einheiten, Kontakte) hinterlegt.",
            ),
        ),
        14 * _DAY, on_sweep=True,
    ),
    Rule(
        RuleId.L1, "Kündigungsrisiko", RuleCategory.lifecycle, _churn_risk,
        (
            SetFlag(MemberFlag.churn_risk),
            CreateTask(
                "Retention-Call planen", TaskPriority.urgent,
                "{name} zeigt Kündigungsrisiko. {reason}.",
            ),
        ),
        14 * _DAY, on_submission=True, on_sweep=True,
    ),
    Rule(
        RuleId.L2, "Happy High Performer", RuleCategory.lifecycle, _happy_high_performer,
        (
            SetFlag(MemberFlag.upsell_candidate),
            AddNote("Happy High Performer {week}: {reason}."),
        ),
        30 * _DAY, needs_submission=True, on_submission=True,
    ),
)}

SUBMISSION_RULES = tuple(r.id for r in CATALOG.values() if r.on_submission)
SWEEP_RULES = tuple(r.id for r in CATALOG.values() if r.on_sweep)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_rule(rule_id: str) -> Rule:
    try:
        return CATALOG[RuleId(rule_id)]
    except ValueError:
        raise UnknownRuleError(rule_id)


def history_window(settings: AutomationSettings) -> int:
    """How many recent weeks the evaluator needs to see."""
    return max(HISTORY_WINDOW, settings.upsell_consecutive_weeks)


def evaluate_rule(rule: Rule, ctx: RuleContext) -> RuleEvaluation:
    if rule.needs_submission and ctx.latest is None:
        outcome = Evaluation(False, NO_KPI)
    else:
        outcome = rule.predicate(ctx)
    return RuleEvaluation(
        rule_id=rule.id.value,
        rule_name=rule.name,
        would_trigger=outcome.would_trigger,
        reason=outcome.reason,
        details=outcome.details,
    )


def evaluate(rule_id: str, ctx: RuleContext) -> list[RuleEvaluation]:
    """Dry run: `rule_id` is a catalog id or "all". Never writes anything."""
    if rule_id == "all":
        return [evaluate_rule(rule, ctx) for rule in CATALOG.values()]
    return [evaluate_rule(get_rule(rule_id), ctx)]
