"""
Tests for the rule catalog and the pure evaluator.

Members and weeks here are transient ORM objects: no session, no database.
Weeks without a goal snapshot fall back to the member's live targets.
"""
from __future__ import annotations

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from app.core.errors import UnknownRuleError
from app.models.kpi_week import KpiWeek
from app.models.member import Member, MemberFlag
from app.services.automation_settings import AutomationSettings
from app.services.rules import (
    CATALOG,
    NO_KPI,
    SUBMISSION_RULES,
    SWEEP_RULES,
    BlockFeedback,
    CreateTask,
    OpenReviewTask,
    RuleContext,
    RuleId,
    SetFlag,
    evaluate,
    get_rule,
    history_window,
)

NOW = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc)   # Wednesday, KW 11
CURRENT_MONDAY = date(2026, 3, 9)

SETTINGS = AutomationSettings(
    timezone="UTC",
    feedback_delay_min=60,
    feedback_delay_max=120,
    quiet_hours_enabled=True,
    quiet_hours_start=21,
    quiet_hours_end=8,
    upsell_revenue_threshold=20000.0,
    upsell_consecutive_weeks=12,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _member(**overrides) -> Member:
    values = dict(
        id=1,
        vorname="Anna",
        nachname="Schmidt",
        umsatz_soll_woche=Decimal("1000"),
        kontakte_soll=20,
        termine_abschluss_soll=2,
        track_kontakte=True,
        track_termine=True,
        track_einheiten=False,
        track_empfehlungen=False,
        track_entscheider=False,
        track_abschluesse=False,
    )
    values.update(overrides)
    return Member(**values)


def _week(weeks_ago: int, **values) -> KpiWeek:
    """Week starting `weeks_ago` Mondays before the current one."""
    week_start = CURRENT_MONDAY - timedelta(weeks=weeks_ago)
    iso_year, iso_week, _ = week_start.isocalendar()
    return KpiWeek(member_id=1, week_start=week_start, week_number=iso_week, year=iso_year, **values)


def _ctx(member: Member | None = None, weeks=(), settings: AutomationSettings = SETTINGS) -> RuleContext:
    return RuleContext(member=member or _member(), weeks=list(weeks), settings=settings, now=NOW)


def _run(rule_id: str, ctx: RuleContext):
    [result] = evaluate(rule_id, ctx)
    return result


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class TestCatalog:
    def test_fourteen_rules_in_order(self):
        assert [r.value for r in CATALOG] == [
            "R1", "R2", "R3", "P1", "P2", "P3", "Q1", "Q2", "Q3", "C1", "C2", "C3", "L1", "L2",
        ]

    def test_cooldowns(self):
        assert CATALOG[RuleId.R1].cooldown == timedelta(days=7)
        assert CATALOG[RuleId.R3].cooldown == timedelta(days=14)
        assert CATALOG[RuleId.P1].cooldown == timedelta(days=30)
        assert CATALOG[RuleId.L2].cooldown == timedelta(days=30)

    def test_sweep_rules(self):
        assert SWEEP_RULES == (RuleId.R2, RuleId.C3, RuleId.L1)

    def test_submission_rules_exclude_sweep_only_and_anomaly(self):
        assert RuleId.R2 not in SUBMISSION_RULES
        assert RuleId.C3 not in SUBMISSION_RULES
        assert RuleId.Q2 not in SUBMISSION_RULES
        assert RuleId.L1 in SUBMISSION_RULES

    def test_anomaly_rule_blocks_flags_and_opens_review(self):
        assert CATALOG[RuleId.Q2].actions == (
            BlockFeedback(), SetFlag(MemberFlag.review), OpenReviewTask(),
        )

    def test_blockade_task_is_linked_to_week(self):
        task = next(a for a in CATALOG[RuleId.C2].actions if isinstance(a, CreateTask))
        assert task.link_week is True

    def test_get_rule_unknown(self):
        with pytest.raises(UnknownRuleError) as exc_info:
            get_rule("X9")
        assert exc_info.value.details["rule_id"] == "X9"

    def test_history_window_covers_upsell_weeks(self):
        assert history_window(SETTINGS) == 12
        assert history_window(SETTINGS.with_overrides(upsell_consecutive_weeks=16)) == 16

    def test_evaluate_all(self):
        results = evaluate("all", _ctx(weeks=[_week(1, feeling_score=7)]))
        assert len(results) == 14
        assert results[0].rule_id == "R1"
        assert results[0].rule_name == "Low-Feeling-Streak"

    def test_rules_needing_a_submission_without_weeks(self):
        for rule_id in ("P2", "Q1", "Q2", "Q3", "C1", "C2", "L2"):
            result = _run(rule_id, _ctx(weeks=[]))
            assert result.would_trigger is False
            assert result.reason == NO_KPI


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

class TestLowFeelingStreak:
    def test_three_low_weeks(self):
        weeks = [_week(1, feeling_score=4), _week(2, feeling_score=3), _week(3, feeling_score=2)]
        result = _run("R1", _ctx(weeks=weeks))
        assert result.would_trigger is True
        assert result.reason == "3 Wochen in Folge Feeling < 5"
        assert result.details["feelings"] == [4, 3, 2]

    def test_feeling_exactly_five_does_not_trigger(self):
        weeks = [_week(1, feeling_score=4), _week(2, feeling_score=5), _week(3, feeling_score=2)]
        result = _run("R1", _ctx(weeks=weeks))
        assert result.would_trigger is False
        assert result.reason == "Feeling-Scores sind OK"

    def test_missing_feeling_does_not_count_as_low(self):
        weeks = [_week(1, feeling_score=4), _week(2), _week(3, feeling_score=2)]
        assert _run("R1", _ctx(weeks=weeks)).would_trigger is False

    def test_not_enough_weeks(self):
        weeks = [_week(1, feeling_score=1), _week(2, feeling_score=1)]
        result = _run("R1", _ctx(weeks=weeks))
        assert result.would_trigger is False
        assert result.reason == "Nicht genug Daten (2/3 Wochen)"


class TestSilentMember:
    def test_no_submission_for_current_week(self):
        result = _run("R2", _ctx(weeks=[_week(1)]))
        assert result.would_trigger is True
        assert result.reason == "Kein KPI für diese Woche"
        assert result.details["weekStart"] == "2026-03-09"

    def test_current_week_submitted(self):
        result = _run("R2", _ctx(weeks=[_week(0)]))
        assert result.would_trigger is False
        assert result.reason == "KPI für diese Woche vorhanden"

    def test_no_weeks_at_all(self):
        assert _run("R2", _ctx(weeks=[])).would_trigger is True


class TestPerformanceDrop:
    def test_two_weeks_at_fifty_percent(self):
        weeks = [_week(1, umsatz_ist=Decimal("500"), kontakte_ist=10),
                 _week(2, umsatz_ist=Decimal("500"), kontakte_ist=12)]
        result = _run("R3", _ctx(weeks=weeks))
        assert result.would_trigger is True
        assert "60%" in result.reason
        assert result.reason == "2 Wochen < 60% Umsatz UND Kontakte unter Soll"
        assert result.details["weeks"][0]["umsatzSoll"] == 1000.0

    def test_one_week_recovered(self):
        weeks = [_week(1, umsatz_ist=Decimal("700"), kontakte_ist=10),
                 _week(2, umsatz_ist=Decimal("500"), kontakte_ist=10)]
        result = _run("R3", _ctx(weeks=weeks))
        assert result.would_trigger is False
        assert result.reason == "Performance ist OK"

    def test_contacts_on_target_does_not_trigger(self):
        weeks = [_week(1, umsatz_ist=Decimal("500"), kontakte_ist=20),
                 _week(2, umsatz_ist=Decimal("500"), kontakte_ist=10)]
        assert _run("R3", _ctx(weeks=weeks)).would_trigger is False

    def test_snapshot_wins_over_live_target(self):
        # 70% of the snapshot target, 14% of the live target
        member = _member(umsatz_soll_woche=Decimal("5000"))
        weeks = [
            _week(1, umsatz_ist=Decimal("700"), kontakte_ist=10, umsatz_soll_snapshot=Decimal("1000")),
            _week(2, umsatz_ist=Decimal("700"), kontakte_ist=10, umsatz_soll_snapshot=Decimal("1000")),
        ]
        assert _run("R3", _ctx(member, weeks)).would_trigger is False

    def test_not_enough_weeks(self):
        result = _run("R3", _ctx(weeks=[_week(1, umsatz_ist=Decimal("100"), kontakte_ist=1)]))
        assert result.reason == "Nicht genug Daten (1/2 Wochen)"


# ---------------------------------------------------------------------------
# Performance
# ---------------------------------------------------------------------------

class TestUpsellSignal:
    def test_every_month_above_threshold(self):
        weeks = [_week(i, umsatz_ist=Decimal("6000")) for i in range(1, 13)]
        result = _run("P1", _ctx(weeks=weeks))
        assert result.would_trigger is True
        assert result.reason == "3 Monate über 20000€"
        assert result.details["monthlyRevenues"] == [24000.0, 24000.0, 24000.0]

    def test_one_month_below(self):
        weeks = [_week(i, umsatz_ist=Decimal("6000")) for i in range(1, 9)]
        weeks += [_week(i, umsatz_ist=Decimal("1000")) for i in range(9, 13)]
        result = _run("P1", _ctx(weeks=weeks))
        assert result.would_trigger is False
        assert result.reason == "Nicht alle Monate über 20000€"

    def test_not_enough_weeks(self):
        weeks = [_week(i, umsatz_ist=Decimal("6000")) for i in range(1, 12)]
        assert _run("P1", _ctx(weeks=weeks)).reason == "Nicht genug Daten (11/12 Wochen)"


class TestFunnelLeak:
    def test_contacts_ok_but_few_decision_makers(self):
        week = _week(1, kontakte_ist=20, entscheider_ist=2)
        result = _run("P2", _ctx(weeks=[week]))
        assert result.would_trigger is True
        assert result.reason == "Konversionsraten zu niedrig (Entscheider: 10%, Termine: 100%)"

    def test_appointments_not_held(self):
        week = _week(1, kontakte_ist=19, entscheider_ist=10,
                     termine_vereinbart_ist=10, termine_stattgefunden_ist=5)
        result = _run("P2", _ctx(weeks=[week]))
        assert result.would_trigger is True
        assert "Termine: 50%" in result.reason

    def test_contacts_below_ninety_percent(self):
        week = _week(1, kontakte_ist=15, entscheider_ist=1)
        result = _run("P2", _ctx(weeks=[week]))
        assert result.would_trigger is False
        assert result.reason == "Konversionsraten OK"


class TestMomentumStreak:
    def test_two_of_three_on_target_for_three_weeks(self):
        weeks = [_week(i, umsatz_ist=Decimal("1000"), kontakte_ist=25, termine_abschluss_ist=0)
                 for i in (1, 2, 3)]
        result = _run("P3", _ctx(weeks=weeks))
        assert result.would_trigger is True
        assert result.details["kpisOnTarget"] == [2, 2, 2]

    def test_one_week_with_single_metric(self):
        weeks = [_week(1, umsatz_ist=Decimal("1000"), kontakte_ist=5),
                 _week(2, umsatz_ist=Decimal("1000"), kontakte_ist=25),
                 _week(3, umsatz_ist=Decimal("1000"), kontakte_ist=25)]
        result = _run("P3", _ctx(weeks=weeks))
        assert result.would_trigger is False
        assert result.reason == "Nicht genug Momentum"


# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------

class TestNoShow:
    def test_thirty_percent_triggers(self):
        result = _run("Q1", _ctx(weeks=[_week(1, noshow_quote=Decimal("0.3000"))]))
        assert result.would_trigger is True
        assert result.reason == "No-Show-Quote 30% >= 30%"

    def test_below_threshold(self):
        result = _run("Q1", _ctx(weeks=[_week(1, noshow_quote=Decimal("0.2500"))]))
        assert result.would_trigger is False
        assert result.reason == "No-Show-Quote 25% < 30%"

    def test_no_ratio(self):
        result = _run("Q1", _ctx(weeks=[_week(1)]))
        assert result.would_trigger is False
        assert result.reason == "Keine No-Show-Quote vorhanden"


class TestDataAnomalyRule:
    def test_negative_revenue(self):
        result = _run("Q2", _ctx(weeks=[_week(1, umsatz_ist=Decimal("-50"))]))
        assert result.would_trigger is True
        assert result.reason == "Anomalien: Negative Wert in umsatzIst"

    def test_clean_week(self):
        result = _run("Q2", _ctx(weeks=[_week(1, umsatz_ist=Decimal("500"))]))
        assert result.would_trigger is False
        assert result.reason == "Keine Anomalien"


class TestMissingTrackedField:
    def test_tracked_contacts_missing(self):
        week = _week(1, termine_vereinbart_ist=3)
        result = _run("Q3", _ctx(weeks=[week]))
        assert result.would_trigger is True
        assert result.reason == "Fehlende Felder: Kontakte"
        assert result.details["missing"] == ["Kontakte"]

    def test_zero_is_a_reported_value(self):
        week = _week(1, kontakte_ist=0, termine_vereinbart_ist=0)
        result = _run("Q3", _ctx(weeks=[week]))
        assert result.would_trigger is False
        assert result.reason == "Alle getrackten Felder ausgefüllt"

    def test_untracked_fields_ignored(self):
        member = _member(track_kontakte=False, track_termine=False)
        assert _run("Q3", _ctx(member, [_week(1)])).would_trigger is False

    def test_closings_tracked(self):
        member = _member(track_abschluesse=True)
        week = _week(1, kontakte_ist=5, termine_vereinbart_ist=1)
        assert _run("Q3", _ctx(member, [week])).reason == "Fehlende Felder: Abschlüsse"


# ---------------------------------------------------------------------------
# Coaching
# ---------------------------------------------------------------------------

class TestHeroicActAndBlocker:
    def test_heroic_act_without_blocker(self):
        weeks = [_week(1, feeling_score=9, heldentat="closed deal", blockiert="")]
        ctx = _ctx(weeks=weeks)

        heldentat = _run("C1", ctx)
        assert heldentat.would_trigger is True
        assert heldentat.reason == 'Heldentat: "closed deal..."'

        blockade = _run("C2", ctx)
        assert blockade.would_trigger is False
        assert blockade.reason == "Keine Blockade gemeldet"

    def test_whitespace_heroic_act(self):
        result = _run("C1", _ctx(weeks=[_week(1, heldentat="   ")]))
        assert result.would_trigger is False
        assert result.reason == "Keine Heldentat"

    def test_blocker_with_low_feeling(self):
        result = _run("C2", _ctx(weeks=[_week(1, feeling_score=4, blockiert="Kein Lead-Flow")]))
        assert result.would_trigger is True
        assert result.reason == "Blockade + Feeling 4/10"
        assert result.details["blockiert"] == "Kein Lead-Flow"

    def test_blocker_feeling_five_triggers(self):
        assert _run("C2", _ctx(weeks=[_week(1, feeling_score=5, blockiert="x")])).would_trigger is True

    def test_blocker_with_good_feeling(self):
        result = _run("C2", _ctx(weeks=[_week(1, feeling_score=7, blockiert="Kein Lead-Flow")]))
        assert result.would_trigger is False
        assert result.reason == "Blockade aber Feeling 7/10 > 5"


class TestSmartNudge:
    def test_no_targets(self):
        member = _member(umsatz_soll_woche=None, kontakte_soll=None, einheiten_soll=None)
        result = _run("C3", _ctx(member))
        assert result.would_trigger is True
        assert result.reason == "Keine Wochenziele definiert"

    def test_targets_present(self):
        result = _run("C3", _ctx())
        assert result.would_trigger is False
        assert result.reason == "Wochenziele vorhanden"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestChurnRisk:
    def test_no_weeks(self):
        result = _run("L1", _ctx(weeks=[]))
        assert result.would_trigger is True
        assert result.reason == "Keine KPIs vorhanden"
        assert result.details == {"noKpis": True}

    def test_low_feeling_and_low_revenue(self):
        weeks = [_week(1, feeling_score=6, umsatz_ist=Decimal("900")),
                 _week(2, feeling_score=3, umsatz_ist=Decimal("400"))]
        result = _run("L1", _ctx(weeks=weeks))
        assert result.would_trigger is True
        assert result.reason == "Niedrige Performance + niedriges Feeling"

    def test_only_last_two_weeks_count(self):
        weeks = [_week(1, feeling_score=7, umsatz_ist=Decimal("900")),
                 _week(2, feeling_score=7, umsatz_ist=Decimal("900")),
                 _week(3, feeling_score=2, umsatz_ist=Decimal("100"))]
        result = _run("L1", _ctx(weeks=weeks))
        assert result.would_trigger is False
        assert result.reason == "Kein Risiko erkannt"


class TestHappyHighPerformer:
    def test_high_feeling_and_goal_reached(self):
        result = _run("L2", _ctx(weeks=[_week(1, feeling_score=9, umsatz_ist=Decimal("1200"))]))
        assert result.would_trigger is True
        assert result.reason == "Feeling 9/10 + Ziel erreicht"

    def test_feeling_below_eight(self):
        result = _run("L2", _ctx(weeks=[_week(1, feeling_score=7, umsatz_ist=Decimal("1200"))]))
        assert result.would_trigger is False
        assert result.reason == "Feeling 7/10 < 8"

    def test_goal_missed(self):
        result = _run("L2", _ctx(weeks=[_week(1, feeling_score=8, umsatz_ist=Decimal("900"))]))
        assert result.would_trigger is False
        assert result.reason == "Umsatzziel nicht erreicht"
