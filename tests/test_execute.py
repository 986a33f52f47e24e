"""
Tests for the execute path: cooldown gate, dispatch, audit entry.

Covered:
  - a triggered rule dispatches its actions exactly once per cooldown
  - no-KPI / not-triggered outcomes write nothing
  - per-action failures are collected, the other actions still run
  - WhatsApp actions inside quiet hours are deferred, `force` sends now
  - the scheduled sweep covers active members only
  - one failing submission rule leaves the others running
"""
from __future__ import annotations

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.clock import as_utc
from app.core.errors import MemberNotFoundError, UnknownRuleError
from app.models.automation_log import AutomationLog
from app.models.member import MemberStatus
from app.models.note import MemberNote
from app.models.outbound_message import OutboundMessage
from app.models.task import Task, TaskPriority
from app.services import audit, automation, cooldowns
from app.services.rules import SUBMISSION_RULES

NOW = datetime(2026, 3, 11, 10, 0, tzinfo=timezone.utc)
CURRENT_MONDAY = date(2026, 3, 9)


def _monday(weeks_ago: int) -> date:
    return CURRENT_MONDAY - timedelta(weeks=weeks_ago)


def _count(db, model, *where) -> int:
    return db.scalar(select(func.count()).select_from(model).where(*where))


def _low_feeling_member(make_member, make_week, **member_values):
    member = make_member(**member_values)
    for weeks_ago, feeling in ((1, 4), (2, 3), (3, 2)):
        make_week(member, _monday(weeks_ago), feeling_score=feeling)
    return member


class TestExecute:
    def test_triggered_rule_dispatches_and_audits(self, db, make_member, make_week, automation_settings):
        member = _low_feeling_member(make_member, make_week)

        result = automation.execute(db, "R1", member.id, automation_settings, now=NOW)

        assert result.executed is True
        assert result.triggered is True
        assert result.success is True
        assert result.actions_taken == ["SET_FLAG:review", "CREATE_TASK:Check-in 1:1 binnen 24h"]
        assert result.cooldown.is_active is True
        assert result.cooldown.expires_at == NOW + timedelta(days=7)
        assert result.log_id is not None

        db.refresh(member)
        assert member.review_flag is True
        task = db.scalars(select(Task).where(Task.member_id == member.id)).one()
        assert task.priority == TaskPriority.high
        assert task.rule_id == "R1"
        assert "Anna Schmidt" in task.description

        entry = db.get(AutomationLog, result.log_id)
        assert entry.rule_id == "R1"
        assert entry.rule_name == "Low-Feeling-Streak"
        assert audit.decode_actions(entry) == result.actions_taken
        assert audit.decode_details(entry)["reason"] == "3 Wochen in Folge Feeling < 5"

    def test_second_execute_is_held_by_cooldown(self, db, make_member, make_week, automation_settings):
        member = _low_feeling_member(make_member, make_week)

        first = automation.execute(db, "R1", member.id, automation_settings, now=NOW)
        second = automation.execute(
            db, "R1", member.id, automation_settings, now=NOW + timedelta(hours=2),
        )

        assert first.triggered is True
        assert second.executed is True
        assert second.triggered is False
        assert second.reason == "Cooldown aktiv"
        assert as_utc(second.cooldown.expires_at) == NOW + timedelta(days=7)
        assert second.actions_taken == []
        assert _count(db, AutomationLog, AutomationLog.rule_id == "R1") == 1
        assert _count(db, Task, Task.member_id == member.id) == 1

    def test_rule_fires_again_after_cooldown(self, db, make_member, make_week, automation_settings):
        member = _low_feeling_member(make_member, make_week)

        automation.execute(db, "R1", member.id, automation_settings, now=NOW)
        later = automation.execute(
            db, "R1", member.id, automation_settings, now=NOW + timedelta(days=8),
        )

        assert later.triggered is True
        assert _count(db, AutomationLog, AutomationLog.rule_id == "R1") == 2

    def test_clear_cooldown_first_dedups_recent_task(self, db, make_member, make_week, automation_settings):
        member = _low_feeling_member(make_member, make_week)

        automation.execute(db, "R1", member.id, automation_settings, now=NOW)
        again = automation.execute(
            db, "R1", member.id, automation_settings,
            clear_cooldown_first=True, now=NOW + timedelta(minutes=10),
        )

        assert again.triggered is True
        assert again.actions_taken == ["SET_FLAG:review", "TASK_EXISTS:Check-in 1:1 binnen 24h"]
        assert _count(db, Task, Task.member_id == member.id) == 1

    def test_no_kpi(self, db, make_member, automation_settings):
        member = make_member()

        result = automation.execute(db, "C1", member.id, automation_settings, now=NOW)

        assert result.executed is False
        assert result.triggered is False
        assert result.error == "Kein KPI vorhanden"
        assert result.success is False
        assert _count(db, AutomationLog) == 0

    def test_not_triggered_takes_no_cooldown(self, db, make_member, make_week, automation_settings):
        member = make_member()
        make_week(member, _monday(1), feeling_score=7)

        result = automation.execute(db, "C2", member.id, automation_settings, now=NOW)

        assert result.executed is True
        assert result.triggered is False
        assert result.reason == "Keine Blockade gemeldet"
        assert result.cooldown is None
        assert _count(db, AutomationLog) == 0

    def test_unknown_rule(self, db, make_member, automation_settings):
        member = make_member()
        with pytest.raises(UnknownRuleError):
            automation.execute(db, "Z1", member.id, automation_settings, now=NOW)

    def test_unknown_member(self, db, automation_settings):
        with pytest.raises(MemberNotFoundError):
            automation.execute(db, "R1", 99999, automation_settings, now=NOW)


class TestActions:
    def test_blockade_blocks_feedback_and_links_task(self, db, make_member, make_week, automation_settings):
        member = make_member()
        week = make_week(member, _monday(1), feeling_score=4, blockiert="Kein Lead-Flow")

        result = automation.execute(db, "C2", member.id, automation_settings, now=NOW)

        assert result.actions_taken == ["BLOCK_AI_FEEDBACK", "CREATE_TASK:Persönlicher Check-in"]
        db.refresh(week)
        assert week.ai_feedback_blocked is True
        assert week.ai_feedback_generated is False
        assert week.ai_feedback_block_reason == "Blockade + Feeling 4/10"
        task = db.scalars(select(Task).where(Task.rule_id == "C2")).one()
        assert task.kpi_week_id == week.id
        assert 'Kein Lead-Flow' in task.description

    def test_heroic_act_adds_pinned_note(self, db, make_member, make_week, automation_settings):
        member = make_member()
        make_week(member, _monday(1), feeling_score=9, heldentat="closed deal")

        result = automation.execute(db, "C1", member.id, automation_settings, now=NOW)

        assert result.actions_taken == ["ADD_NOTE:pinned"]
        note = db.scalars(select(MemberNote).where(MemberNote.member_id == member.id)).one()
        assert note.is_pinned is True
        assert note.author_name == "System (Heldentat)"
        assert note.content == "Heldentat KW 10/2026: closed deal"

    def test_missing_recipient_does_not_stop_other_actions(self, db, make_member, automation_settings):
        member = make_member(whatsapp_nummer=None)

        result = automation.execute(db, "R2", member.id, automation_settings, now=NOW)

        assert result.triggered is True
        assert result.actions_taken == ["CREATE_TASK:KPI-Abgabe nachfassen"]
        assert "Keine WhatsApp-Nummer hinterlegt" in result.error
        assert _count(db, OutboundMessage) == 0
        assert _count(db, Task, Task.member_id == member.id) == 1

    def test_whatsapp_outside_quiet_hours_is_queued_now(self, db, make_member, automation_settings):
        member = make_member()

        result = automation.execute(db, "R2", member.id, automation_settings, now=NOW)

        assert result.actions_taken[0] == "SEND_WHATSAPP:kpi_reminder"
        message = db.scalars(select(OutboundMessage)).one()
        assert message.recipient == "+491701234567"
        assert as_utc(message.scheduled_for) == NOW
        assert "Anna" in message.content

    def test_whatsapp_in_quiet_hours_is_deferred(self, db, make_member, automation_settings):
        member = make_member()
        night = datetime(2026, 3, 11, 22, 30, tzinfo=timezone.utc)

        result = automation.execute(db, "R2", member.id, automation_settings, now=night)

        assert result.actions_taken[0] == "DEFER_WHATSAPP:kpi_reminder"
        message = db.scalars(select(OutboundMessage)).one()
        assert as_utc(message.scheduled_for) == datetime(2026, 3, 12, 8, 0, tzinfo=timezone.utc)

    def test_force_bypasses_quiet_hours(self, db, make_member, automation_settings):
        member = make_member()
        night = datetime(2026, 3, 11, 22, 30, tzinfo=timezone.utc)

        result = automation.execute(db, "R2", member.id, automation_settings, force=True, now=night)

        assert result.actions_taken[0] == "SEND_WHATSAPP:kpi_reminder"

    def test_email_ignores_quiet_hours(self, db, make_member, automation_settings):
        member = make_member(umsatz_soll_woche=None, kontakte_soll=None)
        night = datetime(2026, 3, 11, 23, 0, tzinfo=timezone.utc)

        result = automation.execute(db, "C3", member.id, automation_settings, now=night)

        assert result.actions_taken == ["SEND_EMAIL:smart_nudge", "CREATE_TASK:Wochenziele definieren"]
        message = db.scalars(select(OutboundMessage)).one()
        assert as_utc(message.scheduled_for) == night


class TestEvaluateAndClear:
    def test_dry_run_writes_nothing(self, db, make_member, make_week, automation_settings):
        member = _low_feeling_member(make_member, make_week)

        results = automation.evaluate(db, "all", member.id, automation_settings, now=NOW)

        assert len(results) == 14
        assert next(r for r in results if r.rule_id == "R1").would_trigger is True
        assert _count(db, AutomationLog) == 0
        assert _count(db, Task) == 0

    def test_clear_cooldown_validates_rule(self, db, make_member, automation_settings):
        member = make_member()
        with pytest.raises(UnknownRuleError):
            automation.clear_cooldown(db, member.id, "nope")

    def test_clear_cooldown_unknown_member(self, db):
        with pytest.raises(MemberNotFoundError):
            automation.clear_cooldown(db, 424242)


class TestBatchRuns:
    def test_submission_rules_skip_inactive_members(self, db, make_member, make_week, automation_settings):
        member = _low_feeling_member(make_member, make_week, status=MemberStatus.pausiert)
        assert automation.run_submission_rules(db, member.id, automation_settings, now=NOW) == []

    def test_submission_rules_run_catalog_subset(self, db, make_member, make_week, automation_settings):
        member = _low_feeling_member(make_member, make_week)

        results = automation.run_submission_rules(db, member.id, automation_settings, now=NOW)

        rule_ids = [r.rule_id for r in results]
        assert "R2" not in rule_ids
        assert "Q2" not in rule_ids
        assert next(r for r in results if r.rule_id == "R1").triggered is True

    def test_failing_submission_rule_does_not_stop_the_rest(
        self, db, make_member, make_week, automation_settings, monkeypatch
    ):
        member = _low_feeling_member(make_member, make_week)
        original = cooldowns.try_acquire

        def flaky_acquire(db, member_id, rule_id, duration, now):
            if rule_id == "R1":
                raise OperationalError("INSERT INTO automation_cooldowns", {}, Exception("database is locked"))
            return original(db, member_id, rule_id, duration, now)

        monkeypatch.setattr(cooldowns, "try_acquire", flaky_acquire)

        results = automation.run_submission_rules(db, member.id, automation_settings, now=NOW)

        assert [r.rule_id for r in results] == [rule_id.value for rule_id in SUBMISSION_RULES]
        failed = next(r for r in results if r.rule_id == "R1")
        assert failed.executed is False
        assert "database is locked" in failed.error
        assert not any("database is locked" in (r.error or "") for r in results if r.rule_id != "R1")
        assert _count(db, AutomationLog, AutomationLog.rule_id == "R1") == 0

    def test_sweep_covers_active_members(self, db, make_member, make_week, automation_settings):
        silent = make_member()
        current = make_member(vorname="Ben")
        make_week(current, CURRENT_MONDAY, feeling_score=8, umsatz_ist=Decimal("900"))
        make_member(vorname="Carla", status=MemberStatus.gekuendigt)

        sweep = automation.run_scheduled_sweep(db, automation_settings, now=NOW)

        assert sweep.members_checked == 2
        assert {"memberId": silent.id, "ruleId": "R2"} in sweep.fired
        assert {"memberId": current.id, "ruleId": "R2"} not in sweep.fired
        assert sweep.errors == []
        cron = db.scalars(
            select(AutomationLog).where(AutomationLog.rule_id == audit.CRON_RULE_ID)
        ).one()
        assert audit.decode_details(cron)["membersChecked"] == 2
        assert f"R2:{silent.id}" in audit.decode_actions(cron)
